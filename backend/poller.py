"""
Event Poller — turns the platform's event feed into automation jobs.

Use this when the platform can't push events via webhooks.
Runs as a background task inside the pipeline process.

Flow, per (tenant, automation type) with an active automation:
    low-water-mark → page through feed events since then
    → drop events already in the deduplication ledger
    → fetch subject detail, check the automation's trigger condition
    → enqueue on automation-trigger (job id {type}:{tenant}:{event})
    → record every evaluated event in the ledger
"""
from __future__ import annotations

import time
import structlog
from datetime import timedelta
from typing import Optional

from sqlalchemy import select

from backend.connector import EventFeedConnector
from backend.event_ledger import EventDeduplicationLedger
from config.settings import EventsConfig, get_settings
from core.periodic import PeriodicService
from database.models import AutomationRow, TenantRow
from database.session import get_session
from job_queue.resilient import ResilientQueue
from models.schemas import FeedEvent, PollStats
from rules.automations import build_job_payload, get_rule, should_trigger

logger = structlog.get_logger()

PRUNE_EVERY_SECONDS = 3600


def automation_job_id(automation_type: str, tenant_id: str, event_id: str) -> str:
    return f"{automation_type}:{tenant_id}:{event_id}"


class EventPoller(PeriodicService):
    """
    Polls the event feed for every tenant with active automations.

    Configure in settings:
        events:
          interval: 300
          fallback_minutes: 10
          page_size: 50
    """

    name = "event_poller"

    def __init__(
        self,
        connector: EventFeedConnector,
        queue: ResilientQueue,
        ledger: Optional[EventDeduplicationLedger] = None,
        config: EventsConfig = None,
        max_pages: int = 20,
    ):
        self.config = config or get_settings().events
        super().__init__(interval=self.config.interval, startup_delay=self.config.startup_delay)
        self.connector = connector
        self.queue = queue
        self.ledger = ledger or EventDeduplicationLedger(self.config)
        self.max_pages = max_pages
        self._last_prune: Optional[float] = None

    async def run_once(self) -> list[PollStats]:
        results = await self.poll_all()
        await self._maybe_prune()
        return results

    async def _maybe_prune(self):
        now = time.monotonic()
        if self._last_prune is not None and now - self._last_prune < PRUNE_EVERY_SECONDS:
            return
        self._last_prune = now
        await self.ledger.prune(timedelta(days=self.config.retention_days))

    async def _active_automations(self) -> list[tuple[str, str]]:
        async with get_session() as db:
            result = await db.execute(
                select(AutomationRow.tenant_id, AutomationRow.automation_type)
                .join(TenantRow, TenantRow.id == AutomationRow.tenant_id)
                .where(AutomationRow.active.is_(True), TenantRow.active.is_(True))
                .order_by(AutomationRow.tenant_id, AutomationRow.automation_type)
            )
            return [(tenant_id, automation_type) for tenant_id, automation_type in result.all()]

    async def poll_all(self) -> list[PollStats]:
        """One cycle over every tenant/automation pair; a failing pair never stops the rest."""
        results = []
        for tenant_id, automation_type in await self._active_automations():
            try:
                results.append(await self.poll_tenant(tenant_id, automation_type))
            except Exception as e:
                logger.error("event_poll_failed", tenant_id=tenant_id,
                             automation_type=automation_type, error=str(e))
                results.append(PollStats(tenant_id=tenant_id, errors=1,
                                         details=[{"automation_type": automation_type, "error": str(e)}]))
        if results:
            logger.info("event_poll_cycle_complete",
                        pairs=len(results),
                        queued=sum(r.automations_queued for r in results),
                        skipped=sum(r.skipped for r in results),
                        errors=sum(r.errors for r in results))
        return results

    async def poll_tenant(self, tenant_id: str, automation_type: str) -> PollStats:
        stats = PollStats(tenant_id=tenant_id)
        rule = get_rule(automation_type)
        if rule is None:
            logger.warning("unknown_automation_type", tenant_id=tenant_id, automation_type=automation_type)
            return stats

        since = await self.ledger.low_water_mark(tenant_id, automation_type)
        handled: list[FeedEvent] = []
        after = None

        for _ in range(self.max_pages):
            page = await self.connector.query_events(
                tenant_id, list(rule.subject_types),
                occurred_at_min=since, first=self.config.page_size, after=after,
            )
            stats.events_seen += len(page.events)

            candidates = [e for e in page.events if e.action in rule.actions]
            stats.skipped += len(page.events) - len(candidates)
            fresh_ids = set(await self.ledger.filter_unprocessed(
                [e.id for e in candidates], tenant_id, automation_type
            ))
            stats.skipped += len(candidates) - len(fresh_ids)

            for event in candidates:
                if event.id not in fresh_ids:
                    continue
                fresh_ids.discard(event.id)  # same id twice on one page
                if await self._process_event(event, tenant_id, automation_type, stats):
                    handled.append(event)

            if not page.has_next_page or not page.end_cursor:
                break
            after = page.end_cursor

        if handled:
            await self.ledger.mark_processed(handled, tenant_id, automation_type)
        return stats

    async def _process_event(self, event: FeedEvent, tenant_id: str, automation_type: str,
                             stats: PollStats) -> bool:
        """Evaluate one event; True when it may be recorded as processed."""
        try:
            detail = await self.connector.get_subject(tenant_id, event)
        except Exception as e:
            stats.errors += 1
            logger.error("event_detail_failed", tenant_id=tenant_id, event_id=event.id, error=str(e))
            return False

        if not should_trigger(event, automation_type, detail):
            stats.skipped += 1
            stats.details.append({"event_id": event.id, "status": "not_qualified"})
            return True

        rule = get_rule(automation_type)
        try:
            job = await self.queue.add(
                rule.job_name,
                build_job_payload(event, automation_type, tenant_id, detail),
                job_id=automation_job_id(automation_type, tenant_id, event.id),
            )
        except Exception as e:
            stats.errors += 1
            logger.error("automation_enqueue_failed", tenant_id=tenant_id,
                         event_id=event.id, automation_type=automation_type, error=str(e))
            return False

        stats.automations_queued += 1
        stats.details.append({"event_id": event.id, "status": "queued", "job_id": job.job_id})
        logger.info("automation_queued", tenant_id=tenant_id, automation_type=automation_type,
                    event_id=event.id, job_id=job.job_id)
        return True
