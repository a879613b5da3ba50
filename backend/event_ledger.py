"""
Event Deduplication Ledger — remembers which feed events already triggered
which automation.

A row in ``processed_events`` keyed by (event_id, tenant_id, automation_type)
means "an automation job was queued for this event". The poller checks the
ledger before queueing and records everything it queued afterwards; a crash
in between only causes a re-check on the next cycle, because the automation
job id is deterministic and the queue collapses the duplicate.

The next poll's lower bound is the low-water-mark: the earliest
``occurred_at`` among the N most recently processed events for the pair,
which tolerates events that arrive in the feed slightly out of order.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError

from config.settings import EventsConfig, get_settings
from database.models import ProcessedEventRow, ensure_utc
from database.session import get_session
from models.schemas import FeedEvent

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventDeduplicationLedger:

    def __init__(self, config: EventsConfig = None):
        self.config = config or get_settings().events

    async def low_water_mark(
        self,
        tenant_id: str,
        automation_type: str,
        fallback_minutes: Optional[int] = None,
        sample_size: Optional[int] = None,
    ) -> datetime:
        """Lower ``occurred_at`` bound for the next poll of this pair."""
        fallback_minutes = fallback_minutes or self.config.fallback_minutes
        sample_size = sample_size or self.config.watermark_sample_size

        async with get_session() as db:
            result = await db.execute(
                select(ProcessedEventRow.occurred_at)
                .where(ProcessedEventRow.tenant_id == tenant_id,
                       ProcessedEventRow.automation_type == automation_type)
                .order_by(ProcessedEventRow.processed_at.desc())
                .limit(sample_size)
            )
            recent = [ensure_utc(ts) for ts in result.scalars().all()]

        if not recent:
            return _utcnow() - timedelta(minutes=fallback_minutes)
        return min(recent)

    async def is_processed(self, event_id: str, tenant_id: str, automation_type: str) -> bool:
        async with get_session() as db:
            row = await db.get(ProcessedEventRow, (event_id, tenant_id, automation_type))
        return row is not None

    async def filter_unprocessed(self, event_ids: Iterable[str], tenant_id: str,
                                 automation_type: str) -> list[str]:
        """The subset of ``event_ids`` not yet recorded, in input order."""
        ids = list(dict.fromkeys(event_ids))
        if not ids:
            return []
        async with get_session() as db:
            seen = await self._existing(db, ids, tenant_id, automation_type)
        return [event_id for event_id in ids if event_id not in seen]

    @staticmethod
    async def _existing(db, ids: list[str], tenant_id: str, automation_type: str) -> set[str]:
        result = await db.execute(
            select(ProcessedEventRow.event_id)
            .where(ProcessedEventRow.tenant_id == tenant_id,
                   ProcessedEventRow.automation_type == automation_type,
                   ProcessedEventRow.event_id.in_(ids))
        )
        return set(result.scalars().all())

    async def mark_processed(self, events: list[FeedEvent], tenant_id: str,
                             automation_type: str) -> int:
        """
        Record events as processed; returns the number of new rows.

        Rows another instance inserted concurrently are left alone.
        """
        unique = {event.id: event for event in events}
        if not unique:
            return 0

        try:
            async with get_session() as db:
                seen = await self._existing(db, list(unique), tenant_id, automation_type)
                rows = [
                    ProcessedEventRow(event_id=event.id, tenant_id=tenant_id,
                                      automation_type=automation_type,
                                      occurred_at=event.occurred_at)
                    for event_id, event in unique.items() if event_id not in seen
                ]
                db.add_all(rows)
            inserted = len(rows)
        except IntegrityError:
            logger.info("processed_events_batch_conflict", tenant_id=tenant_id,
                        automation_type=automation_type, count=len(unique))
            inserted = await self._mark_individually(list(unique.values()), tenant_id, automation_type)

        logger.debug("events_marked_processed", tenant_id=tenant_id,
                     automation_type=automation_type, inserted=inserted)
        return inserted

    async def _mark_individually(self, events: list[FeedEvent], tenant_id: str,
                                 automation_type: str) -> int:
        inserted = 0
        for event in events:
            try:
                async with get_session() as db:
                    if await db.get(ProcessedEventRow, (event.id, tenant_id, automation_type)):
                        continue
                    db.add(ProcessedEventRow(event_id=event.id, tenant_id=tenant_id,
                                             automation_type=automation_type,
                                             occurred_at=event.occurred_at))
                inserted += 1
            except IntegrityError:
                continue  # recorded by another instance
        return inserted

    async def prune(self, retention: Optional[timedelta] = None) -> int:
        """Delete rows older than ``retention`` (by insertion time)."""
        retention = retention or timedelta(days=self.config.retention_days)
        if retention <= timedelta(minutes=self.config.fallback_minutes):
            raise ValueError("Retention must exceed the poll look-back window")

        cutoff = _utcnow() - retention
        async with get_session() as db:
            result = await db.execute(
                delete(ProcessedEventRow)
                .where(ProcessedEventRow.processed_at < cutoff)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount:
            logger.info("processed_events_pruned", count=result.rowcount, cutoff=cutoff.isoformat())
        return result.rowcount
