"""
Campaign Scheduler — claims due campaigns exactly once and queues them.

Any number of scheduler instances may run at the same time. A campaign only
moves scheduled → sending through a conditional UPDATE, so exactly one
instance wins each claim; the losers see ClaimConflict and skip. The
dispatch job id is derived from the campaign id, so a repeated enqueue
collapses on the queue as well.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import select, update

from config.settings import SchedulerConfig, get_settings
from core.errors import CampaignStateError, ClaimConflict
from core.periodic import PeriodicService
from database.models import CampaignRow, ensure_utc
from database.session import get_session
from job_queue.message_queue import JobNames, QueueJob
from job_queue.resilient import ResilientQueue
from models.schemas import CampaignStatus

logger = structlog.get_logger()


def campaign_job_id(campaign_id: str) -> str:
    return f"campaign-send:{campaign_id}"


@dataclass
class SchedulerStats:
    found: int = 0
    claimed: int = 0
    enqueued: int = 0
    conflicts: int = 0
    errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class CampaignScheduler(PeriodicService):
    """
    Periodically scans for due campaigns.

    Configure in settings:
        scheduler:
          interval: 60
          startup_delay: 60
          batch_size: 50
    """

    name = "campaign_scheduler"

    def __init__(self, queue: ResilientQueue, config: SchedulerConfig = None):
        self.config = config or get_settings().scheduler
        super().__init__(interval=self.config.interval, startup_delay=self.config.startup_delay)
        self.queue = queue

    # ── Periodic pass ─────────────────────────────────────────

    async def run_once(self, now: Optional[datetime] = None) -> SchedulerStats:
        """One pass over due campaigns; a failing candidate never aborts the batch."""
        now = now or datetime.now(timezone.utc)
        stats = SchedulerStats()

        async with get_session() as db:
            result = await db.execute(
                select(CampaignRow.id)
                .where(
                    CampaignRow.status == CampaignStatus.SCHEDULED.value,
                    CampaignRow.scheduled_at <= now,
                )
                .order_by(CampaignRow.scheduled_at)
                .limit(self.config.batch_size)
            )
            due = list(result.scalars().all())
        stats.found = len(due)

        for campaign_id in due:
            try:
                campaign = await self.claim(campaign_id)
            except ClaimConflict as e:
                stats.conflicts += 1
                logger.debug("campaign_claim_conflict", campaign_id=campaign_id, status=e.current_status)
                continue
            except Exception as e:
                stats.errors += 1
                logger.error("campaign_claim_failed", campaign_id=campaign_id, error=str(e))
                continue
            stats.claimed += 1

            try:
                await self._enqueue(campaign)
                stats.enqueued += 1
            except Exception as e:
                stats.errors += 1
                logger.error("campaign_enqueue_failed",
                             campaign_id=campaign_id,
                             tenant_id=campaign.tenant_id,
                             error=str(e))
                try:
                    await self._release(campaign_id, CampaignStatus.SCHEDULED)
                except Exception as release_error:
                    logger.error("campaign_release_failed",
                                 campaign_id=campaign_id,
                                 error=str(release_error))

        if stats.found:
            logger.info("scheduler_pass_complete", **stats.as_dict())
        return stats

    # ── Claim ─────────────────────────────────────────────────

    async def claim(
        self,
        campaign_id: str,
        from_statuses: Iterable[CampaignStatus] = (CampaignStatus.SCHEDULED,),
        tenant_id: Optional[str] = None,
    ) -> CampaignRow:
        """
        Move a campaign to ``sending`` if it is still in one of ``from_statuses``.

        Raises ClaimConflict when the campaign is gone, belongs to another
        tenant or another instance changed its status first.
        """
        allowed = [CampaignStatus(s).value for s in from_statuses]
        async with get_session() as db:
            campaign = await db.get(CampaignRow, campaign_id)
            if campaign is None or (tenant_id and campaign.tenant_id != tenant_id):
                raise ClaimConflict("campaign", campaign_id, None)
            if campaign.status not in allowed:
                raise ClaimConflict("campaign", campaign_id, campaign.status)

            result = await db.execute(
                update(CampaignRow)
                .where(CampaignRow.id == campaign_id, CampaignRow.status == campaign.status)
                .values(status=CampaignStatus.SENDING.value, updated_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ClaimConflict("campaign", campaign_id, campaign.status)

        campaign.status = CampaignStatus.SENDING.value
        logger.info("campaign_claimed", campaign_id=campaign_id, tenant_id=campaign.tenant_id)
        return campaign

    async def _enqueue(self, campaign: CampaignRow) -> QueueJob:
        return await self.queue.add(
            JobNames.SEND_CAMPAIGN,
            {"campaign_id": campaign.id, "tenant_id": campaign.tenant_id},
            job_id=campaign_job_id(campaign.id),
        )

    async def _release(self, campaign_id: str, status: CampaignStatus):
        """Undo a claim whose job could not be queued."""
        async with get_session() as db:
            result = await db.execute(
                update(CampaignRow)
                .where(CampaignRow.id == campaign_id,
                       CampaignRow.status == CampaignStatus.SENDING.value)
                .values(status=status.value)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount:
            logger.warning("campaign_claim_released", campaign_id=campaign_id, status=status.value)

    # ── Requests from the surrounding application ─────────────

    async def send_now(self, tenant_id: str, campaign_id: str) -> QueueJob:
        """Claim a draft or scheduled campaign and queue it immediately."""
        async with get_session() as db:
            campaign = await db.get(CampaignRow, campaign_id)
            if campaign is None or campaign.tenant_id != tenant_id:
                raise CampaignStateError(campaign_id, None, "send")
            previous = CampaignStatus(campaign.status)

        try:
            campaign = await self.claim(
                campaign_id,
                from_statuses=(CampaignStatus.DRAFT, CampaignStatus.SCHEDULED),
                tenant_id=tenant_id,
            )
        except ClaimConflict as e:
            raise CampaignStateError(campaign_id, e.current_status, "send") from e

        try:
            return await self._enqueue(campaign)
        except Exception:
            await self._release(campaign_id, previous)
            raise

    async def schedule_campaign(self, campaign_id: str, scheduled_at: datetime,
                                tenant_id: Optional[str] = None) -> CampaignRow:
        """Set the send time of a draft or scheduled campaign."""
        scheduled_at = ensure_utc(scheduled_at)
        if scheduled_at <= datetime.now(timezone.utc):
            raise ValueError("Schedule date must be in the future")

        async with get_session() as db:
            conditions = [
                CampaignRow.id == campaign_id,
                CampaignRow.status.in_([CampaignStatus.DRAFT.value, CampaignStatus.SCHEDULED.value]),
            ]
            if tenant_id:
                conditions.append(CampaignRow.tenant_id == tenant_id)
            result = await db.execute(
                update(CampaignRow)
                .where(*conditions)
                .values(status=CampaignStatus.SCHEDULED.value, scheduled_at=scheduled_at)
                .execution_options(synchronize_session=False)
            )
            campaign = await db.get(CampaignRow, campaign_id, populate_existing=True)
            if result.rowcount != 1:
                raise CampaignStateError(campaign_id, campaign.status if campaign else None, "schedule")

        logger.info("campaign_scheduled", campaign_id=campaign_id, scheduled_at=scheduled_at.isoformat())
        return campaign

    async def cancel_campaign(self, campaign_id: str, tenant_id: Optional[str] = None) -> None:
        """Cancel a campaign that has not been claimed for sending yet."""
        async with get_session() as db:
            conditions = [
                CampaignRow.id == campaign_id,
                CampaignRow.status.in_([CampaignStatus.DRAFT.value, CampaignStatus.SCHEDULED.value]),
            ]
            if tenant_id:
                conditions.append(CampaignRow.tenant_id == tenant_id)
            result = await db.execute(
                update(CampaignRow)
                .where(*conditions)
                .values(status=CampaignStatus.CANCELLED.value)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                current = await db.scalar(select(CampaignRow.status).where(CampaignRow.id == campaign_id))
                raise CampaignStateError(campaign_id, current, "cancel")

        logger.info("campaign_cancelled", campaign_id=campaign_id)
