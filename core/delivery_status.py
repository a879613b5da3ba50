"""
Delivery Status Synchronizer — reconciles gateway-side delivery status into
recipient, message log and campaign state.

Recipient transitions are monotonic. ``delivered`` (delivered_at set) and
``failed`` are terminal; every UPDATE carries the non-terminal condition in
its WHERE clause, and a metric is only incremented when that UPDATE matched
a row. Overlapping passes (two synchronizer instances, or a periodic pass
racing an on-demand one) therefore count each transition exactly once.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update, func

from channels.sms_gateway import SmsGateway
from config.settings import DeliverySyncConfig, get_settings
from core.periodic import PeriodicService
from database.models import (
    CampaignMetricsRow, CampaignRecipientRow, CampaignRow, MessageLogRow,
)
from database.session import get_session
from models.schemas import CampaignStatus, DeliveryState, RecipientStatus

logger = structlog.get_logger()


# Raw provider vocabulary → internal tri-state
GATEWAY_STATUS_MAP: dict[str, DeliveryState] = {
    "queued": DeliveryState.SENT,
    "sent": DeliveryState.SENT,
    "accepted": DeliveryState.SENT,
    "enroute": DeliveryState.SENT,
    "delivered": DeliveryState.DELIVERED,
    "failed": DeliveryState.FAILED,
    "failure": DeliveryState.FAILED,
    "rejected": DeliveryState.FAILED,
    "undelivered": DeliveryState.FAILED,
    "expired": DeliveryState.FAILED,
}


def map_gateway_status(raw: Optional[str]) -> DeliveryState:
    """Normalize a provider status; unknown values count as still in transit."""
    if not raw:
        return DeliveryState.SENT
    state = GATEWAY_STATUS_MAP.get(raw.strip().lower())
    if state is None:
        logger.warning("unknown_gateway_status", raw_status=raw)
        return DeliveryState.SENT
    return state


def _not_terminal():
    return (
        CampaignRecipientRow.status != RecipientStatus.FAILED.value,
        CampaignRecipientRow.delivered_at.is_(None),
    )


class DeliveryStatusSynchronizer(PeriodicService):
    """
    Periodically polls the gateway for every campaign still sending.

    Configure in settings:
        delivery_sync:
          interval: 300
          campaign_limit: 50
          concurrency: 10
    """

    name = "delivery_status_sync"

    def __init__(self, gateway: SmsGateway, config: DeliverySyncConfig = None):
        self.config = config or get_settings().delivery_sync
        super().__init__(interval=self.config.interval, startup_delay=self.config.startup_delay)
        self.gateway = gateway

    async def run_once(self) -> dict[str, Any]:
        return await self.sync_all()

    # ── Single recipient ──────────────────────────────────────

    async def sync_recipient(self, recipient: CampaignRecipientRow) -> Optional[DeliveryState]:
        """Apply the gateway's current status; returns the state when it changed anything."""
        status = await self.gateway.get_status(recipient.provider_message_id)
        raw = status.delivery_status
        state = map_gateway_status(raw)
        now = datetime.now(timezone.utc)

        async with get_session() as db:
            if state is DeliveryState.DELIVERED:
                values = {"delivery_status": raw, "delivered_at": now,
                          "status": RecipientStatus.SENT.value}
                metric = "total_delivered"
            elif state is DeliveryState.FAILED:
                values = {"delivery_status": raw, "status": RecipientStatus.FAILED.value,
                          "error": f"Delivery failed: {raw}"}
                metric = "total_failed"
            else:
                values = {"delivery_status": raw}
                metric = None

            result = await db.execute(
                update(CampaignRecipientRow)
                .where(CampaignRecipientRow.id == recipient.id, *_not_terminal())
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None

            if metric:
                col = getattr(CampaignMetricsRow, metric)
                await db.execute(
                    update(CampaignMetricsRow)
                    .where(CampaignMetricsRow.campaign_id == recipient.campaign_id)
                    .values({metric: col + 1})
                    .execution_options(synchronize_session=False)
                )

            await db.execute(
                update(MessageLogRow)
                .where(MessageLogRow.provider_message_id == recipient.provider_message_id,
                       MessageLogRow.status.notin_([DeliveryState.DELIVERED.value,
                                                    DeliveryState.FAILED.value]))
                .values(delivery_status=raw, status=state.value)
                .execution_options(synchronize_session=False)
            )

        if metric:
            logger.info("recipient_delivery_resolved",
                        campaign_id=recipient.campaign_id,
                        recipient_id=recipient.id,
                        state=state.value,
                        raw_status=raw)
        return state

    # ── Campaign ──────────────────────────────────────────────

    async def sync_campaign(self, campaign_id: str) -> dict[str, Any]:
        async with get_session() as db:
            result = await db.execute(
                select(CampaignRecipientRow)
                .where(CampaignRecipientRow.campaign_id == campaign_id,
                       CampaignRecipientRow.provider_message_id.is_not(None),
                       *_not_terminal())
            )
            recipients = list(result.scalars().all())

        summary = {"campaign_id": campaign_id, "checked": len(recipients),
                   "delivered": 0, "failed": 0, "errors": 0}
        semaphore = asyncio.Semaphore(self.config.concurrency)

        async def _one(recipient: CampaignRecipientRow):
            async with semaphore:
                try:
                    state = await self.sync_recipient(recipient)
                except Exception as e:
                    summary["errors"] += 1
                    logger.error("recipient_status_sync_failed",
                                 campaign_id=campaign_id,
                                 recipient_id=recipient.id,
                                 message_id=recipient.provider_message_id,
                                 error=str(e))
                    return
                if state is DeliveryState.DELIVERED:
                    summary["delivered"] += 1
                elif state is DeliveryState.FAILED:
                    summary["failed"] += 1

        await asyncio.gather(*(_one(r) for r in recipients))
        summary["status"] = await self.recompute_campaign_status(campaign_id)
        return summary

    async def recompute_campaign_status(self, campaign_id: str) -> Optional[str]:
        """
        Derive campaign status from its recipients.

        Only a ``sending`` campaign moves: any pending recipient keeps it
        sending; otherwise all-failed means ``failed`` and anything else
        ``sent``. Re-running on a resolved campaign changes nothing.
        """
        async with get_session() as db:
            status = await db.scalar(select(CampaignRow.status).where(CampaignRow.id == campaign_id))
            if status != CampaignStatus.SENDING.value:
                return status

            result = await db.execute(
                select(CampaignRecipientRow.status, func.count())
                .where(CampaignRecipientRow.campaign_id == campaign_id)
                .group_by(CampaignRecipientRow.status)
            )
            counts = {s: n for s, n in result.all()}
            total = sum(counts.values())
            if total == 0:
                logger.warning("campaign_has_no_recipients", campaign_id=campaign_id)
                return status
            if counts.get(RecipientStatus.PENDING.value, 0):
                return status

            failed = counts.get(RecipientStatus.FAILED.value, 0)
            new_status = CampaignStatus.FAILED if failed == total else CampaignStatus.SENT

            updated = await db.execute(
                update(CampaignRow)
                .where(CampaignRow.id == campaign_id,
                       CampaignRow.status == CampaignStatus.SENDING.value)
                .values(status=new_status.value)
                .execution_options(synchronize_session=False)
            )

        if updated.rowcount:
            logger.info("campaign_status_updated", campaign_id=campaign_id,
                        status=new_status.value, total=total, failed=failed)
        return new_status.value

    # ── All campaigns ─────────────────────────────────────────

    async def sync_all(self, limit: Optional[int] = None) -> dict[str, Any]:
        limit = limit or self.config.campaign_limit
        async with get_session() as db:
            result = await db.execute(
                select(CampaignRow.id)
                .where(CampaignRow.status == CampaignStatus.SENDING.value)
                .order_by(CampaignRow.updated_at)
                .limit(limit)
            )
            campaign_ids = list(result.scalars().all())

        totals = {"campaigns": len(campaign_ids), "checked": 0, "delivered": 0,
                  "failed": 0, "errors": 0}
        for campaign_id in campaign_ids:
            try:
                summary = await self.sync_campaign(campaign_id)
            except Exception as e:
                totals["errors"] += 1
                logger.error("campaign_status_sync_failed", campaign_id=campaign_id, error=str(e))
                continue
            for key in ("checked", "delivered", "failed", "errors"):
                totals[key] += summary[key]

        if campaign_ids:
            logger.info("delivery_status_sync_complete", **totals)
        return totals
