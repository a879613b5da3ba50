"""
Delivery workers — the job handlers behind the three queues.

  campaign-send       CampaignDispatcher.handle_campaign_send
                      expand the campaign into recipients, debit credits for
                      the whole audience, fan out one sms-send job each
  sms-send            MessageSender.handle_send
                      one gateway call per recipient, outcome recorded
  automation-trigger  AutomationRunner.handle_automation
                      debit one credit, render the template, send

Every handler is safe to run more than once for the same job: recipient
state only moves out of ``pending`` through a conditional UPDATE, and the
campaign expansion is guarded by the (campaign_id, phone) unique key.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError

from billing.ledger import CreditLedger
from channels.sms_gateway import SmsGateway
from config.settings import get_settings
from core.errors import GatewayError, InsufficientCreditsError
from database.models import (
    AutomationRow, CampaignMetricsRow, CampaignRecipientRow, CampaignRow, MessageLogRow,
)
from database.session import get_session
from job_queue.message_queue import JobNames, NonRetryableJobError, QueueJob
from job_queue.resilient import ResilientQueue
from models.schemas import CampaignStatus, RecipientStatus
from rules.automations import render_message

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def send_job_id(recipient_id: str) -> str:
    return f"sms:{recipient_id}"


def normalize_audience(audience: Any) -> list[str]:
    """Unique, non-empty destination numbers in audience order."""
    phones: list[str] = []
    seen = set()
    for entry in audience or []:
        phone = entry.get("phone", "") if isinstance(entry, dict) else entry
        phone = str(phone or "").strip()
        if phone and phone not in seen:
            seen.add(phone)
            phones.append(phone)
    return phones


async def _bump_metric(db, campaign_id: str, column: str):
    col = getattr(CampaignMetricsRow, column)
    await db.execute(
        update(CampaignMetricsRow)
        .where(CampaignMetricsRow.campaign_id == campaign_id)
        .values({column: col + 1})
        .execution_options(synchronize_session=False)
    )


# ──────────────────────────────────────────────────────────────
#  Campaign expansion
# ──────────────────────────────────────────────────────────────

class CampaignDispatcher:

    def __init__(self, ledger: CreditLedger, send_queue: ResilientQueue):
        self.ledger = ledger
        self.send_queue = send_queue

    async def handle_campaign_send(self, job: QueueJob) -> dict[str, Any]:
        campaign_id = job.payload.get("campaign_id", "")
        tenant_id = job.payload.get("tenant_id", "")

        async with get_session() as db:
            campaign = await db.get(CampaignRow, campaign_id)
            if campaign is None:
                raise NonRetryableJobError(f"Campaign {campaign_id} not found")
            if campaign.tenant_id != tenant_id:
                raise NonRetryableJobError(
                    f"Campaign {campaign_id} does not belong to tenant {tenant_id}"
                )
            existing = await db.scalar(
                select(func.count()).select_from(CampaignRecipientRow)
                .where(CampaignRecipientRow.campaign_id == campaign_id)
            )

        if campaign.status != CampaignStatus.SENDING.value:
            logger.warning("campaign_not_sending_skipped", campaign_id=campaign_id, status=campaign.status)
            return {"status": "skipped", "reason": "invalid_status"}

        if not existing:
            phones = normalize_audience(campaign.audience)
            if not phones:
                await self._fail_campaign(campaign_id, "no_recipients")
                return {"status": "failed", "reason": "no_recipients"}
            try:
                await self._expand(campaign, phones)
            except InsufficientCreditsError as e:
                await self._fail_campaign(campaign_id, "insufficient_credits")
                return {"status": "failed", "reason": "insufficient_credits", "missing": e.missing}
            except IntegrityError:
                # A concurrent run already expanded this campaign
                logger.info("campaign_already_expanded", campaign_id=campaign_id)
            except Exception as e:
                # Nothing was debited or created; the queue retries while attempts remain
                if job.is_last_attempt:
                    await self._fail_campaign(campaign_id, "dispatch_failed")
                logger.error("campaign_expansion_failed",
                             campaign_id=campaign_id,
                             attempt=job.attempt,
                             last_attempt=job.is_last_attempt,
                             error=str(e))
                raise

        queued = await self._fan_out(campaign)
        logger.info("campaign_dispatched", campaign_id=campaign_id, tenant_id=tenant_id, queued=queued)
        return {"status": "sending", "queued": queued}

    async def _expand(self, campaign: CampaignRow, phones: list[str]):
        """Debit the whole audience and create recipient rows, all or nothing."""
        async with get_session() as db:
            await self.ledger.consume(campaign.tenant_id, len(phones),
                                      reference=f"campaign:{campaign.id}", db=db)
            db.add_all([
                CampaignRecipientRow(campaign_id=campaign.id, phone=phone)
                for phone in phones
            ])
            if await db.get(CampaignMetricsRow, campaign.id) is None:
                db.add(CampaignMetricsRow(campaign_id=campaign.id))
            await db.execute(
                update(CampaignRow)
                .where(CampaignRow.id == campaign.id)
                .values(recipient_count=len(phones))
                .execution_options(synchronize_session=False)
            )
        logger.info("campaign_expanded", campaign_id=campaign.id, recipients=len(phones))

    async def _fan_out(self, campaign: CampaignRow) -> int:
        async with get_session() as db:
            result = await db.execute(
                select(CampaignRecipientRow.id)
                .where(CampaignRecipientRow.campaign_id == campaign.id,
                       CampaignRecipientRow.status == RecipientStatus.PENDING.value)
            )
            pending = list(result.scalars().all())

        for recipient_id in pending:
            await self.send_queue.add(
                JobNames.SEND_SMS,
                {"recipient_id": recipient_id, "campaign_id": campaign.id,
                 "tenant_id": campaign.tenant_id},
                job_id=send_job_id(recipient_id),
            )
        return len(pending)

    async def _fail_campaign(self, campaign_id: str, reason: str):
        async with get_session() as db:
            await db.execute(
                update(CampaignRow)
                .where(CampaignRow.id == campaign_id,
                       CampaignRow.status == CampaignStatus.SENDING.value)
                .values(status=CampaignStatus.FAILED.value, failure_reason=reason)
                .execution_options(synchronize_session=False)
            )
        logger.warning("campaign_failed", campaign_id=campaign_id, reason=reason)


# ──────────────────────────────────────────────────────────────
#  Per-recipient send
# ──────────────────────────────────────────────────────────────

class MessageSender:

    def __init__(self, gateway: SmsGateway, ledger: CreditLedger, default_sender: str = ""):
        self.gateway = gateway
        self.ledger = ledger
        self.default_sender = default_sender

    async def handle_send(self, job: QueueJob) -> dict[str, Any]:
        recipient_id = job.payload.get("recipient_id", "")

        async with get_session() as db:
            row = (await db.execute(
                select(CampaignRecipientRow, CampaignRow)
                .join(CampaignRow, CampaignRow.id == CampaignRecipientRow.campaign_id)
                .where(CampaignRecipientRow.id == recipient_id)
            )).first()
        if row is None:
            raise NonRetryableJobError(f"Recipient {recipient_id} not found")
        recipient, campaign = row

        if recipient.status != RecipientStatus.PENDING.value:
            logger.info("recipient_already_processed", recipient_id=recipient_id, status=recipient.status)
            return {"status": "skipped", "recipient_status": recipient.status}

        sender = campaign.sender or self.default_sender
        try:
            result = await self.gateway.send(sender, recipient.phone, campaign.message)
        except Exception as e:
            retryable = e.retryable if isinstance(e, GatewayError) else True
            if retryable and not job.is_last_attempt:
                logger.warning("sms_send_retrying",
                               recipient_id=recipient_id,
                               attempt=job.attempt,
                               error=str(e))
                raise
            await self._record_failure(recipient, campaign, sender, str(e))
            raise NonRetryableJobError(str(e)) from e

        async with get_session() as db:
            updated = await db.execute(
                update(CampaignRecipientRow)
                .where(CampaignRecipientRow.id == recipient.id,
                       CampaignRecipientRow.status == RecipientStatus.PENDING.value)
                .values(
                    status=RecipientStatus.SENT.value,
                    provider_message_id=result.message_id,
                    delivery_status=result.status,
                    sent_at=_utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount != 1:
                logger.warning("recipient_sent_twice", recipient_id=recipient.id,
                               message_id=result.message_id)
                return {"status": "duplicate", "message_id": result.message_id}

            db.add(MessageLogRow(
                tenant_id=campaign.tenant_id,
                campaign_id=campaign.id,
                recipient_id=recipient.id,
                phone=recipient.phone,
                provider=self.gateway.name,
                provider_message_id=result.message_id,
                status=RecipientStatus.SENT.value,
                delivery_status=result.status,
                sender=sender,
            ))
            await _bump_metric(db, campaign.id, "total_sent")

        logger.info("sms_sent", campaign_id=campaign.id, recipient_id=recipient.id,
                    message_id=result.message_id)
        return {"status": "sent", "message_id": result.message_id}

    async def _record_failure(self, recipient: CampaignRecipientRow, campaign: CampaignRow,
                              sender: str, error: str):
        """Mark the recipient failed and give its credit back."""
        async with get_session() as db:
            updated = await db.execute(
                update(CampaignRecipientRow)
                .where(CampaignRecipientRow.id == recipient.id,
                       CampaignRecipientRow.status == RecipientStatus.PENDING.value)
                .values(status=RecipientStatus.FAILED.value, error=error[:2000])
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount != 1:
                return

            db.add(MessageLogRow(
                tenant_id=campaign.tenant_id,
                campaign_id=campaign.id,
                recipient_id=recipient.id,
                phone=recipient.phone,
                provider=self.gateway.name,
                status=RecipientStatus.FAILED.value,
                sender=sender,
                error=error[:2000],
            ))
            await _bump_metric(db, campaign.id, "total_failed")
            await self.ledger.refund(campaign.tenant_id, 1,
                                     reason=f"send_failed:{recipient.id}", db=db)

        logger.error("sms_send_failed", campaign_id=campaign.id, recipient_id=recipient.id, error=error)


# ──────────────────────────────────────────────────────────────
#  Automations
# ──────────────────────────────────────────────────────────────

class AutomationRunner:

    def __init__(self, gateway: SmsGateway, ledger: CreditLedger,
                 default_sender: str = "", templates: Optional[dict[str, str]] = None):
        self.gateway = gateway
        self.ledger = ledger
        self.default_sender = default_sender
        self.templates = templates if templates is not None else get_settings().events.templates

    async def _template(self, tenant_id: str, automation_type: str) -> Optional[str]:
        async with get_session() as db:
            automation = await db.scalar(
                select(AutomationRow).where(AutomationRow.tenant_id == tenant_id,
                                            AutomationRow.automation_type == automation_type)
            )
        if automation is not None:
            if not automation.active:
                return None
            if automation.message_template:
                return automation.message_template
        return self.templates.get(automation_type) or None

    async def handle_automation(self, job: QueueJob) -> dict[str, Any]:
        p = job.payload
        tenant_id = p.get("tenant_id", "")
        automation_type = p.get("automation_type", "")
        event_id = p.get("event_id", "")
        phone = p.get("phone", "")

        if not phone:
            logger.warning("automation_skipped", tenant_id=tenant_id,
                           automation_type=automation_type, reason="no_phone")
            return {"success": False, "reason": "no_phone"}

        template = await self._template(tenant_id, automation_type)
        if not template:
            logger.info("automation_skipped", tenant_id=tenant_id,
                        automation_type=automation_type, reason="inactive_or_no_template")
            return {"success": False, "reason": "inactive"}
        text = render_message(template, p.get("variables", {}))

        reference = f"automation:{automation_type}:{event_id}"
        try:
            await self.ledger.consume(tenant_id, 1, reference=reference)
        except InsufficientCreditsError as e:
            logger.warning("automation_skipped", tenant_id=tenant_id,
                           automation_type=automation_type, reason="insufficient_credits")
            return {"success": False, "reason": "insufficient_credits", "error": str(e)}

        try:
            result = await self.gateway.send(self.default_sender, phone, text)
        except Exception as e:
            async with get_session() as db:
                await self.ledger.refund(tenant_id, 1, reason=f"{reference}:send_failed", db=db)
                db.add(MessageLogRow(
                    tenant_id=tenant_id,
                    phone=phone,
                    provider=self.gateway.name,
                    status=RecipientStatus.FAILED.value,
                    sender=self.default_sender,
                    error=str(e)[:2000],
                ))
            retryable = e.retryable if isinstance(e, GatewayError) else True
            logger.error("automation_send_failed", tenant_id=tenant_id,
                         automation_type=automation_type, error=str(e))
            if retryable and not job.is_last_attempt:
                raise
            raise NonRetryableJobError(str(e)) from e

        async with get_session() as db:
            db.add(MessageLogRow(
                tenant_id=tenant_id,
                phone=phone,
                provider=self.gateway.name,
                provider_message_id=result.message_id,
                status=RecipientStatus.SENT.value,
                delivery_status=result.status,
                sender=self.default_sender,
            ))

        logger.info("automation_sent", tenant_id=tenant_id, automation_type=automation_type,
                    event_id=event_id, message_id=result.message_id)
        return {"success": True, "message_id": result.message_id}
