"""Shared test fixtures for the SMS delivery pipeline."""
from datetime import datetime, timezone
from typing import Any, Optional

import pytest
import pytest_asyncio

import config.settings as settings_module
from config.settings import parse_settings, reset_settings
from database.models import CampaignMetricsRow, CampaignRecipientRow, CampaignRow
from database.session import close_db, get_engine, get_session, init_db
from job_queue.database_queue import DatabaseQueueBackend
from job_queue.health import BrokerHealth
from job_queue.message_queue import InMemoryQueueBackend, QueuePolicy
from job_queue.resilient import ResilientQueue
from billing.ledger import CreditLedger


@pytest.fixture(autouse=True)
def test_settings():
    """Settings without external services: memory broker, mock gateway, no feed."""
    settings = parse_settings({
        "queue": {"backend": "memory", "poll_interval": 0.01},
        "gateway": {"provider": "mock", "sender": "SHOP"},
        "events": {"feed_url": "", "fallback_minutes": 10},
    })
    settings_module._settings = settings
    yield settings
    reset_settings()


@pytest_asyncio.fixture
async def db(tmp_path):
    """Fresh SQLite database file per test."""
    await close_db()
    get_engine(f"sqlite:///{tmp_path}/test.db")
    await init_db()
    yield
    await close_db()


@pytest.fixture
def ledger():
    return CreditLedger()


async def _always_up() -> bool:
    return True


def make_queue(name: str, primary: bool = True, **policy: Any) -> ResilientQueue:
    """A logical queue with an in-memory primary and the table fallback."""
    queue_policy = QueuePolicy(**policy)
    health = BrokerHealth(_always_up, min_interval=30)
    return ResilientQueue(
        name,
        InMemoryQueueBackend(name, queue_policy) if primary else None,
        DatabaseQueueBackend(name, queue_policy, poll_interval=0.01),
        health,
        queue_policy,
    )


async def create_campaign(
    tenant_id: str,
    audience: Optional[list] = None,
    status: str = "draft",
    scheduled_at: Optional[datetime] = None,
    message: str = "Spring sale: 20% off today",
    sender: str = "SHOP",
) -> str:
    async with get_session() as db:
        campaign = CampaignRow(
            tenant_id=tenant_id,
            name="Spring sale",
            status=status,
            message=message,
            audience=audience or [],
            sender=sender,
            scheduled_at=scheduled_at,
        )
        db.add(campaign)
        await db.flush()
        return campaign.id


async def add_recipient(
    campaign_id: str,
    phone: str,
    status: str = "sent",
    provider_message_id: Optional[str] = None,
    delivery_status: Optional[str] = "Queued",
) -> str:
    async with get_session() as db:
        recipient = CampaignRecipientRow(
            campaign_id=campaign_id,
            phone=phone,
            status=status,
            provider_message_id=provider_message_id,
            delivery_status=delivery_status,
            sent_at=datetime.now(timezone.utc) if status == "sent" else None,
        )
        db.add(recipient)
        if await db.get(CampaignMetricsRow, campaign_id) is None:
            db.add(CampaignMetricsRow(campaign_id=campaign_id))
        await db.flush()
        return recipient.id


async def get_campaign(campaign_id: str) -> CampaignRow:
    async with get_session() as db:
        return await db.get(CampaignRow, campaign_id)


async def get_metrics(campaign_id: str) -> CampaignMetricsRow:
    async with get_session() as db:
        return await db.get(CampaignMetricsRow, campaign_id)


async def get_recipient(recipient_id: str) -> CampaignRecipientRow:
    async with get_session() as db:
        return await db.get(CampaignRecipientRow, recipient_id)
