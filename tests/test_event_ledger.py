"""
Tests for the processed-event ledger.
"""
import pytest
from datetime import datetime, timedelta, timezone

from backend.event_ledger import EventDeduplicationLedger
from config.settings import EventsConfig
from database.models import ProcessedEventRow
from database.session import get_session
from models.schemas import FeedEvent


pytestmark = pytest.mark.usefixtures("db")

TENANT = "tenant-1"
WELCOME = "welcome"


def _event(n: int, minutes_ago: float) -> FeedEvent:
    return FeedEvent(
        id=f"gid://shopify/BasicEvent/{n}",
        subject_type="CUSTOMER",
        subject_id=f"gid://shopify/Customer/{n}",
        action="created",
        occurred_at=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
    )


@pytest.fixture
def ledger_():
    return EventDeduplicationLedger(EventsConfig(fallback_minutes=10, watermark_sample_size=50,
                                                 retention_days=7))


class TestLowWaterMark:
    @pytest.mark.asyncio
    async def test_falls_back_without_history(self, ledger_):
        before = datetime.now(timezone.utc) - timedelta(minutes=10)
        mark = await ledger_.low_water_mark(TENANT, WELCOME)
        after = datetime.now(timezone.utc) - timedelta(minutes=10)
        assert before <= mark <= after

    @pytest.mark.asyncio
    async def test_earliest_recent_event(self, ledger_):
        older, newer = _event(1, 5), _event(2, 1)
        await ledger_.mark_processed([newer, older], TENANT, WELCOME)

        mark = await ledger_.low_water_mark(TENANT, WELCOME)

        assert mark == older.occurred_at

    @pytest.mark.asyncio
    async def test_scoped_per_tenant_and_type(self, ledger_):
        await ledger_.mark_processed([_event(1, 60)], TENANT, "order_placed")
        mark = await ledger_.low_water_mark(TENANT, WELCOME)
        assert mark > datetime.now(timezone.utc) - timedelta(minutes=11)


class TestProcessedEvents:
    @pytest.mark.asyncio
    async def test_filter_unprocessed_keeps_order(self, ledger_):
        events = [_event(i, 1) for i in range(4)]
        await ledger_.mark_processed([events[1], events[3]], TENANT, WELCOME)

        fresh = await ledger_.filter_unprocessed([e.id for e in events], TENANT, WELCOME)

        assert fresh == [events[0].id, events[2].id]
        assert await ledger_.is_processed(events[1].id, TENANT, WELCOME)
        assert not await ledger_.is_processed(events[1].id, TENANT, "order_placed")

    @pytest.mark.asyncio
    async def test_marking_twice_is_harmless(self, ledger_):
        event = _event(1, 1)
        assert await ledger_.mark_processed([event, event], TENANT, WELCOME) == 1
        assert await ledger_.mark_processed([event], TENANT, WELCOME) == 0

    @pytest.mark.asyncio
    async def test_batch_with_existing_rows_inserts_the_rest(self, ledger_):
        first, second = _event(1, 2), _event(2, 1)
        await ledger_.mark_processed([first], TENANT, WELCOME)
        assert await ledger_.mark_processed([first, second], TENANT, WELCOME) == 1


class TestPrune:
    @pytest.mark.asyncio
    async def test_retention_must_exceed_look_back(self, ledger_):
        with pytest.raises(ValueError):
            await ledger_.prune(timedelta(minutes=10))
        with pytest.raises(ValueError):
            await ledger_.prune(timedelta(minutes=5))

    @pytest.mark.asyncio
    async def test_old_rows_removed(self, ledger_):
        recent = _event(1, 1)
        await ledger_.mark_processed([recent], TENANT, WELCOME)
        async with get_session() as db:
            db.add(ProcessedEventRow(
                event_id="gid://shopify/BasicEvent/old", tenant_id=TENANT, automation_type=WELCOME,
                occurred_at=datetime.now(timezone.utc) - timedelta(days=9),
                processed_at=datetime.now(timezone.utc) - timedelta(days=8),
            ))

        assert await ledger_.prune() == 1
        assert await ledger_.is_processed(recent.id, TENANT, WELCOME)
        assert not await ledger_.is_processed("gid://shopify/BasicEvent/old", TENANT, WELCOME)
