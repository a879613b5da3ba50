"""
Tests for delivery status reconciliation.
"""
import asyncio
import pytest

from channels.sms_gateway import MockSmsGateway
from config.settings import DeliverySyncConfig
from core.delivery_status import DeliveryStatusSynchronizer, map_gateway_status
from models.schemas import DeliveryState

from conftest import add_recipient, create_campaign, get_campaign, get_metrics, get_recipient


class TestStatusMapping:
    @pytest.mark.parametrize("raw,expected", [
        ("Queued", DeliveryState.SENT),
        ("Sent", DeliveryState.SENT),
        ("Delivered", DeliveryState.DELIVERED),
        ("delivered", DeliveryState.DELIVERED),
        ("Failed", DeliveryState.FAILED),
        ("Failure", DeliveryState.FAILED),
        ("Undelivered", DeliveryState.FAILED),
        ("Rejected", DeliveryState.FAILED),
        ("Expired", DeliveryState.FAILED),
    ])
    def test_known_statuses(self, raw, expected):
        assert map_gateway_status(raw) is expected

    def test_unknown_and_empty_stay_in_transit(self):
        assert map_gateway_status("Buffered") is DeliveryState.SENT
        assert map_gateway_status("") is DeliveryState.SENT
        assert map_gateway_status(None) is DeliveryState.SENT


@pytest.mark.usefixtures("db")
class TestDeliveryStatusSynchronizer:
    @pytest.fixture
    def gateway(self):
        return MockSmsGateway()

    @pytest.fixture
    def synchronizer(self, gateway):
        return DeliveryStatusSynchronizer(gateway, DeliverySyncConfig(startup_delay=0, concurrency=4))

    async def _campaign(self, ledger, gateway, statuses: dict[str, str]):
        """A sending campaign with one sent recipient per message id."""
        tenant_id = await ledger.create_tenant("Shop", initial_credits=10)
        campaign_id = await create_campaign(tenant_id, status="sending")
        recipient_ids = {}
        for i, (message_id, raw) in enumerate(statuses.items()):
            recipient_ids[message_id] = await add_recipient(
                campaign_id, f"+4179000000{i}", provider_message_id=message_id,
            )
            gateway.statuses[message_id] = raw
        return campaign_id, recipient_ids

    @pytest.mark.asyncio
    async def test_mixed_statuses_resolve_campaign(self, synchronizer, gateway, ledger):
        campaign_id, _ = await self._campaign(ledger, gateway, {
            "m1": "Queued", "m2": "Sent", "m3": "Delivered", "m4": "Failed",
        })

        summary = await synchronizer.sync_campaign(campaign_id)

        assert summary["checked"] == 4
        assert summary["delivered"] == 1
        assert summary["failed"] == 1
        assert summary["status"] == "sent"
        metrics = await get_metrics(campaign_id)
        assert (metrics.total_delivered, metrics.total_failed) == (1, 1)
        assert (await get_campaign(campaign_id)).status == "sent"

    @pytest.mark.asyncio
    async def test_rerun_changes_nothing(self, synchronizer, gateway, ledger):
        campaign_id, ids = await self._campaign(ledger, gateway, {
            "m1": "Queued", "m2": "Delivered", "m3": "Failed",
        })
        await synchronizer.sync_campaign(campaign_id)
        before = [await get_recipient(i) for i in ids.values()]

        summary = await synchronizer.sync_campaign(campaign_id)

        after = [await get_recipient(i) for i in ids.values()]
        assert [(r.status, r.delivery_status) for r in after] == \
               [(r.status, r.delivery_status) for r in before]
        assert summary["delivered"] == summary["failed"] == 0
        metrics = await get_metrics(campaign_id)
        assert (metrics.total_delivered, metrics.total_failed) == (1, 1)

    @pytest.mark.asyncio
    async def test_terminal_states_never_regress(self, synchronizer, gateway, ledger):
        campaign_id, ids = await self._campaign(ledger, gateway, {"m1": "Delivered", "m2": "Failed"})
        await synchronizer.sync_campaign(campaign_id)

        # Provider later reports the opposite outcome
        gateway.statuses.update({"m1": "Failed", "m2": "Delivered"})
        for recipient_id in ids.values():
            await synchronizer.sync_recipient(await get_recipient(recipient_id))

        delivered = await get_recipient(ids["m1"])
        failed = await get_recipient(ids["m2"])
        assert delivered.status == "sent" and delivered.delivered_at is not None
        assert failed.status == "failed" and failed.delivered_at is None
        metrics = await get_metrics(campaign_id)
        assert (metrics.total_delivered, metrics.total_failed) == (1, 1)

    @pytest.mark.asyncio
    async def test_overlapping_passes_count_once(self, synchronizer, gateway, ledger):
        campaign_id, _ = await self._campaign(ledger, gateway, {
            "m1": "Delivered", "m2": "Delivered", "m3": "Failed",
        })
        other = DeliveryStatusSynchronizer(gateway, DeliverySyncConfig(startup_delay=0))

        await asyncio.gather(synchronizer.sync_campaign(campaign_id), other.sync_campaign(campaign_id))

        metrics = await get_metrics(campaign_id)
        assert (metrics.total_delivered, metrics.total_failed) == (2, 1)

    @pytest.mark.asyncio
    async def test_all_failed_marks_campaign_failed(self, synchronizer, gateway, ledger):
        campaign_id, _ = await self._campaign(ledger, gateway, {"m1": "Failed", "m2": "Expired"})

        summary = await synchronizer.sync_campaign(campaign_id)

        assert summary["status"] == "failed"

    @pytest.mark.asyncio
    async def test_pending_recipient_keeps_campaign_sending(self, synchronizer, gateway, ledger):
        campaign_id, _ = await self._campaign(ledger, gateway, {"m1": "Delivered"})
        await add_recipient(campaign_id, "+41799999999", status="pending", delivery_status=None)

        summary = await synchronizer.sync_campaign(campaign_id)

        assert summary["status"] == "sending"

    @pytest.mark.asyncio
    async def test_gateway_error_isolated_to_recipient(self, synchronizer, gateway, ledger):
        campaign_id, ids = await self._campaign(ledger, gateway, {"m1": "Delivered", "m2": "Delivered"})
        original = gateway.get_status

        async def flaky(message_id):
            if message_id == "m1":
                raise ConnectionError("status lookup failed")
            return await original(message_id)

        gateway.get_status = flaky
        summary = await synchronizer.sync_campaign(campaign_id)

        assert summary["errors"] == 1
        assert summary["delivered"] == 1
        assert (await get_recipient(ids["m1"])).delivered_at is None
        assert (await get_recipient(ids["m2"])).delivered_at is not None

    @pytest.mark.asyncio
    async def test_sync_all_only_touches_sending_campaigns(self, synchronizer, gateway, ledger):
        campaign_id, _ = await self._campaign(ledger, gateway, {"m1": "Delivered"})
        tenant_id = (await get_campaign(campaign_id)).tenant_id
        finished = await create_campaign(tenant_id, status="sent")

        totals = await synchronizer.run_once()

        assert totals["campaigns"] == 1
        assert totals["delivered"] == 1
        assert (await get_campaign(finished)).status == "sent"
