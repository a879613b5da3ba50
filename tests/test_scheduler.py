"""
Tests for the campaign scheduler: exactly-once claims and send-time requests.
"""
import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from config.settings import SchedulerConfig
from core.errors import CampaignStateError, ClaimConflict
from core.scheduler import CampaignScheduler, campaign_job_id
from job_queue.message_queue import JobNames, Queues

from conftest import create_campaign, get_campaign, make_queue


pytestmark = pytest.mark.usefixtures("db")


def _now():
    return datetime.now(timezone.utc)


@pytest.fixture
def queue():
    return make_queue(Queues.CAMPAIGN)


@pytest.fixture
def scheduler(queue):
    return CampaignScheduler(queue, SchedulerConfig(interval=60, startup_delay=0, batch_size=50))


# ──────────────────────────────────────────────────────────────
#  Periodic pass
# ──────────────────────────────────────────────────────────────

class TestRunOnce:
    @pytest.mark.asyncio
    async def test_due_campaign_claimed_and_queued(self, scheduler, queue, ledger):
        tenant_id = await ledger.create_tenant("Shop", initial_credits=100)
        campaign_id = await create_campaign(tenant_id, ["+41790000001"], status="scheduled",
                                            scheduled_at=_now() - timedelta(seconds=1))

        stats = await scheduler.run_once()

        assert stats.found == 1
        assert stats.claimed == 1
        assert stats.enqueued == 1
        assert (await get_campaign(campaign_id)).status == "sending"
        assert (await queue.primary.get_stats())["waiting"] == 1

    @pytest.mark.asyncio
    async def test_future_campaign_left_alone(self, scheduler, queue, ledger):
        tenant_id = await ledger.create_tenant("Shop", initial_credits=100)
        campaign_id = await create_campaign(tenant_id, ["+41790000001"], status="scheduled",
                                            scheduled_at=_now() + timedelta(hours=1))

        stats = await scheduler.run_once()

        assert stats.found == 0
        assert (await get_campaign(campaign_id)).status == "scheduled"

    @pytest.mark.asyncio
    async def test_concurrent_passes_queue_once(self, queue, ledger):
        tenant_id = await ledger.create_tenant("Shop", initial_credits=100)
        campaign_id = await create_campaign(tenant_id, ["+41790000001"], status="scheduled",
                                            scheduled_at=_now() - timedelta(seconds=1))
        config = SchedulerConfig(startup_delay=0)
        first, second = CampaignScheduler(queue, config), CampaignScheduler(queue, config)

        results = await asyncio.gather(first.run_once(), second.run_once())

        assert sum(r.claimed for r in results) == 1
        assert (await get_campaign(campaign_id)).status == "sending"
        assert (await queue.primary.get_stats())["waiting"] == 1

    @pytest.mark.asyncio
    async def test_second_pass_finds_nothing(self, scheduler, queue, ledger):
        tenant_id = await ledger.create_tenant("Shop", initial_credits=100)
        await create_campaign(tenant_id, ["+41790000001"], status="scheduled",
                              scheduled_at=_now() - timedelta(seconds=1))

        await scheduler.run_once()
        stats = await scheduler.run_once()

        assert stats.found == 0
        assert (await queue.primary.get_stats())["waiting"] == 1

    @pytest.mark.asyncio
    async def test_enqueue_failure_releases_claim(self, ledger):
        tenant_id = await ledger.create_tenant("Shop", initial_credits=100)
        campaign_id = await create_campaign(tenant_id, ["+41790000001"], status="scheduled",
                                            scheduled_at=_now() - timedelta(seconds=1))
        broken = MagicMock()
        broken.add = AsyncMock(side_effect=RuntimeError("queue storage down"))
        scheduler = CampaignScheduler(broken, SchedulerConfig(startup_delay=0))

        stats = await scheduler.run_once()

        assert stats.claimed == 1
        assert stats.errors == 1
        assert (await get_campaign(campaign_id)).status == "scheduled"

    @pytest.mark.asyncio
    async def test_failed_release_does_not_abort_pass(self, ledger):
        tenant_id = await ledger.create_tenant("Shop", initial_credits=100)
        first = await create_campaign(tenant_id, ["+41790000001"], status="scheduled",
                                      scheduled_at=_now() - timedelta(minutes=2))
        second = await create_campaign(tenant_id, ["+41790000002"], status="scheduled",
                                       scheduled_at=_now() - timedelta(minutes=1))
        flaky = MagicMock()
        flaky.add = AsyncMock(side_effect=[RuntimeError("queue storage down"), None])
        scheduler = CampaignScheduler(flaky, SchedulerConfig(startup_delay=0))
        scheduler._release = AsyncMock(side_effect=RuntimeError("database is locked"))

        stats = await scheduler.run_once()

        assert stats.claimed == 2
        assert stats.enqueued == 1
        assert stats.errors == 1
        scheduler._release.assert_awaited_once()
        assert flaky.add.await_args.args[1]["campaign_id"] == second
        assert (await get_campaign(first)).status == "sending"

    @pytest.mark.asyncio
    async def test_dispatch_job_id_derived_from_campaign(self, ledger):
        tenant_id = await ledger.create_tenant("Shop", initial_credits=100)
        campaign_id = await create_campaign(tenant_id, ["+41790000001"], status="scheduled",
                                            scheduled_at=_now() - timedelta(seconds=1))
        recorder = MagicMock()
        recorder.add = AsyncMock()
        await CampaignScheduler(recorder, SchedulerConfig(startup_delay=0)).run_once()

        recorder.add.assert_awaited_once_with(
            JobNames.SEND_CAMPAIGN,
            {"campaign_id": campaign_id, "tenant_id": tenant_id},
            job_id=campaign_job_id(campaign_id),
        )


# ──────────────────────────────────────────────────────────────
#  Claims & requests
# ──────────────────────────────────────────────────────────────

class TestCampaignRequests:
    @pytest.mark.asyncio
    async def test_claim_conflict_when_already_sending(self, scheduler, ledger):
        tenant_id = await ledger.create_tenant("Shop", initial_credits=100)
        campaign_id = await create_campaign(tenant_id, status="sending")
        with pytest.raises(ClaimConflict) as exc:
            await scheduler.claim(campaign_id)
        assert exc.value.current_status == "sending"

    @pytest.mark.asyncio
    async def test_send_now_claims_draft(self, scheduler, queue, ledger):
        tenant_id = await ledger.create_tenant("Shop", initial_credits=100)
        campaign_id = await create_campaign(tenant_id, ["+41790000001"])

        job = await scheduler.send_now(tenant_id, campaign_id)

        assert job.job_id == campaign_job_id(campaign_id)
        assert (await get_campaign(campaign_id)).status == "sending"

    @pytest.mark.asyncio
    async def test_send_now_rejects_other_tenant(self, scheduler, ledger):
        tenant_id = await ledger.create_tenant("Shop", initial_credits=100)
        campaign_id = await create_campaign(tenant_id, ["+41790000001"])
        with pytest.raises(CampaignStateError):
            await scheduler.send_now("someone-else", campaign_id)
        assert (await get_campaign(campaign_id)).status == "draft"

    @pytest.mark.asyncio
    async def test_send_now_rejects_finished_campaign(self, scheduler, ledger):
        tenant_id = await ledger.create_tenant("Shop", initial_credits=100)
        campaign_id = await create_campaign(tenant_id, ["+41790000001"], status="sent")
        with pytest.raises(CampaignStateError) as exc:
            await scheduler.send_now(tenant_id, campaign_id)
        assert exc.value.status == "sent"

    @pytest.mark.asyncio
    async def test_send_now_restores_status_when_queue_fails(self, ledger):
        tenant_id = await ledger.create_tenant("Shop", initial_credits=100)
        campaign_id = await create_campaign(tenant_id, ["+41790000001"])
        broken = MagicMock()
        broken.add = AsyncMock(side_effect=RuntimeError("queue storage down"))

        with pytest.raises(RuntimeError):
            await CampaignScheduler(broken, SchedulerConfig()).send_now(tenant_id, campaign_id)
        assert (await get_campaign(campaign_id)).status == "draft"

    @pytest.mark.asyncio
    async def test_schedule_campaign(self, scheduler, ledger):
        tenant_id = await ledger.create_tenant("Shop", initial_credits=100)
        campaign_id = await create_campaign(tenant_id, ["+41790000001"])
        when = _now() + timedelta(days=1)

        campaign = await scheduler.schedule_campaign(campaign_id, when, tenant_id=tenant_id)

        assert campaign.status == "scheduled"

    @pytest.mark.asyncio
    async def test_schedule_in_past_rejected(self, scheduler, ledger):
        tenant_id = await ledger.create_tenant("Shop", initial_credits=100)
        campaign_id = await create_campaign(tenant_id, ["+41790000001"])
        with pytest.raises(ValueError):
            await scheduler.schedule_campaign(campaign_id, _now() - timedelta(minutes=5))

    @pytest.mark.asyncio
    async def test_cancel_only_before_claim(self, scheduler, ledger):
        tenant_id = await ledger.create_tenant("Shop", initial_credits=100)
        draft = await create_campaign(tenant_id, ["+41790000001"])
        sending = await create_campaign(tenant_id, ["+41790000001"], status="sending")

        await scheduler.cancel_campaign(draft)
        assert (await get_campaign(draft)).status == "cancelled"

        with pytest.raises(CampaignStateError):
            await scheduler.cancel_campaign(sending)
        assert (await get_campaign(sending)).status == "sending"
