"""
Tests for the credit ledger.

Covers:
  - consume / refund / grant arithmetic and the audit trail
  - the "missing credits" error carried to the tenant
  - concurrent debits never overdrawing a balance
"""
import asyncio
import pytest

from sqlalchemy import select

from core.errors import InsufficientCreditsError, TenantNotFoundError
from database.models import LedgerEntryRow
from database.session import get_session
from models.schemas import LedgerReason


pytestmark = pytest.mark.usefixtures("db")


# ──────────────────────────────────────────────────────────────
#  consume()
# ──────────────────────────────────────────────────────────────

class TestConsume:
    @pytest.mark.asyncio
    async def test_consume_debits_balance(self, ledger):
        tenant_id = await ledger.create_tenant("Shop", initial_credits=10)
        result = await ledger.consume(tenant_id, 4, reference="campaign:c1")
        assert result.remaining == 6
        assert result.delta == -4
        assert await ledger.get_balance(tenant_id) == 6

    @pytest.mark.asyncio
    async def test_short_balance_reports_missing_credits(self, ledger):
        tenant_id = await ledger.create_tenant("Shop", initial_credits=5)
        with pytest.raises(InsufficientCreditsError) as exc:
            await ledger.consume(tenant_id, 6)
        assert exc.value.missing == 1
        assert exc.value.available == 5
        assert "You need 1 more credits" in str(exc.value)
        assert await ledger.get_balance(tenant_id) == 5

    @pytest.mark.asyncio
    async def test_exact_balance_can_be_spent(self, ledger):
        tenant_id = await ledger.create_tenant("Shop", initial_credits=5)
        result = await ledger.consume(tenant_id, 5)
        assert result.remaining == 0

    @pytest.mark.asyncio
    async def test_non_positive_count_rejected(self, ledger):
        tenant_id = await ledger.create_tenant("Shop", initial_credits=5)
        with pytest.raises(ValueError):
            await ledger.consume(tenant_id, 0)
        with pytest.raises(ValueError):
            await ledger.consume(tenant_id, -3)
        assert await ledger.get_balance(tenant_id) == 5

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, ledger):
        with pytest.raises(TenantNotFoundError):
            await ledger.consume("missing", 1)

    @pytest.mark.asyncio
    async def test_concurrent_debits_never_overdraw(self, ledger):
        tenant_id = await ledger.create_tenant("Shop", initial_credits=5)

        results = await asyncio.gather(
            ledger.consume(tenant_id, 5, reference="a"),
            ledger.consume(tenant_id, 5, reference="b"),
            return_exceptions=True,
        )

        succeeded = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, InsufficientCreditsError)]
        assert len(succeeded) == 1
        assert len(rejected) == 1
        assert await ledger.get_balance(tenant_id) == 0
        assert await ledger.verify(tenant_id)

    @pytest.mark.asyncio
    async def test_many_small_concurrent_debits(self, ledger):
        tenant_id = await ledger.create_tenant("Shop", initial_credits=7)

        results = await asyncio.gather(
            *(ledger.consume(tenant_id, 1) for _ in range(10)),
            return_exceptions=True,
        )

        assert sum(1 for r in results if not isinstance(r, Exception)) == 7
        assert await ledger.get_balance(tenant_id) == 0
        assert await ledger.verify(tenant_id)


# ──────────────────────────────────────────────────────────────
#  refund() / grant()
# ──────────────────────────────────────────────────────────────

class TestRefundAndGrant:
    @pytest.mark.asyncio
    async def test_refund_restores_credit(self, ledger):
        tenant_id = await ledger.create_tenant("Shop", initial_credits=3)
        await ledger.consume(tenant_id, 3)
        result = await ledger.refund(tenant_id, 1, reason="send_failed:r1")
        assert result.remaining == 1

        stats = await ledger.usage_stats(tenant_id)
        assert stats["total_used"] == 2
        assert await ledger.verify(tenant_id)

    @pytest.mark.asyncio
    async def test_refund_requires_positive_count(self, ledger):
        tenant_id = await ledger.create_tenant("Shop", initial_credits=3)
        with pytest.raises(ValueError):
            await ledger.refund(tenant_id, 0)

    @pytest.mark.asyncio
    async def test_refund_unknown_tenant(self, ledger):
        with pytest.raises(TenantNotFoundError):
            await ledger.refund("missing", 1)

    @pytest.mark.asyncio
    async def test_grant_tops_up(self, ledger):
        tenant_id = await ledger.create_tenant("Shop")
        await ledger.grant(tenant_id, 500, reference="package:starter")
        assert await ledger.get_balance(tenant_id) == 500
        stats = await ledger.usage_stats(tenant_id)
        assert stats["total_bought"] == 500

    @pytest.mark.asyncio
    async def test_debit_inside_caller_transaction_rolls_back(self, ledger):
        tenant_id = await ledger.create_tenant("Shop", initial_credits=10)

        with pytest.raises(RuntimeError):
            async with get_session() as db:
                await ledger.consume(tenant_id, 4, db=db)
                raise RuntimeError("work failed")

        assert await ledger.get_balance(tenant_id) == 10
        assert await ledger.verify(tenant_id)


# ──────────────────────────────────────────────────────────────
#  Reads & audit trail
# ──────────────────────────────────────────────────────────────

class TestReads:
    @pytest.mark.asyncio
    async def test_check_only_does_not_mutate(self, ledger):
        tenant_id = await ledger.create_tenant("Shop", initial_credits=5)
        check = await ledger.check_only(tenant_id, 8)
        assert not check.can_send
        assert check.missing == 3
        assert (await ledger.check_only(tenant_id, 5)).can_send
        assert await ledger.get_balance(tenant_id) == 5

    @pytest.mark.asyncio
    async def test_every_mutation_is_recorded(self, ledger):
        tenant_id = await ledger.create_tenant("Shop", initial_credits=10)
        await ledger.consume(tenant_id, 4, reference="campaign:c1")
        await ledger.refund(tenant_id, 1)
        await ledger.grant(tenant_id, 5)

        async with get_session() as db:
            result = await db.execute(
                select(LedgerEntryRow.delta, LedgerEntryRow.reason, LedgerEntryRow.balance_after)
                .where(LedgerEntryRow.tenant_id == tenant_id)
            )
            entries = sorted(result.all(), key=lambda e: e.balance_after)

        assert [e.delta for e in entries] == [-4, 1, 10, 5]
        assert {e.reason for e in entries} == {
            LedgerReason.GRANT.value, LedgerReason.DEBIT.value,
            LedgerReason.REFUND.value, LedgerReason.PURCHASE.value,
        }
        assert await ledger.get_balance(tenant_id) == 12
        assert await ledger.verify(tenant_id)
