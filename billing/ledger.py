"""
Credit Ledger — atomic per-tenant balance tracking.

Every mutation is a single conditional UPDATE on the tenant row plus an
append-only LedgerEntry written in the same transaction, so for every tenant:

    tenants.credit_balance == SUM(ledger_entries.delta)

consume() never reads-then-writes in Python: the WHERE clause
``credit_balance >= count`` is the lock, which keeps concurrent debits from
driving the balance negative on any storage engine (and across processes).

Mutations accept an optional ``db`` session so a debit can commit or roll
back together with the work it pays for.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import InsufficientCreditsError, TenantNotFoundError
from database.models import TenantRow, LedgerEntryRow
from database.session import get_session, session_scope
from models.schemas import CreditCheck, LedgerReason, LedgerResult

logger = structlog.get_logger()


class CreditLedger:
    """Tenant credit balance with an append-only audit trail."""

    # ── Tenants ───────────────────────────────────────────────

    async def create_tenant(self, name: str = "", initial_credits: int = 0,
                            tenant_id: Optional[str] = None) -> str:
        """Create a tenant; an opening balance is recorded as a grant entry."""
        async with get_session() as db:
            tenant = TenantRow(name=name, credit_balance=initial_credits,
                               total_bought=initial_credits)
            if tenant_id:
                tenant.id = tenant_id
            db.add(tenant)
            await db.flush()
            if initial_credits:
                db.add(LedgerEntryRow(
                    tenant_id=tenant.id,
                    delta=initial_credits,
                    reason=LedgerReason.GRANT.value,
                    reference="opening_balance",
                    balance_after=initial_credits,
                ))
            logger.info("tenant_created", tenant_id=tenant.id, credits=initial_credits)
            return tenant.id

    # ── Mutations ─────────────────────────────────────────────

    async def consume(self, tenant_id: str, count: int, reference: str = "",
                      db: Optional[AsyncSession] = None) -> LedgerResult:
        """
        Debit ``count`` credits or fail without touching the balance.

        Raises InsufficientCreditsError (with ``missing``) when the balance
        does not cover the debit, TenantNotFoundError for unknown tenants.
        """
        if count <= 0:
            raise ValueError("Message count must be greater than 0")
        async with session_scope(db) as db:
            return await self._consume(db, tenant_id, count, reference)

    async def _consume(self, db: AsyncSession, tenant_id: str, count: int, reference: str) -> LedgerResult:
        result = await db.execute(
            update(TenantRow)
            .where(TenantRow.id == tenant_id, TenantRow.credit_balance >= count)
            .values(
                credit_balance=TenantRow.credit_balance - count,
                total_used=TenantRow.total_used + count,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            available = await self._read_balance(db, tenant_id)
            error = InsufficientCreditsError(tenant_id, requested=count, available=available)
            logger.warning("insufficient_credits",
                           tenant_id=tenant_id,
                           requested=count,
                           available=available,
                           missing=error.missing)
            raise error

        remaining = await self._read_balance(db, tenant_id)
        db.add(LedgerEntryRow(
            tenant_id=tenant_id,
            delta=-count,
            reason=LedgerReason.DEBIT.value,
            reference=reference,
            balance_after=remaining,
        ))
        logger.info("credits_consumed",
                    tenant_id=tenant_id,
                    consumed=count,
                    remaining=remaining,
                    reference=reference)
        return LedgerResult(tenant_id=tenant_id, remaining=remaining, delta=-count)

    async def refund(self, tenant_id: str, count: int, reason: str = "refund",
                     db: Optional[AsyncSession] = None) -> LedgerResult:
        """Undo a debit after a downstream failure."""
        if count <= 0:
            raise ValueError("Credits must be greater than 0")
        async with session_scope(db) as db:
            return await self._refund(db, tenant_id, count, reason)

    async def _refund(self, db: AsyncSession, tenant_id: str, count: int, reason: str) -> LedgerResult:
        result = await db.execute(
            update(TenantRow)
            .where(TenantRow.id == tenant_id)
            .values(
                credit_balance=TenantRow.credit_balance + count,
                total_used=TenantRow.total_used - count,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise TenantNotFoundError(tenant_id)

        remaining = await self._read_balance(db, tenant_id)
        db.add(LedgerEntryRow(
            tenant_id=tenant_id,
            delta=count,
            reason=LedgerReason.REFUND.value,
            reference=reason,
            balance_after=remaining,
        ))
        logger.info("credits_refunded",
                    tenant_id=tenant_id,
                    refunded=count,
                    remaining=remaining,
                    reason=reason)
        return LedgerResult(tenant_id=tenant_id, remaining=remaining, delta=count)

    async def grant(self, tenant_id: str, count: int,
                    reason: LedgerReason = LedgerReason.PURCHASE,
                    reference: str = "") -> LedgerResult:
        """Top up a balance (package purchase or manual grant)."""
        if count <= 0:
            raise ValueError("Credits must be greater than 0")

        async with get_session() as db:
            result = await db.execute(
                update(TenantRow)
                .where(TenantRow.id == tenant_id)
                .values(
                    credit_balance=TenantRow.credit_balance + count,
                    total_bought=TenantRow.total_bought + count,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise TenantNotFoundError(tenant_id)

            remaining = await self._read_balance(db, tenant_id)
            db.add(LedgerEntryRow(
                tenant_id=tenant_id,
                delta=count,
                reason=LedgerReason(reason).value,
                reference=reference,
                balance_after=remaining,
            ))

        logger.info("credits_granted", tenant_id=tenant_id, credits=count, remaining=remaining)
        return LedgerResult(tenant_id=tenant_id, remaining=remaining, delta=count)

    # ── Reads ─────────────────────────────────────────────────

    async def check_only(self, tenant_id: str, count: int) -> CreditCheck:
        """
        Preview whether ``count`` messages could be sent right now.

        The answer can be stale as soon as it is returned; use it for UI
        previews only. Sends are gated by consume().
        """
        async with get_session() as db:
            available = await self._read_balance(db, tenant_id)
        can_send = available >= count
        return CreditCheck(
            tenant_id=tenant_id,
            can_send=can_send,
            available=available,
            missing=0 if can_send else count - available,
        )

    async def get_balance(self, tenant_id: str) -> int:
        async with get_session() as db:
            return await self._read_balance(db, tenant_id)

    async def usage_stats(self, tenant_id: str) -> dict[str, Any]:
        async with get_session() as db:
            tenant = await db.get(TenantRow, tenant_id)
            if tenant is None:
                raise TenantNotFoundError(tenant_id)
            return {
                "balance": tenant.credit_balance,
                "total_bought": tenant.total_bought,
                "total_used": tenant.total_used,
                "active": tenant.active,
            }

    async def verify(self, tenant_id: str) -> bool:
        """True when the balance equals the sum of the tenant's ledger entries."""
        async with get_session() as db:
            balance = await self._read_balance(db, tenant_id)
            total = await db.scalar(
                select(func.coalesce(func.sum(LedgerEntryRow.delta), 0))
                .where(LedgerEntryRow.tenant_id == tenant_id)
            )
        consistent = balance == int(total or 0)
        if not consistent:
            logger.error("ledger_inconsistent", tenant_id=tenant_id,
                         balance=balance, ledger_sum=total)
        return consistent

    @staticmethod
    async def _read_balance(db: AsyncSession, tenant_id: str) -> int:
        balance = await db.scalar(
            select(TenantRow.credit_balance).where(TenantRow.id == tenant_id)
        )
        if balance is None:
            raise TenantNotFoundError(tenant_id)
        return balance
