"""Credit ledger persistence.

Both stores implement consume() as one atomic read-modify-write per tenant:
  - SqlCreditLedgerStore: single transaction, ``SELECT ... FOR UPDATE`` on the
    ledger row; a unique violation on the usage insert (concurrent replay of the
    same key, or concurrent first provisioning) rolls back and re-reads once.
  - InMemoryCreditLedgerStore: one asyncio.Lock per tenant.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from psyche.billing.credit_ledger import (
    ConsumptionResult,
    LedgerSnapshot,
    UsageRecord,
    evaluate_consumption,
    insufficient,
    new_ledger,
)
from psyche.core.exceptions import InputValidationError
from psyche.models.credit import CreditLedgerRecord, UsageEventRecord

logger = logging.getLogger(__name__)


class CreditLedgerStore(ABC):
    """Persistence contract for tenant ledgers and the usage log."""

    @abstractmethod
    async def consume(
        self,
        tenant_id: str,
        cost: int,
        idempotency_key: str,
        context: dict[str, Any],
        today: date,
        provision_allotment: int | None,
    ) -> ConsumptionResult:
        """Atomically apply one consumption (see CreditLedger.consume)."""
        ...

    @abstractmethod
    async def initialize(
        self,
        tenant_id: str,
        monthly_allotment: int,
        overage_enabled: bool,
        overage_cap: int | None,
        reset_balance: bool,
        today: date,
    ) -> LedgerSnapshot:
        ...

    @abstractmethod
    async def get(self, tenant_id: str) -> LedgerSnapshot | None:
        ...

    @abstractmethod
    async def list_usage(self, tenant_id: str, limit: int = 50, offset: int = 0) -> list[UsageRecord]:
        """Usage records, newest first."""
        ...


def _reinitialized(
    current: LedgerSnapshot | None,
    tenant_id: str,
    monthly_allotment: int,
    overage_enabled: bool,
    overage_cap: int | None,
    reset_balance: bool,
    today: date,
) -> LedgerSnapshot:
    if current is None or reset_balance:
        return new_ledger(tenant_id, monthly_allotment, today, overage_enabled, overage_cap)
    return replace(
        current,
        monthly_allotment=monthly_allotment,
        credits_remaining=min(current.credits_remaining, monthly_allotment),
        overage_enabled=overage_enabled,
        overage_cap=overage_cap,
    )


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryCreditLedgerStore(CreditLedgerStore):
    """Process-local store. Used by tests and single-process deployments."""

    def __init__(self):
        self._ledgers: dict[str, LedgerSnapshot] = {}
        self._usage: dict[tuple[str, str], UsageRecord] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def consume(
        self,
        tenant_id: str,
        cost: int,
        idempotency_key: str,
        context: dict[str, Any],
        today: date,
        provision_allotment: int | None,
    ) -> ConsumptionResult:
        async with self._locks[tenant_id]:
            existing = self._usage.get((tenant_id, idempotency_key))
            if existing is not None:
                return existing.as_result()

            ledger = self._ledgers.get(tenant_id)
            if ledger is None:
                if provision_allotment is None:
                    raise InputValidationError(f"No credit ledger for tenant {tenant_id}")
                ledger = new_ledger(tenant_id, provision_allotment, today)
                logger.info("Provisioned credit ledger for %s with %d credits", tenant_id, provision_allotment)

            decision = evaluate_consumption(ledger, cost, today)
            self._ledgers[tenant_id] = decision.ledger
            if not decision.allowed:
                raise insufficient(decision)

            record = UsageRecord(
                tenant_id=tenant_id,
                idempotency_key=idempotency_key,
                credits=cost,
                is_overage=decision.is_overage,
                credits_remaining_after=decision.ledger.credits_remaining,
                context=dict(context),
                created_at=datetime.now(timezone.utc),
            )
            self._usage[(tenant_id, idempotency_key)] = record
            return replace(record.as_result(), replayed=False)

    async def initialize(
        self,
        tenant_id: str,
        monthly_allotment: int,
        overage_enabled: bool,
        overage_cap: int | None,
        reset_balance: bool,
        today: date,
    ) -> LedgerSnapshot:
        async with self._locks[tenant_id]:
            snapshot = _reinitialized(
                self._ledgers.get(tenant_id),
                tenant_id,
                monthly_allotment,
                overage_enabled,
                overage_cap,
                reset_balance,
                today,
            )
            self._ledgers[tenant_id] = snapshot
            return snapshot

    async def get(self, tenant_id: str) -> LedgerSnapshot | None:
        return self._ledgers.get(tenant_id)

    async def list_usage(self, tenant_id: str, limit: int = 50, offset: int = 0) -> list[UsageRecord]:
        records = [r for (tid, _), r in self._usage.items() if tid == tenant_id]
        records.reverse()  # insertion order -> newest first
        return records[offset : offset + limit]


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------


def _snapshot(row: CreditLedgerRecord) -> LedgerSnapshot:
    return LedgerSnapshot(
        tenant_id=row.tenant_id,
        monthly_allotment=row.monthly_allotment,
        credits_remaining=row.credits_remaining,
        overage_enabled=row.overage_enabled,
        overage_cap=row.overage_cap,
        overage_consumed=row.overage_consumed,
        last_reset_date=row.last_reset_date,
    )


def _write(row: CreditLedgerRecord, snapshot: LedgerSnapshot) -> None:
    row.monthly_allotment = snapshot.monthly_allotment
    row.credits_remaining = snapshot.credits_remaining
    row.overage_enabled = snapshot.overage_enabled
    row.overage_cap = snapshot.overage_cap
    row.overage_consumed = snapshot.overage_consumed
    row.last_reset_date = snapshot.last_reset_date


def _usage(row: UsageEventRecord) -> UsageRecord:
    return UsageRecord(
        tenant_id=row.tenant_id,
        idempotency_key=row.idempotency_key,
        credits=row.credits,
        is_overage=row.is_overage,
        credits_remaining_after=row.credits_remaining_after,
        context=row.context or {},
        created_at=row.created_at,
    )


class SqlCreditLedgerStore(CreditLedgerStore):
    """PostgreSQL-backed store (works on SQLite without row locks for tests)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def consume(
        self,
        tenant_id: str,
        cost: int,
        idempotency_key: str,
        context: dict[str, Any],
        today: date,
        provision_allotment: int | None,
    ) -> ConsumptionResult:
        try:
            return await self._consume_once(tenant_id, cost, idempotency_key, context, today, provision_allotment)
        except IntegrityError:
            logger.info("Concurrent consumption for %s key=%s, re-reading", tenant_id, idempotency_key)
            return await self._consume_once(tenant_id, cost, idempotency_key, context, today, provision_allotment)

    async def _consume_once(
        self,
        tenant_id: str,
        cost: int,
        idempotency_key: str,
        context: dict[str, Any],
        today: date,
        provision_allotment: int | None,
    ) -> ConsumptionResult:
        rejection = None
        async with self._session_factory() as db:
            async with db.begin():
                row = (
                    await db.execute(
                        select(CreditLedgerRecord).where(CreditLedgerRecord.tenant_id == tenant_id).with_for_update()
                    )
                ).scalar_one_or_none()

                existing = (
                    await db.execute(
                        select(UsageEventRecord).where(
                            UsageEventRecord.tenant_id == tenant_id,
                            UsageEventRecord.idempotency_key == idempotency_key,
                        )
                    )
                ).scalar_one_or_none()
                if existing is not None:
                    return _usage(existing).as_result()

                if row is None:
                    if provision_allotment is None:
                        raise InputValidationError(f"No credit ledger for tenant {tenant_id}")
                    row = CreditLedgerRecord(tenant_id=tenant_id)
                    _write(row, new_ledger(tenant_id, provision_allotment, today))
                    db.add(row)
                    logger.info("Provisioned credit ledger for %s with %d credits", tenant_id, provision_allotment)

                decision = evaluate_consumption(_snapshot(row), cost, today)
                _write(row, decision.ledger)

                if not decision.allowed:
                    # Commit a pending monthly reset even though the request is denied
                    rejection = decision
                else:
                    db.add(
                        UsageEventRecord(
                            tenant_id=tenant_id,
                            idempotency_key=idempotency_key,
                            credits=cost,
                            is_overage=decision.is_overage,
                            credits_remaining_after=decision.ledger.credits_remaining,
                            context=context,
                        )
                    )

        if rejection is not None:
            raise insufficient(rejection)
        return ConsumptionResult(
            tenant_id=tenant_id,
            idempotency_key=idempotency_key,
            consumed=cost,
            remaining=decision.ledger.credits_remaining,
            is_overage=decision.is_overage,
        )

    async def initialize(
        self,
        tenant_id: str,
        monthly_allotment: int,
        overage_enabled: bool,
        overage_cap: int | None,
        reset_balance: bool,
        today: date,
    ) -> LedgerSnapshot:
        async with self._session_factory() as db:
            async with db.begin():
                row = (
                    await db.execute(
                        select(CreditLedgerRecord).where(CreditLedgerRecord.tenant_id == tenant_id).with_for_update()
                    )
                ).scalar_one_or_none()
                snapshot = _reinitialized(
                    _snapshot(row) if row is not None else None,
                    tenant_id,
                    monthly_allotment,
                    overage_enabled,
                    overage_cap,
                    reset_balance,
                    today,
                )
                if row is None:
                    row = CreditLedgerRecord(tenant_id=tenant_id)
                    db.add(row)
                _write(row, snapshot)
        return snapshot

    async def get(self, tenant_id: str) -> LedgerSnapshot | None:
        async with self._session_factory() as db:
            row = await db.get(CreditLedgerRecord, tenant_id)
            return _snapshot(row) if row is not None else None

    async def list_usage(self, tenant_id: str, limit: int = 50, offset: int = 0) -> list[UsageRecord]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(UsageEventRecord)
                .where(UsageEventRecord.tenant_id == tenant_id)
                .order_by(UsageEventRecord.created_at.desc(), UsageEventRecord.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return [_usage(row) for row in result.scalars().all()]
