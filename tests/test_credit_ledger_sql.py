"""Tests for the SQL-backed credit ledger store (SQLite in-memory)."""

from datetime import date

import pytest

from psyche.billing.credit_ledger import CreditLedger
from psyche.billing.stores import SqlCreditLedgerStore
from psyche.core.exceptions import InputValidationError, InsufficientCreditsError


class _Today:
    def __init__(self, day: date):
        self.day = day

    def __call__(self) -> date:
        return self.day


@pytest.fixture
def today():
    return _Today(date(2026, 10, 15))


@pytest.fixture
def ledger(session_factory, today):
    return CreditLedger(SqlCreditLedgerStore(session_factory), default_allotment=10, today=today)


class TestSqlCreditLedger:
    @pytest.mark.asyncio
    async def test_consume_and_balance(self, ledger):
        result = await ledger.consume("acme", 3, "k1", {"operation": "psychographic_analysis"})
        assert result.remaining == 7
        balance = await ledger.get_balance("acme")
        assert balance.credits_remaining == 7
        assert balance.monthly_allotment == 10

    @pytest.mark.asyncio
    async def test_replay_returns_recorded_outcome(self, ledger):
        await ledger.consume("acme", 3, "k1")
        await ledger.consume("acme", 2, "k2")
        replay = await ledger.consume("acme", 3, "k1")
        assert replay.replayed
        assert replay.remaining == 7
        assert (await ledger.get_balance("acme")).credits_remaining == 5

    @pytest.mark.asyncio
    async def test_usage_newest_first(self, ledger):
        await ledger.consume("acme", 1, "first")
        await ledger.consume("acme", 1, "second")
        usage = await ledger.list_usage("acme")
        assert [u.idempotency_key for u in usage] == ["second", "first"]
        assert usage[0].credits_remaining_after == 8

    @pytest.mark.asyncio
    async def test_insufficient_credits(self, ledger):
        await ledger.initialize_ledger("acme", monthly_allotment=2)
        with pytest.raises(InsufficientCreditsError) as exc_info:
            await ledger.consume("acme", 3, "k1")
        assert exc_info.value.remaining == 2
        assert await ledger.list_usage("acme") == []

    @pytest.mark.asyncio
    async def test_rejection_still_persists_monthly_reset(self, ledger, today):
        today.day = date(2026, 9, 10)
        await ledger.initialize_ledger("acme", monthly_allotment=2)
        await ledger.consume("acme", 2, "k1")
        today.day = date(2026, 10, 2)
        with pytest.raises(InsufficientCreditsError):
            await ledger.consume("acme", 5, "k2")
        stored = await ledger.store.get("acme")
        assert stored.credits_remaining == 2
        assert stored.last_reset_date == date(2026, 10, 2)

    @pytest.mark.asyncio
    async def test_overage(self, ledger):
        await ledger.initialize_ledger("acme", monthly_allotment=1, overage_enabled=True, overage_cap=4)
        await ledger.consume("acme", 1, "k1")
        result = await ledger.consume("acme", 3, "k2")
        assert result.is_overage
        assert result.remaining == 0
        with pytest.raises(InsufficientCreditsError, match="Overage cap"):
            await ledger.consume("acme", 2, "k3")

    @pytest.mark.asyncio
    async def test_unknown_tenant_without_auto_provision(self, session_factory, today):
        ledger = CreditLedger(SqlCreditLedgerStore(session_factory), auto_provision=False, today=today)
        with pytest.raises(InputValidationError):
            await ledger.consume("ghost", 1, "k1")
        assert await ledger.get_balance("ghost") is None
