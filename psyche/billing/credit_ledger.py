"""Credit Ledger: per-tenant quota accounting with idempotent consumption.

consume(tenant_id, cost, idempotency_key, context) contract:
  1. Validate: cost is an int in (0, 10000], idempotency_key non-empty
  2. Idempotency: an existing UsageEvent for (tenant_id, key) is returned as-is
  3. Lazy monthly reset: last_reset_date before this month -> credits_remaining = allotment
  4. Sufficient balance -> decrement, UsageEvent(is_overage=False)
  5. Insufficient + overage disabled (or overage cap hit) -> INSUFFICIENT_CREDITS
  6. Insufficient + overage enabled -> accept, balance untouched, UsageEvent(is_overage=True)

Steps 2-6 run as one atomic read-modify-write inside the store.
The decision itself (steps 3-6) is the pure ``evaluate_consumption``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Any

from psyche.core.exceptions import InputValidationError, InsufficientCreditsError
from psyche.core.metrics import CREDITS_CONSUMED

if TYPE_CHECKING:
    from psyche.billing.stores import CreditLedgerStore

logger = logging.getLogger(__name__)

MAX_COST = 10_000
MAX_IDEMPOTENCY_KEY_LENGTH = 255


# ---------------------------------------------------------------------------
# Data containers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LedgerSnapshot:
    """Point-in-time view of one tenant's ledger row."""

    tenant_id: str
    monthly_allotment: int
    credits_remaining: int
    overage_enabled: bool
    last_reset_date: date
    overage_cap: int | None = None  # None = unbounded
    overage_consumed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "monthly_allotment": self.monthly_allotment,
            "credits_remaining": self.credits_remaining,
            "overage_enabled": self.overage_enabled,
            "overage_cap": self.overage_cap,
            "overage_consumed": self.overage_consumed,
            "last_reset_date": self.last_reset_date.isoformat(),
        }


@dataclass(frozen=True)
class ConsumptionResult:
    """Outcome of an accepted consume(). Replays return the recorded outcome."""

    tenant_id: str
    idempotency_key: str
    consumed: int
    remaining: int
    is_overage: bool
    replayed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "idempotency_key": self.idempotency_key,
            "consumed": self.consumed,
            "remaining": self.remaining,
            "is_overage": self.is_overage,
            "replayed": self.replayed,
        }


@dataclass(frozen=True)
class UsageRecord:
    """One row of the usage (idempotency) log."""

    tenant_id: str
    idempotency_key: str
    credits: int
    is_overage: bool
    credits_remaining_after: int
    context: dict[str, Any]
    created_at: datetime

    def as_result(self) -> ConsumptionResult:
        return ConsumptionResult(
            tenant_id=self.tenant_id,
            idempotency_key=self.idempotency_key,
            consumed=self.credits,
            remaining=self.credits_remaining_after,
            is_overage=self.is_overage,
            replayed=True,
        )


@dataclass(frozen=True)
class ConsumptionDecision:
    """Result of evaluating one request against a ledger snapshot."""

    allowed: bool
    ledger: LedgerSnapshot  # state to persist (includes any monthly reset)
    is_overage: bool = False
    reset_applied: bool = False
    reason: str = ""


# ---------------------------------------------------------------------------
# Pure rules
# ---------------------------------------------------------------------------


def month_start(day: date) -> date:
    return day.replace(day=1)


def apply_monthly_reset(snapshot: LedgerSnapshot, today: date) -> tuple[LedgerSnapshot, bool]:
    """Reset the balance if the last reset happened before the current month."""
    if snapshot.last_reset_date >= month_start(today):
        return snapshot, False
    return (
        replace(
            snapshot,
            credits_remaining=snapshot.monthly_allotment,
            overage_consumed=0,
            last_reset_date=today,
        ),
        True,
    )


def evaluate_consumption(snapshot: LedgerSnapshot, cost: int, today: date) -> ConsumptionDecision:
    """Decide a consumption request. Never lets credits_remaining go negative."""
    ledger, reset = apply_monthly_reset(snapshot, today)

    if ledger.credits_remaining >= cost:
        return ConsumptionDecision(
            allowed=True,
            ledger=replace(ledger, credits_remaining=ledger.credits_remaining - cost),
            reset_applied=reset,
        )

    if not ledger.overage_enabled:
        return ConsumptionDecision(
            allowed=False,
            ledger=ledger,
            reset_applied=reset,
            reason=f"Insufficient credits: {ledger.credits_remaining} remaining, {cost} required",
        )

    if ledger.overage_cap is not None and ledger.overage_consumed + cost > ledger.overage_cap:
        return ConsumptionDecision(
            allowed=False,
            ledger=ledger,
            reset_applied=reset,
            reason=f"Overage cap reached: {ledger.overage_consumed}/{ledger.overage_cap} used, {cost} required",
        )

    return ConsumptionDecision(
        allowed=True,
        ledger=replace(ledger, overage_consumed=ledger.overage_consumed + cost),
        is_overage=True,
        reset_applied=reset,
    )


def new_ledger(
    tenant_id: str,
    monthly_allotment: int,
    today: date,
    overage_enabled: bool = False,
    overage_cap: int | None = None,
) -> LedgerSnapshot:
    return LedgerSnapshot(
        tenant_id=tenant_id,
        monthly_allotment=monthly_allotment,
        credits_remaining=monthly_allotment,
        overage_enabled=overage_enabled,
        overage_cap=overage_cap,
        last_reset_date=today,
    )


def validate_consumption_input(tenant_id: str, cost: Any, idempotency_key: Any) -> None:
    if not tenant_id or not isinstance(tenant_id, str):
        raise InputValidationError("tenant_id is required")
    if isinstance(cost, bool) or not isinstance(cost, int):
        raise InputValidationError("cost must be an integer", {"cost": repr(cost)})
    if not 0 < cost <= MAX_COST:
        raise InputValidationError(f"cost must be in (0, {MAX_COST}]", {"cost": cost})
    if not isinstance(idempotency_key, str) or not idempotency_key.strip():
        raise InputValidationError("idempotency_key is required")
    if len(idempotency_key) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise InputValidationError(f"idempotency_key longer than {MAX_IDEMPOTENCY_KEY_LENGTH} characters")


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class CreditLedger:
    """Tenant credit ledger service.

    Usage:
        ledger = CreditLedger(SqlCreditLedgerStore(session_factory))
        result = await ledger.consume(tenant_id, 2, f"{cycle_id}:psychographic_analysis")
    """

    def __init__(
        self,
        store: CreditLedgerStore,
        default_allotment: int = 1000,
        auto_provision: bool = True,
        today: Callable[[], date] = _utc_today,
    ):
        self.store = store
        self.default_allotment = default_allotment
        self.auto_provision = auto_provision
        self._today = today

    async def consume(
        self,
        tenant_id: str,
        cost: int,
        idempotency_key: str,
        context: dict[str, Any] | None = None,
    ) -> ConsumptionResult:
        """Consume credits.

        Raises:
            InputValidationError: bad cost/key, or unknown tenant without auto-provisioning.
            InsufficientCreditsError: balance (and overage allowance) cannot cover the cost.
        """
        validate_consumption_input(tenant_id, cost, idempotency_key)
        result = await self.store.consume(
            tenant_id=tenant_id,
            cost=cost,
            idempotency_key=idempotency_key,
            context=context or {},
            today=self._today(),
            provision_allotment=self.default_allotment if self.auto_provision else None,
        )
        if result.replayed:
            logger.info("Idempotent replay for %s key=%s", tenant_id, idempotency_key)
        else:
            CREDITS_CONSUMED.labels(overage=str(result.is_overage).lower()).inc(result.consumed)
            logger.info(
                "Consumed %d credits for %s (remaining=%d, overage=%s)",
                result.consumed,
                tenant_id,
                result.remaining,
                result.is_overage,
            )
        return result

    async def initialize_ledger(
        self,
        tenant_id: str,
        monthly_allotment: int,
        overage_enabled: bool = False,
        overage_cap: int | None = None,
        reset_balance: bool = False,
    ) -> LedgerSnapshot:
        """Create or update a tenant's ledger settings."""
        if monthly_allotment < 0:
            raise InputValidationError("monthly_allotment must be non-negative")
        if overage_cap is not None and overage_cap < 0:
            raise InputValidationError("overage_cap must be non-negative")
        snapshot = await self.store.initialize(
            tenant_id=tenant_id,
            monthly_allotment=monthly_allotment,
            overage_enabled=overage_enabled,
            overage_cap=overage_cap,
            reset_balance=reset_balance,
            today=self._today(),
        )
        logger.info("Ledger for %s initialized: allotment=%d overage=%s", tenant_id, monthly_allotment, overage_enabled)
        return snapshot

    async def get_balance(self, tenant_id: str) -> LedgerSnapshot | None:
        """Effective balance, with a pending monthly reset applied to the view."""
        snapshot = await self.store.get(tenant_id)
        if snapshot is None:
            return None
        return apply_monthly_reset(snapshot, self._today())[0]

    async def list_usage(self, tenant_id: str, limit: int = 50, offset: int = 0) -> list[UsageRecord]:
        return await self.store.list_usage(tenant_id, limit=limit, offset=offset)


def insufficient(decision: ConsumptionDecision) -> InsufficientCreditsError:
    """Build the rejection error for a denied decision."""
    return InsufficientCreditsError(decision.reason, remaining=decision.ledger.credits_remaining)
