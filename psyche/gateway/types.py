"""Core types and DTOs for the LLM governance gateway."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from psyche.core.config import settings

if TYPE_CHECKING:
    from pydantic import BaseModel


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ErrorCode(str, Enum):
    """Outcome of a governed operation, as surfaced to callers."""

    OK = "OK"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    RATE_LIMITED = "RATE_LIMITED"  # carries retry_after
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
    SYSTEM_ERROR = "SYSTEM_ERROR"


# Logical operation names (one breaker per name)
PSYCHOGRAPHIC_ANALYSIS = "psychographic_analysis"
HEALTH_CHECK = "health_check"


# ---------------------------------------------------------------------------
# Per-operation configuration
# ---------------------------------------------------------------------------


@dataclass
class BucketConfig:
    """Token bucket parameters for one operation."""

    capacity: float = 60.0
    refill_per_minute: float = 1.0
    cost: float = 1.0  # tokens charged per request


@dataclass
class BreakerConfig:
    """Circuit breaker parameters for one operation."""

    failure_threshold: int = 5
    recovery_timeout: float = 60.0  # seconds OPEN before a HALF_OPEN trial
    monitoring_window: float = 300.0  # failures older than this are forgotten


@dataclass
class RetryConfig:
    """Retry parameters for one operation."""

    max_attempts: int = 3  # total attempts, first try included
    timeout_seconds: float = 10.0  # hard bound per attempt
    base_delay: float = 1.0
    max_delay: float = 30.0


@dataclass
class OperationPolicy:
    """Everything the gateway needs to govern one logical operation."""

    name: str
    bucket: BucketConfig = field(default_factory=BucketConfig)
    breaker: BreakerConfig = field(default_factory=BreakerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    credit_cost: int = 1  # 0 means the operation is not metered


def build_default_policies() -> dict[str, OperationPolicy]:
    """Build the default operation policies from settings."""
    breaker = BreakerConfig(
        failure_threshold=settings.breaker_failure_threshold,
        recovery_timeout=settings.breaker_recovery_timeout,
        monitoring_window=settings.breaker_monitoring_window,
    )
    return {
        PSYCHOGRAPHIC_ANALYSIS: OperationPolicy(
            name=PSYCHOGRAPHIC_ANALYSIS,
            bucket=BucketConfig(
                capacity=settings.bucket_capacity,
                refill_per_minute=settings.bucket_refill_per_minute,
            ),
            breaker=breaker,
            retry=RetryConfig(
                max_attempts=settings.llm_max_attempts,
                timeout_seconds=settings.llm_timeout_seconds,
                base_delay=settings.llm_base_retry_delay,
                max_delay=settings.llm_max_retry_delay,
            ),
            credit_cost=settings.llm_credit_cost,
        ),
        HEALTH_CHECK: OperationPolicy(
            name=HEALTH_CHECK,
            bucket=BucketConfig(capacity=10, refill_per_minute=10),
            breaker=BreakerConfig(
                failure_threshold=breaker.failure_threshold,
                recovery_timeout=breaker.recovery_timeout,
                monitoring_window=breaker.monitoring_window,
            ),
            retry=RetryConfig(max_attempts=1, timeout_seconds=settings.llm_timeout_seconds),
            credit_cost=0,
        ),
    }


DEFAULT_OPERATION_POLICIES: dict[str, OperationPolicy] = build_default_policies()


# ---------------------------------------------------------------------------
# Gateway request / result
# ---------------------------------------------------------------------------


@dataclass
class LlmRequest:
    """A single governed model invocation."""

    tenant_id: str
    principal: str  # rate-limit identity (user id, API client, ...)
    operation: str = PSYCHOGRAPHIC_ANALYSIS
    idempotency_key: str = field(default_factory=lambda: uuid.uuid4().hex)
    system_prompt: str = ""
    user_prompt: str = ""
    user_id: str | None = None
    cost: int | None = None  # credits; None -> policy.credit_cost
    prompt_version: str = ""
    context: dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayResult:
    """Typed outcome of LLMGateway.invoke. Governance outcomes never raise."""

    status: ErrorCode
    operation: str
    output: BaseModel | None = None
    retry_after: int | None = None  # RATE_LIMITED only
    credits_remaining: int | None = None
    is_overage: bool = False
    attempts: int = 0
    latency_ms: int = 0
    model_tag: str = ""
    error_message: str = ""
    validation_errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == ErrorCode.OK

    def raise_for_status(self) -> None:
        """Raise the matching GovernanceError unless the result is OK."""
        from psyche.core.exceptions import (
            CircuitOpenError,
            InputValidationError,
            InsufficientCreditsError,
            RateLimitedError,
            UpstreamError,
        )

        if self.status == ErrorCode.OK:
            return
        message = self.error_message or self.status.value
        if self.status == ErrorCode.RATE_LIMITED:
            raise RateLimitedError(message, retry_after=self.retry_after or 1)
        if self.status == ErrorCode.INSUFFICIENT_CREDITS:
            raise InsufficientCreditsError(message, remaining=self.credits_remaining or 0)
        if self.status == ErrorCode.CIRCUIT_OPEN:
            raise CircuitOpenError(message)
        if self.status == ErrorCode.VALIDATION_ERROR:
            raise InputValidationError(message)
        raise UpstreamError(message, {"attempts": self.attempts, "validation_errors": self.validation_errors})

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "operation": self.operation,
            "retry_after": self.retry_after,
            "credits_remaining": self.credits_remaining,
            "is_overage": self.is_overage,
            "attempts": self.attempts,
            "latency_ms": self.latency_ms,
            "model_tag": self.model_tag,
            "error_message": self.error_message,
            "validation_errors": self.validation_errors,
        }
