"""LLM Gateway: governed entry point for every model call.

Pipeline for ``invoke(request, schema)``, in this order:
  1. CreditLedger.consume      -> INSUFFICIENT_CREDITS, no network call
  2. TokenBucket acquire       -> RATE_LIMITED(retry_after), no network call
  3. CircuitBreaker admit      -> CIRCUIT_OPEN, no network call
  4. PromptGuard.sanitize      -> VALIDATION_ERROR on rejected input
  5. RetryPolicy.execute       -> each failed attempt is counted by the breaker
  6. PromptGuard.validate      -> schema violation counts once as a failure, never retried
  7. Breaker success, AuditLogger.record (best-effort), metrics

Governance outcomes are returned as a GatewayResult, never raised.

Usage:
    gateway = LLMGateway(invoker, ledger=ledger, buckets=buckets, breakers=breakers,
                         guard=PromptGuard(), audit=audit)
    result = await gateway.invoke(request, LlmPsychographicOutput)
    if result.ok:
        output = result.output
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel

from psyche.audit.audit_logger import AuditLogger
from psyche.billing.credit_ledger import CreditLedger
from psyche.core.exceptions import (
    InputValidationError,
    InsufficientCreditsError,
    OutputValidationError,
    PermanentModelError,
)
from psyche.core.metrics import LLM_GATEWAY_CALLS, LLM_GATEWAY_LATENCY
from psyche.gateway.circuit_breaker import CircuitBreakerRegistry, CircuitState
from psyche.gateway.model_adapters import ModelInvoker, ModelReply
from psyche.gateway.prompt_guard import PromptGuard, SanitizedPrompt
from psyche.gateway.retry import RetryExhaustedError, RetryPolicy
from psyche.gateway.token_bucket import TokenBucketRegistry
from psyche.gateway.types import (
    DEFAULT_OPERATION_POLICIES,
    HEALTH_CHECK,
    ErrorCode,
    GatewayResult,
    LlmRequest,
    OperationPolicy,
)

logger = logging.getLogger(__name__)


class HealthCheckOutput(BaseModel):
    """Minimal schema used by health_check()."""

    status: str


_HEALTH_SYSTEM_PROMPT = 'You are a health check. Respond only with the JSON object {"status": "ok"}.'
_HEALTH_USER_PROMPT = (
    "Connectivity check for the psychographic inference gateway. "
    "Return a JSON object with a single field named status set to ok."
)


class LLMGateway:
    """Composes credits, rate limiting, circuit breaking, guarding, retries and audit."""

    def __init__(
        self,
        invoker: ModelInvoker,
        *,
        buckets: TokenBucketRegistry,
        breakers: CircuitBreakerRegistry,
        guard: PromptGuard,
        ledger: CreditLedger | None = None,
        audit: AuditLogger | None = None,
        policies: dict[str, OperationPolicy] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.invoker = invoker
        self.buckets = buckets
        self.breakers = breakers
        self.guard = guard
        self.ledger = ledger
        self.audit = audit
        self.policies = policies or DEFAULT_OPERATION_POLICIES
        self._sleep = sleep

    def policy_for(self, operation: str) -> OperationPolicy:
        return self.policies.get(operation) or OperationPolicy(name=operation)

    def _finish(self, result: GatewayResult) -> GatewayResult:
        LLM_GATEWAY_CALLS.labels(operation=result.operation, status=result.status.value).inc()
        return result

    async def invoke(self, request: LlmRequest, schema: type[BaseModel]) -> GatewayResult:
        """Run one governed model call and return a typed result."""
        op = request.operation
        policy = self.policy_for(op)
        cost = policy.credit_cost if request.cost is None else request.cost
        result = GatewayResult(status=ErrorCode.OK, operation=op, model_tag=self.invoker.model_tag)

        # 1. Credits
        if self.ledger is not None and cost > 0:
            try:
                consumption = await self.ledger.consume(
                    request.tenant_id,
                    cost,
                    request.idempotency_key,
                    {"operation": op, "user_id": request.user_id, **request.context},
                )
            except InsufficientCreditsError as e:
                logger.info("Gateway %s rejected for %s: %s", op, request.tenant_id, e.message)
                result.status = ErrorCode.INSUFFICIENT_CREDITS
                result.credits_remaining = e.remaining
                result.error_message = e.message
                return self._finish(result)
            except InputValidationError as e:
                result.status = ErrorCode.VALIDATION_ERROR
                result.error_message = e.message
                return self._finish(result)
            result.credits_remaining = consumption.remaining
            result.is_overage = consumption.is_overage

        # 2. Token bucket
        acquired = self.buckets.acquire(request.principal, op)
        if not acquired.allowed:
            result.status = ErrorCode.RATE_LIMITED
            result.retry_after = acquired.retry_after
            result.error_message = f"Rate limit exceeded for {op}, retry after {acquired.retry_after}s"
            return self._finish(result)

        # 3. Circuit breaker
        if not self.breakers.can_execute(op):
            logger.info("Gateway %s fast-failed: circuit open", op)
            result.status = ErrorCode.CIRCUIT_OPEN
            result.error_message = f"Circuit breaker open for {op}"
            return self._finish(result)

        # 4. Input guard
        try:
            sanitized = self.guard.sanitize(request.user_prompt)
        except InputValidationError as e:
            self.breakers.release(op)
            result.status = ErrorCode.VALIDATION_ERROR
            result.error_message = e.message
            return self._finish(result)

        # 5. Model call with retries
        attempts = 0
        json_schema = self.guard.json_schema(schema)

        async def _attempt() -> ModelReply:
            nonlocal attempts
            attempts += 1
            return await self.invoker.invoke(
                request.system_prompt,
                sanitized.text,
                json_schema,
                timeout=policy.retry.timeout_seconds,
            )

        def _on_failure(exc: Exception) -> bool:
            return self.breakers.on_failure(op) != CircuitState.OPEN

        retry = RetryPolicy(policy.retry, sleep=self._sleep)
        start = time.monotonic()
        reply: ModelReply | None = None
        output: BaseModel | None = None
        validation: dict[str, Any] = {}
        try:
            reply = await retry.execute(_attempt, on_failure=_on_failure, label=op)
            # 6. Output validation
            output = self.guard.validate(reply.content, schema)
            validation = {"valid": True, "errors": []}
        except RetryExhaustedError as e:
            result.status = ErrorCode.SYSTEM_ERROR
            result.error_message = f"Upstream failed after {e.attempts} attempt(s): {e.last_error}"
        except PermanentModelError as e:
            self.breakers.on_failure(op)
            result.status = ErrorCode.SYSTEM_ERROR
            result.error_message = f"Upstream rejected request: {e}"
        except OutputValidationError as e:
            self.breakers.on_failure(op)
            validation = {"valid": False, "errors": e.errors}
            result.status = ErrorCode.SYSTEM_ERROR
            result.error_message = str(e)
            result.validation_errors = e.errors
            logger.warning("Gateway %s output failed validation: %s", op, "; ".join(e.errors[:5]))
        except BaseException:
            # Cancellation or a bug: free a HALF_OPEN trial slot before propagating
            self.breakers.release(op)
            raise

        elapsed = time.monotonic() - start
        result.attempts = attempts
        result.latency_ms = int(elapsed * 1000)
        LLM_GATEWAY_LATENCY.labels(operation=op).observe(elapsed)

        if output is not None:
            self.breakers.on_success(op)
            result.output = output
            if reply is not None and reply.model_version:
                result.model_tag = f"llm@{reply.model_version}"

        # 7. Audit (best-effort)
        await self._audit(request, policy, sanitized, result, reply, output, validation, schema.__name__)
        return self._finish(result)

    async def _audit(
        self,
        request: LlmRequest,
        policy: OperationPolicy,
        sanitized: SanitizedPrompt,
        result: GatewayResult,
        reply: ModelReply | None,
        output: BaseModel | None,
        validation: dict[str, Any],
        schema_name: str,
    ) -> None:
        if self.audit is None:
            return
        if output is not None:
            audited_output: Any = output.model_dump(mode="json")
        elif reply is not None:
            audited_output = reply.content
        else:
            audited_output = None
        await self.audit.record(
            tenant_id=request.tenant_id,
            user_id=request.user_id,
            operation_type=request.operation,
            operation_id=f"{request.idempotency_key}:{uuid.uuid4().hex[:8]}",
            input_text=request.user_prompt,
            system_prompt=request.system_prompt,
            prompt_version=request.prompt_version,
            output=audited_output,
            success=result.ok,
            model_tag=result.model_tag,
            latency_ms=result.latency_ms,
            model_config={
                "timeout_seconds": policy.retry.timeout_seconds,
                "max_attempts": policy.retry.max_attempts,
                "attempts": result.attempts,
                "schema": schema_name,
                "guard_flags": [f.value for f in sanitized.flags],
            },
            validation_results=validation,
            error_code=None if result.ok else result.status.value,
            error_message=result.error_message or None,
        )

    # -----------------------------------------------------------------------
    # Administration
    # -----------------------------------------------------------------------

    def status(self) -> dict:
        """Aggregate breaker and bucket state."""
        return {
            "model": self.invoker.model_tag,
            "operations": sorted(self.policies),
            "circuits": self.breakers.all_states(),
            "buckets": self.buckets.all_status(),
        }

    async def health_check(self) -> dict:
        """Tiny schema-validated call through the full pipeline (not metered)."""
        request = LlmRequest(
            tenant_id="system",
            principal="system",
            operation=HEALTH_CHECK,
            system_prompt=_HEALTH_SYSTEM_PROMPT,
            user_prompt=_HEALTH_USER_PROMPT,
            cost=0,
            prompt_version="health@v1",
        )
        result = await self.invoke(request, HealthCheckOutput)
        healthy = result.ok and getattr(result.output, "status", "") == "ok"
        if not healthy:
            logger.warning("LLM health check failed: %s %s", result.status.value, result.error_message)
        return {
            "healthy": healthy,
            "status": result.status.value,
            "latency_ms": result.latency_ms,
            "error_message": result.error_message,
            "circuit": self.breakers.state(HEALTH_CHECK),
        }
