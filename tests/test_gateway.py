"""Tests for the governed LLM gateway pipeline."""

import pytest

from psyche.audit.audit_logger import AuditLogger, sha256_hex
from psyche.audit.stores import InMemoryAuditStore
from psyche.billing.credit_ledger import CreditLedger
from psyche.billing.stores import InMemoryCreditLedgerStore
from psyche.core.exceptions import PermanentModelError, RateLimitedError, TransientModelError
from psyche.gateway.circuit_breaker import CircuitBreakerRegistry
from psyche.gateway.gateway import LLMGateway
from psyche.gateway.prompt_guard import PromptGuard
from psyche.gateway.token_bucket import TokenBucketRegistry
from psyche.gateway.types import (
    BreakerConfig,
    BucketConfig,
    ErrorCode,
    LlmRequest,
    OperationPolicy,
    RetryConfig,
)
from psyche.schemas.llm_output import LlmPsychographicOutput

from tests.conftest import FakeInvoker, llm_output, no_sleep

OP = "psychographic_analysis"
PROMPT = "The visitor compared pricing plans twice and read the FAQ without starting checkout."


class _Harness:
    def __init__(
        self,
        clock,
        replies=None,
        *,
        threshold: int = 5,
        max_attempts: int = 1,
        capacity: float = 100,
        allotment: int = 100,
    ):
        policy = OperationPolicy(
            name=OP,
            bucket=BucketConfig(capacity=capacity, refill_per_minute=1),
            breaker=BreakerConfig(failure_threshold=threshold, recovery_timeout=60),
            retry=RetryConfig(max_attempts=max_attempts, timeout_seconds=1, base_delay=0.01),
            credit_cost=1,
        )
        self.invoker = FakeInvoker(replies)
        self.buckets = TokenBucketRegistry({OP: policy.bucket}, clock=clock)
        self.breakers = CircuitBreakerRegistry({OP: policy.breaker}, clock=clock)
        self.ledger = CreditLedger(InMemoryCreditLedgerStore(), default_allotment=allotment)
        self.audit_store = InMemoryAuditStore()
        self.gateway = LLMGateway(
            self.invoker,
            buckets=self.buckets,
            breakers=self.breakers,
            guard=PromptGuard(min_length=20),
            ledger=self.ledger,
            audit=AuditLogger(self.audit_store),
            policies={OP: policy},
            sleep=no_sleep,
        )

    async def invoke(self, prompt: str = PROMPT, key: str | None = None):
        request = LlmRequest(
            tenant_id="acme",
            principal="user-1",
            user_id="user-1",
            system_prompt="Classify the visitor.",
            user_prompt=prompt,
            prompt_version="psychographic_analysis@v1",
        )
        if key is not None:
            request.idempotency_key = key
        return await self.gateway.invoke(request, LlmPsychographicOutput)


# ==========================================================================
# Test: happy path
# ==========================================================================


class TestSuccess:
    @pytest.mark.asyncio
    async def test_valid_output_returned(self, clock):
        h = _Harness(clock, [llm_output(risk="conservative")])
        result = await h.invoke()

        assert result.ok
        assert result.output.risk_profile == "conservative"
        assert result.model_tag == "llm@gpt-test"
        assert result.attempts == 1
        assert result.credits_remaining == 99
        assert len(h.invoker.calls) == 1
        assert h.invoker.calls[0]["json_schema"]["title"] == "LlmPsychographicOutput"

    @pytest.mark.asyncio
    async def test_sanitized_prompt_sent_upstream(self, clock):
        h = _Harness(clock, [llm_output()])
        await h.invoke(PROMPT + " Contact me at jane@example.com")
        sent = h.invoker.calls[0]["user_prompt"]
        assert "jane@example.com" not in sent
        assert "[EMAIL-MASKED]" in sent

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, clock):
        h = _Harness(clock, [TransientModelError("503", status_code=503), llm_output()], max_attempts=3)
        result = await h.invoke()
        assert result.ok
        assert result.attempts == 2
        assert h.breakers.state(OP)["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_audit_record_written(self, clock):
        h = _Harness(clock, [llm_output()])
        await h.invoke(key="cycle-9:psychographic_analysis")

        [record] = h.audit_store.records
        assert record.success
        assert record.tenant_id == "acme"
        assert record.operation_type == OP
        assert record.operation_id.startswith("cycle-9:psychographic_analysis:")
        assert record.prompt_version == "psychographic_analysis@v1"
        assert record.validation_results == {"valid": True, "errors": []}
        assert record.model_config["attempts"] == 1
        assert record.confidence_scores["confidences.mood"] == 0.9
        assert len(record.input_hash) == 64

    @pytest.mark.asyncio
    async def test_audit_hashes_raw_input(self, clock):
        prompt = PROMPT + " Contact me at jane@example.com"
        h = _Harness(clock, [llm_output()])
        await h.invoke(prompt)

        [record] = h.audit_store.records
        assert record.input_hash == sha256_hex(prompt)
        assert record.input_length == len(prompt)
        assert record.pii_detected == ["email"]
        assert "jane@example.com" not in record.input_preview


# ==========================================================================
# Test: governance rejections (no network call)
# ==========================================================================


class TestRejections:
    @pytest.mark.asyncio
    async def test_insufficient_credits(self, clock):
        h = _Harness(clock, [llm_output()], allotment=0)
        result = await h.invoke()
        assert result.status == ErrorCode.INSUFFICIENT_CREDITS
        assert result.credits_remaining == 0
        assert h.invoker.calls == []

    @pytest.mark.asyncio
    async def test_insufficient_credits_with_overage_proceeds(self, clock):
        h = _Harness(clock, [llm_output()], allotment=0)
        await h.ledger.initialize_ledger("acme", monthly_allotment=0, overage_enabled=True)
        result = await h.invoke()
        assert result.ok
        assert result.is_overage

    @pytest.mark.asyncio
    async def test_rate_limited(self, clock):
        h = _Harness(clock, [llm_output(), llm_output()], capacity=1)
        assert (await h.invoke()).ok
        result = await h.invoke()
        assert result.status == ErrorCode.RATE_LIMITED
        assert result.retry_after == 60
        assert len(h.invoker.calls) == 1

    @pytest.mark.asyncio
    async def test_short_prompt_rejected_without_breaker_penalty(self, clock):
        h = _Harness(clock, [llm_output()])
        result = await h.invoke("too short")
        assert result.status == ErrorCode.VALIDATION_ERROR
        assert h.invoker.calls == []
        assert h.breakers.state(OP)["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_rejected_prompt_releases_half_open_trial(self, clock):
        h = _Harness(clock, [llm_output()], threshold=1)
        h.breakers.on_failure(OP)
        clock.advance(60)
        assert (await h.invoke("too short")).status == ErrorCode.VALIDATION_ERROR
        assert (await h.invoke()).ok
        assert h.breakers.state(OP)["state"] == "closed"


# ==========================================================================
# Test: upstream failures and the circuit breaker
# ==========================================================================


class TestUpstreamFailures:
    @pytest.mark.asyncio
    async def test_five_timeouts_open_circuit(self, clock):
        h = _Harness(clock, [TransientModelError("Timeout after 1s") for _ in range(6)], threshold=5)

        for _ in range(5):
            result = await h.invoke()
            assert result.status == ErrorCode.SYSTEM_ERROR
        assert h.breakers.state(OP)["state"] == "open"

        result = await h.invoke()
        assert result.status == ErrorCode.CIRCUIT_OPEN
        assert len(h.invoker.calls) == 5

    @pytest.mark.asyncio
    async def test_retry_loop_stops_when_circuit_opens(self, clock):
        h = _Harness(clock, [TransientModelError("503") for _ in range(10)], threshold=2, max_attempts=5)
        result = await h.invoke()
        assert result.status == ErrorCode.SYSTEM_ERROR
        assert result.attempts == 2
        assert h.breakers.state(OP)["state"] == "open"

    @pytest.mark.asyncio
    async def test_half_open_trial_success_closes(self, clock):
        h = _Harness(clock, [TransientModelError("503"), llm_output()], threshold=1)
        assert (await h.invoke()).status == ErrorCode.SYSTEM_ERROR
        assert (await h.invoke()).status == ErrorCode.CIRCUIT_OPEN
        clock.advance(60)
        assert (await h.invoke()).ok
        assert h.breakers.state(OP)["state"] == "closed"

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self, clock):
        h = _Harness(clock, [PermanentModelError("400", status_code=400), llm_output()], max_attempts=3)
        result = await h.invoke()
        assert result.status == ErrorCode.SYSTEM_ERROR
        assert result.attempts == 1
        assert h.breakers.state(OP)["failure_count"] == 1

    @pytest.mark.asyncio
    async def test_schema_violation_counts_once_and_is_audited(self, clock):
        h = _Harness(clock, [llm_output(risk="reckless"), llm_output()], max_attempts=3)
        result = await h.invoke()

        assert result.status == ErrorCode.SYSTEM_ERROR
        assert result.attempts == 1
        assert any(e.startswith("risk_profile") for e in result.validation_errors)
        assert h.breakers.state(OP)["failure_count"] == 1

        [record] = h.audit_store.records
        assert not record.success
        assert record.error_code == "SYSTEM_ERROR"
        assert record.validation_results["valid"] is False

    @pytest.mark.asyncio
    async def test_raise_for_status_maps_rate_limit(self, clock):
        h = _Harness(clock, [llm_output()], capacity=1)
        await h.invoke()
        result = await h.invoke()
        with pytest.raises(RateLimitedError) as exc_info:
            result.raise_for_status()
        assert exc_info.value.details["retry_after"] == 60


# ==========================================================================
# Test: administration
# ==========================================================================


class TestAdministration:
    @pytest.mark.asyncio
    async def test_health_check(self, clock):
        h = _Harness(clock, [{"status": "ok"}])
        report = await h.gateway.health_check()
        assert report["healthy"]
        assert report["status"] == "OK"
        assert report["circuit"]["operation"] == "health_check"

    @pytest.mark.asyncio
    async def test_health_check_is_not_metered(self, clock):
        h = _Harness(clock, [{"status": "ok"}], allotment=0)
        assert (await h.gateway.health_check())["healthy"]
        assert await h.ledger.get_balance("system") is None

    @pytest.mark.asyncio
    async def test_health_check_failure(self, clock):
        h = _Harness(clock, [TransientModelError("503")])
        report = await h.gateway.health_check()
        assert not report["healthy"]
        assert report["status"] == "SYSTEM_ERROR"

    @pytest.mark.asyncio
    async def test_status(self, clock):
        h = _Harness(clock, [llm_output()])
        await h.invoke()
        status = h.gateway.status()
        assert status["model"] == "llm@gpt-test"
        assert status["operations"] == [OP]
        assert status["circuits"][0]["state"] == "closed"
        assert status["buckets"][0]["principal"] == "user-1"
