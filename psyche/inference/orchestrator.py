"""Inference Orchestrator: one cycle per user.

  1. Load the most recent events (newest first) from the EventSource
  2. FusionEngine.run: heuristic + ML concurrently, escalation, at most one LLM call
  3. Persist the fused profile (overwrites the user's current profile)
  4. Append a ProfileUpdateAudit entry (best-effort)

LLM enrichment never blocks a profile update: a rejected or failed LLM call
leaves the cheap-layer fusion in place and is noted in ``degraded``.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from psyche.core.exceptions import InputValidationError
from psyche.core.logging import bind_log_context
from psyche.core.metrics import INFERENCE_CYCLES, INFERENCE_ESCALATIONS
from psyche.inference.fusion import FusionEngine
from psyche.inference.stores import EventSource, ProfileStore
from psyche.inference.types import FusedProfile, ProfileUpdateAudit, UpdateReason

logger = logging.getLogger(__name__)

DEFAULT_EVENT_WINDOW = 50


@dataclass
class CycleResult:
    cycle_id: str
    user_id: str
    tenant_id: str
    profile: FusedProfile
    reason: UpdateReason
    escalated: bool
    llm_status: str | None = None
    degraded: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "user_id": self.user_id,
            "tenant_id": self.tenant_id,
            "profile": self.profile.to_dict(),
            "reason": self.reason.value,
            "escalated": self.escalated,
            "llm_status": self.llm_status,
            "degraded": self.degraded,
        }


class InferenceOrchestrator:
    """Top-level entry point.

    Usage:
        orchestrator = InferenceOrchestrator(events, profiles, FusionEngine(gateway=gateway))
        result = await orchestrator.run_inference_cycle("user-1", tenant_id="acme")
    """

    def __init__(
        self,
        events: EventSource,
        profiles: ProfileStore,
        engine: FusionEngine,
        window_size: int = DEFAULT_EVENT_WINDOW,
    ):
        self.events = events
        self.profiles = profiles
        self.engine = engine
        self.window_size = window_size

    async def run_inference_cycle(
        self,
        user_id: str,
        tenant_id: str,
        cycle_id: str | None = None,
    ) -> CycleResult:
        if not user_id or not user_id.strip():
            raise InputValidationError("user_id is required")
        if not tenant_id or not tenant_id.strip():
            raise InputValidationError("tenant_id is required")
        cycle_id = cycle_id or uuid.uuid4().hex

        with bind_log_context(cycle_id=cycle_id, tenant_id=tenant_id, user_id=user_id):
            return await self._run(user_id, tenant_id, cycle_id)

    async def _run(self, user_id: str, tenant_id: str, cycle_id: str) -> CycleResult:
        events = await self.events.recent_events(user_id, limit=self.window_size)
        if not events:
            raise InputValidationError("no behavioral events", {"user_id": user_id})

        outcome = await self.engine.run(events, tenant_id=tenant_id, user_id=user_id, cycle_id=cycle_id)
        decision = outcome.decision

        await self.profiles.save(outcome.profile, tenant_id)
        await self._append_update(
            ProfileUpdateAudit(
                user_id=user_id,
                tenant_id=tenant_id,
                cycle_id=cycle_id,
                reason=decision.reason,
                escalated=decision.escalate,
                snapshot=outcome.profile.to_dict(),
                llm_status=outcome.llm_status,
            )
        )

        INFERENCE_CYCLES.labels(reason=decision.reason.value).inc()
        if decision.escalate:
            INFERENCE_ESCALATIONS.labels(reason=decision.reason.value).inc()

        logger.info(
            "Cycle %s for user %s: reason=%s escalated=%s llm=%s confidence=%.2f",
            cycle_id,
            user_id,
            decision.reason.value,
            decision.escalate,
            outcome.llm_status or "-",
            outcome.profile.confidence,
        )
        return CycleResult(
            cycle_id=cycle_id,
            user_id=user_id,
            tenant_id=tenant_id,
            profile=outcome.profile,
            reason=decision.reason,
            escalated=decision.escalate,
            llm_status=outcome.llm_status,
            degraded=list(outcome.degraded),
        )

    async def _append_update(self, entry: ProfileUpdateAudit) -> None:
        try:
            await self.profiles.append_update(entry)
        except Exception:
            logger.exception("Profile update audit failed for user %s cycle %s", entry.user_id, entry.cycle_id)
