"""Fusion Engine: merges heuristic, ML and optional LLM indicator sets.

Per indicator key the candidate with the highest confidence wins. An LLM
indicator competes with max(confidence, LLM_CONFIDENCE_FLOOR) and wins exact
ties, so an escalated LLM answer is the tie-breaker. Ties between heuristic
and ML go to ML.

Aggregate confidence is the mean of the selected (floored) confidences.
Provenance lists, in layer order, the model tag of every layer that produced
indicators for the fusion.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from psyche.gateway.gateway import LLMGateway
from psyche.gateway.types import PSYCHOGRAPHIC_ANALYSIS, GatewayResult, LlmRequest
from psyche.inference import escalation
from psyche.inference.heuristics import HeuristicLayer
from psyche.inference.ml_layer import MLLayer
from psyche.inference.prompts import PSYCHOGRAPHIC_ANALYSIS_PROMPT, build_analysis_prompt, compact_events
from psyche.inference.types import (
    LAYER_PRIORITY,
    BehavioralEvent,
    EscalationDecision,
    FusedIndicator,
    FusedProfile,
    Indicator,
    IndicatorKey,
    IndicatorSet,
    LayerName,
    SignalCounters,
    count_signals,
)
from psyche.schemas.llm_output import LlmPsychographicOutput

logger = logging.getLogger(__name__)

# Heuristic confidence ceiling; LLM indicators never compete below it
LLM_CONFIDENCE_FLOOR = 0.7

DEFAULT_EVIDENCE = "Heuristic + ML fusion"
HEURISTIC_ONLY_EVIDENCE = "Heuristic signals only (ML layer unavailable)"


def indicators_from_llm_output(output: LlmPsychographicOutput, model_tag: str) -> IndicatorSet:
    """Schema-valid LLM output -> IndicatorSet.

    The primary motivation has no confidence of its own; it takes the lowest
    of the three core confidences.
    """
    c = output.confidences
    indicators = {
        IndicatorKey.RISK_PROFILE: Indicator(output.risk_profile, c.risk_profile),
        IndicatorKey.COGNITIVE_STYLE: Indicator(output.cognitive_style, c.cognitive_style),
        IndicatorKey.MOOD: Indicator(output.emotional_state.mood, c.mood),
        IndicatorKey.PRIMARY_MOTIVATION: Indicator(
            output.motivation_stack[0], min(c.risk_profile, c.cognitive_style, c.mood)
        ),
    }
    return IndicatorSet.build(model_tag, LayerName.LLM, indicators)


def _effective_confidence(layer: LayerName, indicator: Indicator) -> float:
    if layer == LayerName.LLM:
        return max(indicator.confidence, LLM_CONFIDENCE_FLOOR)
    return indicator.confidence


@dataclass
class FusionOutcome:
    """Everything one cycle produced, for persistence and the API."""

    profile: FusedProfile
    decision: EscalationDecision
    counters: SignalCounters
    heuristic: IndicatorSet
    ml: IndicatorSet
    llm: IndicatorSet | None = None
    llm_result: GatewayResult | None = None
    degraded: list[str] = field(default_factory=list)

    @property
    def escalated(self) -> bool:
        return self.decision.escalate

    @property
    def llm_status(self) -> str | None:
        return self.llm_result.status.value if self.llm_result else None


class FusionEngine:
    """Runs the cheap layers, escalates when warranted, and fuses the result.

    Usage:
        engine = FusionEngine(HeuristicLayer(), MLLayer(), gateway)
        outcome = await engine.run(events, tenant_id="t1", user_id="u1", cycle_id="c1")
        outcome.profile.value_of(IndicatorKey.RISK_PROFILE)
    """

    def __init__(
        self,
        heuristics: HeuristicLayer | None = None,
        ml: MLLayer | None = None,
        gateway: LLMGateway | None = None,
    ):
        self.heuristics = heuristics or HeuristicLayer()
        self.ml = ml or MLLayer()
        self.gateway = gateway

    # -----------------------------------------------------------------------
    # Pure fusion
    # -----------------------------------------------------------------------

    def fuse(
        self,
        user_id: str,
        heuristic: IndicatorSet,
        ml: IndicatorSet,
        llm: IndicatorSet | None = None,
        evidence: str | None = None,
    ) -> FusedProfile:
        layers = [heuristic, ml] + ([llm] if llm is not None else [])

        best: dict[IndicatorKey, tuple[float, int, Indicator, str]] = {}
        for layer in layers:
            priority = LAYER_PRIORITY[layer.layer]
            for key, indicator in layer:
                candidate = (_effective_confidence(layer.layer, indicator), priority, indicator, layer.model)
                current = best.get(key)
                if current is None or candidate[:2] > current[:2]:
                    best[key] = candidate

        indicators = {
            key: FusedIndicator(value=ind.value, confidence=round(conf, 4), source=model)
            for key, (conf, _, ind, model) in best.items()
        }
        confidence = sum(i.confidence for i in indicators.values()) / len(indicators) if indicators else 0.0

        provenance: list[str] = []
        for layer in layers:
            if not layer.is_empty and layer.model not in provenance:
                provenance.append(layer.model)

        if evidence is None:
            evidence = DEFAULT_EVIDENCE if not ml.is_empty else HEURISTIC_ONLY_EVIDENCE

        return FusedProfile(
            user_id=user_id,
            indicators=indicators,
            confidence=round(min(max(confidence, 0.0), 1.0), 4),
            evidence=evidence,
            provenance=provenance,
            layers={layer.layer.value: layer.to_dict() for layer in layers},
        )

    # -----------------------------------------------------------------------
    # Full cycle
    # -----------------------------------------------------------------------

    async def run(
        self,
        events: list[BehavioralEvent],
        *,
        tenant_id: str,
        user_id: str,
        cycle_id: str,
    ) -> FusionOutcome:
        """Cheap layers concurrently, then at most one LLM call, then fusion."""
        counters = count_signals(events)
        heuristic, ml = await asyncio.gather(
            asyncio.to_thread(self.heuristics.score_counters, counters),
            asyncio.to_thread(self.ml.score_counters, counters),
        )
        decision = escalation.decide(heuristic, ml, counters)
        window = compact_events(events)

        degraded: list[str] = []
        if ml.is_empty:
            degraded.append("ml_unavailable")

        llm: IndicatorSet | None = None
        llm_result: GatewayResult | None = None
        evidence: str | None = None

        if decision.escalate:
            if self.gateway is None:
                degraded.append("llm:unconfigured")
            else:
                logger.info("Escalating user %s to LLM: %s", user_id, decision.reason_text)
                system_prompt, user_prompt = build_analysis_prompt(window, counters, heuristic, ml)
                request = LlmRequest(
                    tenant_id=tenant_id,
                    principal=user_id,
                    operation=PSYCHOGRAPHIC_ANALYSIS,
                    idempotency_key=f"{cycle_id}:{PSYCHOGRAPHIC_ANALYSIS}",
                    system_prompt=system_prompt,
                    user_prompt=user_prompt,
                    user_id=user_id,
                    prompt_version=PSYCHOGRAPHIC_ANALYSIS_PROMPT.version,
                    context={"cycle_id": cycle_id, "reason": decision.reason.value},
                )
                llm_result = await self.gateway.invoke(request, LlmPsychographicOutput)
                if llm_result.ok and isinstance(llm_result.output, LlmPsychographicOutput):
                    llm = indicators_from_llm_output(llm_result.output, llm_result.model_tag)
                    evidence = llm_result.output.reasoning
                else:
                    logger.warning(
                        "LLM layer unavailable for user %s (%s), keeping cheap-layer fusion",
                        user_id,
                        llm_result.status.value,
                    )
                    degraded.append(f"llm:{llm_result.status.value}")

        profile = self.fuse(user_id, heuristic, ml, llm, evidence=evidence)
        profile.degraded = degraded
        profile.event_window = window
        return FusionOutcome(
            profile=profile,
            decision=decision,
            counters=counters,
            heuristic=heuristic,
            ml=ml,
            llm=llm,
            llm_result=llm_result,
            degraded=degraded,
        )
