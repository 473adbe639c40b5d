"""Escalation policy: decides whether a cycle pays for LLM inference.

Escalate when either:
  - heuristic and ML disagree on risk_profile (other keys may differ freely)
  - the window shows high business value: a completed checkout,
    at least 2 checkout starts, or at least 3 pricing-page views

A silent ML layer (no risk_profile) never counts as disagreement.
"""

from __future__ import annotations

from psyche.inference.types import (
    BehavioralEvent,
    EscalationDecision,
    IndicatorKey,
    IndicatorSet,
    SignalCounters,
    UpdateReason,
    count_signals,
)

HIGH_VALUE_CHECKOUT_STARTS = 2
HIGH_VALUE_PRICING_VIEWS = 3


def is_disagreement(heuristic: IndicatorSet, ml: IndicatorSet) -> bool:
    h = heuristic.value_of(IndicatorKey.RISK_PROFILE)
    m = ml.value_of(IndicatorKey.RISK_PROFILE)
    return h is not None and m is not None and h != m


def is_high_value(counters: SignalCounters) -> bool:
    return (
        counters.checkout_completes > 0
        or counters.checkout_starts >= HIGH_VALUE_CHECKOUT_STARTS
        or counters.pricing_views >= HIGH_VALUE_PRICING_VIEWS
    )


def decide(heuristic: IndicatorSet, ml: IndicatorSet, counters: SignalCounters) -> EscalationDecision:
    disagreement = is_disagreement(heuristic, ml)
    high_value = is_high_value(counters)
    if disagreement:
        reason = UpdateReason.DISAGREEMENT
    elif high_value:
        reason = UpdateReason.HIGH_VALUE
    else:
        reason = UpdateReason.ROUTINE
    return EscalationDecision(
        escalate=disagreement or high_value,
        reason=reason,
        disagreement=disagreement,
        high_value=high_value,
    )


def should_escalate(heuristic: IndicatorSet, ml: IndicatorSet, events: list[BehavioralEvent]) -> bool:
    return decide(heuristic, ml, count_signals(events)).escalate
