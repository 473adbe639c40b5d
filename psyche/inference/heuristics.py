"""Heuristic layer: fixed threshold rules over behavioral counters.

Deterministic and free of I/O. Malformed events contribute zero signal.
Every confidence lies in [0.5, 0.7]; heuristics are never maximally confident.
"""

from __future__ import annotations

from psyche.inference.types import (
    BehavioralEvent,
    CognitiveStyle,
    Indicator,
    IndicatorKey,
    IndicatorSet,
    LayerName,
    Mood,
    RiskProfile,
    SignalCounters,
    count_signals,
)

HEURISTICS_MODEL_TAG = "heuristics@v1"

# Confidence bounds for any heuristic indicator
MIN_CONFIDENCE = 0.5
MAX_CONFIDENCE = 0.7


def _risk(c: SignalCounters) -> Indicator:
    if c.checkouts >= 1:
        return Indicator(RiskProfile.AGGRESSIVE.value, 0.7)
    if c.pricing_views >= 2 and c.checkouts == 0:
        return Indicator(RiskProfile.CONSERVATIVE.value, 0.65)
    return Indicator(RiskProfile.MODERATE.value, 0.5)


def _cognitive(c: SignalCounters) -> Indicator:
    if c.product_views > c.pricing_views + 1 and c.scrolls > c.clicks:
        return Indicator(CognitiveStyle.INTUITIVE.value, 0.6)
    return Indicator(CognitiveStyle.ANALYTICAL.value, 0.55)


def _mood(c: SignalCounters) -> Indicator:
    mood = Indicator(Mood.NEUTRAL.value, 0.5)
    if c.checkouts >= 1 and c.dwell_avg > 10:
        mood = Indicator(Mood.CONFIDENT.value, 0.65)
    # Hesitation outranks dwell-based confidence
    if c.hovers > c.clicks + 3 and c.checkouts == 0:
        mood = Indicator(Mood.ANXIOUS.value, 0.6)
    return mood


class HeuristicLayer:
    """Rule-based indicator scoring.

    Usage:
        indicators = HeuristicLayer().score(events)
        indicators.value_of(IndicatorKey.RISK_PROFILE)  # "conservative"
    """

    model_tag = HEURISTICS_MODEL_TAG

    def score(self, events: list[BehavioralEvent]) -> IndicatorSet:
        return self.score_counters(count_signals(events))

    def score_counters(self, counters: SignalCounters) -> IndicatorSet:
        return IndicatorSet.build(
            self.model_tag,
            LayerName.HEURISTIC,
            {
                IndicatorKey.RISK_PROFILE: _risk(counters),
                IndicatorKey.COGNITIVE_STYLE: _cognitive(counters),
                IndicatorKey.MOOD: _mood(counters),
            },
        )
