"""Tests for signal counting and the rule-based heuristic layer."""

import pytest

from psyche.inference.heuristics import HEURISTICS_MODEL_TAG, MAX_CONFIDENCE, MIN_CONFIDENCE, HeuristicLayer
from psyche.inference.types import BehavioralEvent, IndicatorKey, count_signals

from tests.conftest import CONSERVATIVE_WINDOW, make_event, make_events

RISK = IndicatorKey.RISK_PROFILE
COG = IndicatorKey.COGNITIVE_STYLE
MOOD = IndicatorKey.MOOD


# ==========================================================================
# Test: count_signals
# ==========================================================================


class TestCountSignals:
    def test_counts_types_and_urls(self):
        counters = count_signals(
            make_events(
                [
                    ("click", "https://shop.example.com/product/1", 4),
                    ("hover", "https://shop.example.com/pricing", 2),
                    ("scroll",),
                    ("checkout_start", "https://shop.example.com/checkout", 6),
                    ("checkout_complete",),
                    ("page_view", "https://shop.example.com/PRODUCT/2", 8),
                ]
            )
        )
        assert counters.total == 6
        assert (counters.clicks, counters.hovers, counters.scrolls) == (1, 1, 1)
        assert counters.checkouts == 2
        assert counters.pricing_views == 1
        assert counters.product_views == 2
        assert counters.dwell_avg == pytest.approx(20 / 6)

    def test_empty_window(self):
        counters = count_signals([])
        assert counters.total == 0
        assert counters.dwell_avg == 0.0

    @pytest.mark.parametrize("payload", [{"duration": "abc"}, {"duration": -5}, {"duration": True}, {"url": 42}, {}])
    def test_malformed_payload_contributes_zero(self, payload):
        timestamp = make_event("click").timestamp
        event = BehavioralEvent(id="e1", user_id="u1", type="click", timestamp=timestamp, payload=payload)
        counters = count_signals([event])
        assert counters.clicks == 1
        assert counters.dwell_avg == 0.0
        assert counters.pricing_views == 0


# ==========================================================================
# Test: HeuristicLayer
# ==========================================================================


class TestHeuristicLayer:
    def setup_method(self):
        self.layer = HeuristicLayer()

    def test_conservative_on_repeated_pricing(self):
        result = self.layer.score(make_events(CONSERVATIVE_WINDOW))
        assert result.model == HEURISTICS_MODEL_TAG
        assert result.get(RISK).value == "conservative"
        assert result.get(RISK).confidence == 0.65

    def test_aggressive_on_checkout(self):
        result = self.layer.score(make_events([("checkout_start", "https://shop.example.com/pricing", 3)] * 3))
        assert result.value_of(RISK) == "aggressive"
        assert result.get(RISK).confidence == 0.7

    def test_moderate_by_default(self):
        result = self.layer.score(make_events([("click", "https://shop.example.com/", 2)]))
        assert result.value_of(RISK) == "moderate"
        assert result.get(RISK).confidence == 0.5

    def test_intuitive_browser(self):
        events = make_events(
            [
                ("scroll", "https://shop.example.com/product/1"),
                ("scroll", "https://shop.example.com/product/2"),
                ("scroll", "https://shop.example.com/product/3"),
            ]
        )
        result = self.layer.score(events)
        assert result.value_of(COG) == "intuitive"
        assert result.get(COG).confidence == 0.6

    def test_analytical_by_default(self):
        assert self.layer.score(make_events(CONSERVATIVE_WINDOW)).value_of(COG) == "analytical"

    def test_confident_mood_after_long_checkout(self):
        result = self.layer.score(make_events([("checkout_complete", "", 30), ("page_view", "", 12)]))
        assert result.value_of(MOOD) == "confident"
        assert result.get(MOOD).confidence == 0.65

    def test_anxious_mood_from_hovering(self):
        result = self.layer.score(make_events([("hover",)] * 5))
        assert result.value_of(MOOD) == "anxious"
        assert result.get(MOOD).confidence == 0.6

    def test_checkout_suppresses_anxious(self):
        result = self.layer.score(make_events([("hover",)] * 5 + [("checkout_start",)]))
        assert result.value_of(MOOD) == "neutral"

    def test_always_emits_core_keys_within_bounds(self):
        windows = [[], make_events(CONSERVATIVE_WINDOW), make_events([("hover",)] * 9)]
        for events in windows:
            result = self.layer.score(events)
            assert result.keys() == {RISK, COG, MOOD}
            for _, indicator in result:
                assert MIN_CONFIDENCE <= indicator.confidence <= MAX_CONFIDENCE

    def test_deterministic(self):
        events = make_events(CONSERVATIVE_WINDOW)
        assert self.layer.score(events) == self.layer.score(list(events))
