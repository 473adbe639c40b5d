"""ML layer: pluggable predictor behind the same contract as the heuristics.

The bundled LinearSoftmaxPredictor is a placeholder: one weight matrix per
indicator key applied to a normalised counter vector, followed by a softmax.
Real deployments inject their own Predictor.

MLLayer.score() never raises. Any predictor error, or output whose key set
differs from the heuristic key set, yields an empty IndicatorSet.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping

import numpy as np

from psyche.inference.types import (
    CORE_INDICATOR_KEYS,
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

logger = logging.getLogger(__name__)

FEATURE_NAMES: tuple[str, ...] = (
    "click_rate",
    "hover_rate",
    "scroll_rate",
    "checkout_start_rate",
    "checkout_complete_rate",
    "pricing_rate",
    "product_rate",
    "dwell_norm",
    "bias",
)

# Dwell averages above this many seconds saturate the feature
DWELL_SATURATION = 30.0


def build_features(counters: SignalCounters) -> np.ndarray:
    """Counters -> rate vector in [0, 1], with a trailing bias term."""
    n = max(counters.total, 1)
    return np.array(
        [
            counters.clicks / n,
            counters.hovers / n,
            counters.scrolls / n,
            counters.checkout_starts / n,
            counters.checkout_completes / n,
            counters.pricing_views / n,
            counters.product_views / n,
            min(counters.dwell_avg / DWELL_SATURATION, 1.0),
            1.0,
        ],
        dtype=np.float64,
    )


def softmax(logits: np.ndarray) -> np.ndarray:
    shifted = logits - np.max(logits)
    exp = np.exp(shifted)
    return exp / exp.sum()


# ---------------------------------------------------------------------------
# Predictors
# ---------------------------------------------------------------------------


class Predictor(ABC):
    """Maps a feature vector to {indicator key: (value, confidence)}."""

    model_tag: str = "ml@unknown"

    @abstractmethod
    def predict(self, features: np.ndarray) -> Mapping[IndicatorKey, tuple[str, float]]:
        ...


# Illustrative weights; rows are classes, columns follow FEATURE_NAMES
_DEFAULT_WEIGHTS: dict[IndicatorKey, tuple[list[str], list[list[float]]]] = {
    IndicatorKey.RISK_PROFILE: (
        [RiskProfile.CONSERVATIVE.value, RiskProfile.MODERATE.value, RiskProfile.AGGRESSIVE.value],
        [
            [0.0, 0.8, 0.0, -3.0, -4.0, 3.0, 0.0, 0.2, 0.0],
            [0.5, 0.0, 0.3, 0.0, 0.0, 0.0, 0.5, 0.0, 0.5],
            [0.8, -1.0, 0.0, 4.0, 6.0, -0.5, 0.5, 0.5, -0.3],
        ],
    ),
    IndicatorKey.COGNITIVE_STYLE: (
        [
            CognitiveStyle.ANALYTICAL.value,
            CognitiveStyle.INTUITIVE.value,
            CognitiveStyle.SYSTEMATIC.value,
            CognitiveStyle.CREATIVE.value,
        ],
        [
            [0.0, 0.0, 0.0, 0.0, 0.0, 2.0, 0.0, 1.0, 0.3],
            [0.0, 0.0, 1.5, 0.5, 0.5, 0.0, 2.0, -0.5, 0.0],
            [1.5, 0.0, 0.0, 0.0, 0.0, 0.5, 0.0, 0.5, 0.0],
            [0.0, 1.0, 0.5, 0.0, 0.0, 0.0, 0.5, 0.0, -0.3],
        ],
    ),
    IndicatorKey.MOOD: (
        [m.value for m in Mood],
        [
            [0.5, 0.0, 0.0, 0.5, 2.0, 0.0, 0.0, 0.0, 0.0],  # positive
            [0.0, 0.0, 0.5, 0.0, 0.0, 0.0, 0.0, 0.0, 0.8],  # neutral
            [0.0, 0.5, 0.0, -1.0, -1.0, 0.5, 0.0, -0.5, -0.5],  # negative
            [1.0, 0.0, 0.0, 1.5, 0.5, 0.0, 0.5, -0.5, -0.3],  # excited
            [0.0, 2.5, 0.0, -1.0, -2.0, 1.0, 0.0, 0.0, -0.2],  # anxious
            [0.0, -0.5, 0.0, 1.0, 3.0, 0.0, 0.0, 1.5, -0.3],  # confident
            [0.0, 1.5, 0.5, -0.5, -1.0, 0.5, 0.0, -0.5, -0.2],  # uncertain
        ],
    ),
}


class LinearSoftmaxPredictor(Predictor):
    """One linear layer plus softmax per indicator key.

    ``weights`` maps each key to (class labels, matrix of shape
    [n_classes, len(FEATURE_NAMES)]).
    """

    def __init__(
        self,
        weights: Mapping[IndicatorKey, tuple[list[str], list[list[float]]]] | None = None,
        model_tag: str = "ml@linear-v1",
    ):
        self.model_tag = model_tag
        self._classes: dict[IndicatorKey, list[str]] = {}
        self._matrices: dict[IndicatorKey, np.ndarray] = {}
        for key, (classes, matrix) in (weights or _DEFAULT_WEIGHTS).items():
            arr = np.asarray(matrix, dtype=np.float64)
            if arr.shape != (len(classes), len(FEATURE_NAMES)):
                raise ValueError(
                    f"Weights for {key.value} must have shape ({len(classes)}, {len(FEATURE_NAMES)}), got {arr.shape}"
                )
            self._classes[key] = list(classes)
            self._matrices[key] = arr

    def predict(self, features: np.ndarray) -> dict[IndicatorKey, tuple[str, float]]:
        if features.shape != (len(FEATURE_NAMES),):
            raise ValueError(f"Expected {len(FEATURE_NAMES)} features, got shape {features.shape}")
        out: dict[IndicatorKey, tuple[str, float]] = {}
        for key, matrix in self._matrices.items():
            probs = softmax(matrix @ features)
            best = int(np.argmax(probs))
            out[key] = (self._classes[key][best], round(float(probs[best]), 4))
        return out


# ---------------------------------------------------------------------------
# Layer
# ---------------------------------------------------------------------------


class MLLayer:
    """Wraps a Predictor; tolerates any predictor failure."""

    def __init__(self, predictor: Predictor | None = None):
        self.predictor = predictor or LinearSoftmaxPredictor()

    @property
    def model_tag(self) -> str:
        return self.predictor.model_tag

    def score(self, events: list[BehavioralEvent]) -> IndicatorSet:
        return self.score_counters(count_signals(events))

    def score_counters(self, counters: SignalCounters) -> IndicatorSet:
        try:
            raw = self.predictor.predict(build_features(counters))
            keys = {IndicatorKey(k) for k in raw}
            if keys != set(CORE_INDICATOR_KEYS):
                raise ValueError(
                    f"Predictor keys {sorted(k.value for k in keys)} do not match "
                    f"{sorted(k.value for k in CORE_INDICATOR_KEYS)}"
                )
            indicators = {
                IndicatorKey(k): Indicator(str(value), float(confidence)) for k, (value, confidence) in raw.items()
            }
            return IndicatorSet.build(self.model_tag, LayerName.ML, indicators)
        except Exception as e:
            logger.warning("ML layer %s failed, continuing without it: %s", self.model_tag, e)
            return IndicatorSet.empty(self.model_tag, LayerName.ML)
