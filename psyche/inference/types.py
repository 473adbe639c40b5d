"""Core types and DTOs for the inference layers."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class LayerName(str, Enum):
    """Inference layers, in fusion priority order (last wins ties)."""

    HEURISTIC = "heuristic"
    ML = "ml"
    LLM = "llm"


LAYER_PRIORITY: dict[LayerName, int] = {
    LayerName.HEURISTIC: 0,
    LayerName.ML: 1,
    LayerName.LLM: 2,
}


class RiskProfile(str, Enum):
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


class CognitiveStyle(str, Enum):
    ANALYTICAL = "analytical"
    INTUITIVE = "intuitive"
    SYSTEMATIC = "systematic"
    CREATIVE = "creative"


class Mood(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"
    EXCITED = "excited"
    ANXIOUS = "anxious"
    CONFIDENT = "confident"
    UNCERTAIN = "uncertain"


class IndicatorKey(str, Enum):
    """Indicator keys. Declaration order is the canonical output order."""

    RISK_PROFILE = "risk_profile"
    COGNITIVE_STYLE = "cognitive_style"
    MOOD = "emotional_state.mood"
    PRIMARY_MOTIVATION = "motivation.primary"  # LLM only, free-text label


# Keys every cheap layer (heuristic, ML) must emit
CORE_INDICATOR_KEYS: tuple[IndicatorKey, ...] = (
    IndicatorKey.RISK_PROFILE,
    IndicatorKey.COGNITIVE_STYLE,
    IndicatorKey.MOOD,
)

# Closed value sets per key; keys not listed accept any non-empty label
INDICATOR_VALUES: dict[IndicatorKey, type[Enum]] = {
    IndicatorKey.RISK_PROFILE: RiskProfile,
    IndicatorKey.COGNITIVE_STYLE: CognitiveStyle,
    IndicatorKey.MOOD: Mood,
}

_KEY_ORDER = {key: i for i, key in enumerate(IndicatorKey)}


class UpdateReason(str, Enum):
    """Why a profile update happened (first matching wins)."""

    DISAGREEMENT = "disagreement"
    HIGH_VALUE = "high_value"
    ROUTINE = "routine"


UPDATE_REASON_TEXT: dict[UpdateReason, str] = {
    UpdateReason.DISAGREEMENT: "Disagreement between heuristics and ML",
    UpdateReason.HIGH_VALUE: "High value activity",
    UpdateReason.ROUTINE: "Routine update",
}


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BehavioralEvent:
    """One captured user interaction. Read-only to this package."""

    id: str
    user_id: str
    type: str
    timestamp: datetime
    payload: Mapping[str, Any] = field(default_factory=dict)

    @property
    def url(self) -> str:
        value = self.payload.get("url") if isinstance(self.payload, Mapping) else None
        return value if isinstance(value, str) else ""

    @property
    def duration(self) -> float:
        """Dwell duration in seconds; malformed values count as zero."""
        value = self.payload.get("duration") if isinstance(self.payload, Mapping) else None
        if isinstance(value, bool):
            return 0.0
        try:
            return max(0.0, float(value or 0))
        except (TypeError, ValueError):
            return 0.0


@dataclass
class SignalCounters:
    """Behavioral counters shared by heuristics, ML features and escalation."""

    total: int = 0
    clicks: int = 0
    hovers: int = 0
    scrolls: int = 0
    checkout_starts: int = 0
    checkout_completes: int = 0
    pricing_views: int = 0
    product_views: int = 0
    dwell_avg: float = 0.0

    @property
    def checkouts(self) -> int:
        return self.checkout_starts + self.checkout_completes

    def to_dict(self) -> dict[str, float]:
        return {
            "events": self.total,
            "clicks": self.clicks,
            "hovers": self.hovers,
            "scrolls": self.scrolls,
            "checkout_starts": self.checkout_starts,
            "checkout_completes": self.checkout_completes,
            "pricing_views": self.pricing_views,
            "product_views": self.product_views,
            "dwell_avg": round(self.dwell_avg, 2),
        }


def count_signals(events: list[BehavioralEvent]) -> SignalCounters:
    """Single pass over the window. Unknown event types only count toward dwell."""
    counters = SignalCounters()
    dwell_sum = 0.0
    for event in events:
        counters.total += 1
        kind = (event.type or "").lower()
        if kind == "click":
            counters.clicks += 1
        elif kind == "hover":
            counters.hovers += 1
        elif kind == "scroll":
            counters.scrolls += 1
        elif kind == "checkout_start":
            counters.checkout_starts += 1
        elif kind == "checkout_complete":
            counters.checkout_completes += 1

        url = event.url.lower()
        if "pricing" in url:
            counters.pricing_views += 1
        if "product" in url:
            counters.product_views += 1
        dwell_sum += event.duration

    counters.dwell_avg = dwell_sum / counters.total if counters.total else 0.0
    return counters


# ---------------------------------------------------------------------------
# Indicators
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Indicator:
    """A single indicator value with its confidence in [0, 1]."""

    value: str
    confidence: float

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be in [0, 1], got {self.confidence}")


def validate_indicator(key: IndicatorKey, indicator: Indicator) -> None:
    allowed = INDICATOR_VALUES.get(key)
    if allowed is not None:
        if indicator.value not in {member.value for member in allowed}:
            raise ValueError(f"{indicator.value!r} is not a valid {key.value}")
    elif not indicator.value or not indicator.value.strip():
        raise ValueError(f"{key.value} must be a non-empty label")


@dataclass(frozen=True)
class IndicatorSet:
    """Immutable, ordered indicator mapping produced by one layer.

    Build with ``IndicatorSet.build`` so values are checked against their key.
    """

    model: str
    layer: LayerName
    entries: tuple[tuple[IndicatorKey, Indicator], ...] = ()

    @classmethod
    def build(
        cls,
        model: str,
        layer: LayerName,
        indicators: Mapping[IndicatorKey, Indicator],
    ) -> IndicatorSet:
        for key, indicator in indicators.items():
            validate_indicator(IndicatorKey(key), indicator)
        ordered = tuple(sorted(((IndicatorKey(k), v) for k, v in indicators.items()), key=lambda kv: _KEY_ORDER[kv[0]]))
        return cls(model=model, layer=layer, entries=ordered)

    @classmethod
    def empty(cls, model: str, layer: LayerName) -> IndicatorSet:
        return cls(model=model, layer=layer)

    def get(self, key: IndicatorKey) -> Indicator | None:
        for k, indicator in self.entries:
            if k == key:
                return indicator
        return None

    def value_of(self, key: IndicatorKey) -> str | None:
        indicator = self.get(key)
        return indicator.value if indicator else None

    def keys(self) -> set[IndicatorKey]:
        return {k for k, _ in self.entries}

    def __iter__(self) -> Iterator[tuple[IndicatorKey, Indicator]]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def is_empty(self) -> bool:
        return not self.entries

    @property
    def confidence(self) -> float:
        """Mean indicator confidence; 0 for an empty set."""
        if not self.entries:
            return 0.0
        return sum(i.confidence for _, i in self.entries) / len(self.entries)

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "layer": self.layer.value,
            "confidence": round(self.confidence, 4),
            "indicators": [
                {"key": k.value, "value": i.value, "confidence": i.confidence} for k, i in self.entries
            ],
        }


# ---------------------------------------------------------------------------
# Fused profile
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FusedIndicator:
    """Winning indicator for one key."""

    value: str
    confidence: float
    source: str  # model tag of the winning layer


@dataclass
class FusedProfile:
    """Merged profile for one user; the current state, overwritten each cycle."""

    user_id: str
    indicators: dict[IndicatorKey, FusedIndicator]
    confidence: float
    evidence: str
    provenance: list[str]
    degraded: list[str] = field(default_factory=list)  # e.g. ["ml_unavailable", "llm:CIRCUIT_OPEN"]
    layers: dict[str, Any] = field(default_factory=dict)  # per-layer IndicatorSet dicts
    event_window: list[dict[str, Any]] = field(default_factory=list)  # compact evidence window
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def value_of(self, key: IndicatorKey) -> str | None:
        indicator = self.indicators.get(key)
        return indicator.value if indicator else None

    def indicators_dict(self) -> dict[str, dict[str, Any]]:
        return {
            key.value: {"value": ind.value, "confidence": ind.confidence, "source": ind.source}
            for key, ind in sorted(self.indicators.items(), key=lambda kv: _KEY_ORDER[kv[0]])
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "indicators": self.indicators_dict(),
            "confidence": self.confidence,
            "evidence": self.evidence,
            "provenance": self.provenance,
            "degraded": self.degraded,
            "layers": self.layers,
            "event_window": self.event_window,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class EscalationDecision:
    """Output of the escalation policy."""

    escalate: bool
    reason: UpdateReason
    disagreement: bool = False
    high_value: bool = False

    @property
    def reason_text(self) -> str:
        return UPDATE_REASON_TEXT[self.reason]


@dataclass
class ProfileUpdateAudit:
    """Append-only history entry for one fusion result."""

    user_id: str
    tenant_id: str
    cycle_id: str
    reason: UpdateReason
    escalated: bool
    snapshot: dict[str, Any]
    llm_status: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def reason_text(self) -> str:
        return UPDATE_REASON_TEXT[self.reason]

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "tenant_id": self.tenant_id,
            "cycle_id": self.cycle_id,
            "reason": self.reason.value,
            "reason_text": self.reason_text,
            "escalated": self.escalated,
            "llm_status": self.llm_status,
            "snapshot": self.snapshot,
            "created_at": self.created_at.isoformat(),
        }
