"""Prompt templates for psychographic analysis.

The user prompt is rendered from a compact evidence window (the 20 most
recent events) and the cheap-layer signals. URLs are reduced to their path so
the prompt guard's URL stripping keeps the page context.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

from psyche.inference.types import BehavioralEvent, IndicatorSet, SignalCounters

EVIDENCE_WINDOW_SIZE = 20


@dataclass(frozen=True)
class PromptTemplate:
    version: str
    system: str
    user: str

    def render(self, **kwargs: Any) -> str:
        return self.user.format(**kwargs)


PSYCHOGRAPHIC_ANALYSIS_PROMPT = PromptTemplate(
    version="psychographic_analysis@v1",
    system=(
        "You are a behavioral analyst producing a psychographic profile from anonymised "
        "interaction events.\n"
        "Rules:\n"
        "- Use only the evidence provided. Do not speculate about identity, health, "
        "religion, politics or other sensitive traits.\n"
        "- risk_profile must be exactly one of: conservative, moderate, aggressive.\n"
        "- cognitive_style must be exactly one of: analytical, intuitive, systematic, creative.\n"
        "- emotional_state.mood must be exactly one of: positive, neutral, negative, excited, "
        "anxious, confident, uncertain.\n"
        "- motivation_stack lists 1 to 5 short motivation labels, strongest first.\n"
        "- Every confidence is a number between 0 and 1.\n"
        "- reasoning is a short justification referencing observed behavior.\n"
        "Respond with a single JSON object matching the provided schema and nothing else."
    ),
    user=(
        "Analyse the behavior of one user.\n\n"
        "Behavioral counters:\n{counters}\n\n"
        "Cheap-layer signals:\n{signals}\n\n"
        "Most recent events (newest first):\n{events}\n"
    ),
)


def _url_path(url: str) -> str:
    if not url:
        return ""
    parts = urlsplit(url)
    if not parts.netloc:
        return url
    return parts.path or "/"


def compact_events(events: list[BehavioralEvent], limit: int = EVIDENCE_WINDOW_SIZE) -> list[dict[str, Any]]:
    """First ``limit`` events as {id, type, ts, url, dur}. Input is newest first."""
    window = []
    for event in events[:limit]:
        window.append(
            {
                "id": event.id,
                "type": event.type,
                "ts": event.timestamp.isoformat(),
                "url": _url_path(event.url),
                "dur": event.duration,
            }
        )
    return window


def _signals(layers: list[IndicatorSet]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for layer in layers:
        if layer.is_empty:
            out[layer.layer.value] = "unavailable"
            continue
        out[layer.layer.value] = {k.value: {"value": i.value, "confidence": i.confidence} for k, i in layer}
    return out


def build_analysis_prompt(
    window: list[dict[str, Any]],
    counters: SignalCounters,
    heuristic: IndicatorSet,
    ml: IndicatorSet,
) -> tuple[str, str]:
    """Return (system_prompt, user_prompt)."""
    user = PSYCHOGRAPHIC_ANALYSIS_PROMPT.render(
        counters=json.dumps(counters.to_dict(), ensure_ascii=False),
        signals=json.dumps(_signals([heuristic, ml]), ensure_ascii=False),
        events="\n".join(json.dumps(e, ensure_ascii=False) for e in window),
    )
    return PSYCHOGRAPHIC_ANALYSIS_PROMPT.system, user
