import json
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from psyche.core.config import settings

# Override settings for tests
settings.app_env = "development"
settings.llm_api_key = "test-key"
settings.sentry_dsn = ""

from psyche.core.exceptions import TransientModelError  # noqa: E402
from psyche.db.base import Base  # noqa: E402
from psyche.gateway.model_adapters import ModelInvoker, ModelReply  # noqa: E402
from psyche.gateway.types import build_default_policies  # noqa: E402
from psyche.inference.ml_layer import Predictor  # noqa: E402
from psyche.inference.types import BehavioralEvent, IndicatorKey  # noqa: E402
import psyche.models  # noqa: E402,F401


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeInvoker(ModelInvoker):
    """Scripted model: each call pops the next reply (dict/str) or raises it (Exception)."""

    def __init__(self, replies: list[Any] | None = None, model: str = "gpt-test"):
        super().__init__(model)
        self.replies = list(replies or [])
        self.calls: list[dict[str, Any]] = []

    async def invoke(self, system_prompt, user_prompt, json_schema, timeout):
        self.calls.append(
            {"system_prompt": system_prompt, "user_prompt": user_prompt, "json_schema": json_schema, "timeout": timeout}
        )
        if not self.replies:
            raise TransientModelError("no scripted reply", status_code=503)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        content = reply if isinstance(reply, str) else json.dumps(reply)
        return ModelReply(content=content, model_version=self.model, latency_ms=5)


async def no_sleep(delay: float) -> None:
    return None


def make_event(
    kind: str,
    url: str = "",
    duration: float | None = None,
    user_id: str = "user-1",
    index: int = 0,
    base: datetime | None = None,
) -> BehavioralEvent:
    payload: dict[str, Any] = {}
    if url:
        payload["url"] = url
    if duration is not None:
        payload["duration"] = duration
    ts = (base or datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)) + timedelta(seconds=index)
    return BehavioralEvent(id=f"{user_id}-e{index}", user_id=user_id, type=kind, timestamp=ts, payload=payload)


def make_events(rows: list[tuple], user_id: str = "user-1") -> list[BehavioralEvent]:
    """rows: (type,) / (type, url) / (type, url, duration), oldest first."""
    return [make_event(*row, user_id=user_id, index=i) for i, row in enumerate(rows)]


def llm_output(
    risk: str = "aggressive",
    cognitive: str = "analytical",
    mood: str = "confident",
    confidence: float = 0.9,
    reasoning: str = "Repeated checkout activity and short hesitation suggest decisive buying behavior.",
) -> dict[str, Any]:
    return {
        "risk_profile": risk,
        "cognitive_style": cognitive,
        "emotional_state": {"mood": mood, "confidence": confidence},
        "motivation_stack": ["achievement", "security"],
        "confidences": {"risk_profile": confidence, "cognitive_style": confidence, "mood": confidence},
        "reasoning": reasoning,
    }


# Windows that drive the heuristic layer to a known risk value
CONSERVATIVE_WINDOW = [
    ("page_view", "https://shop.example.com/pricing", 12),
    ("click", "https://shop.example.com/pricing/plans", 4),
    ("scroll", "https://shop.example.com/faq", 6),
]
ROUTINE_WINDOW = [
    ("page_view", "https://shop.example.com/", 3),
    ("click", "https://shop.example.com/blog", 2),
]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_invoker() -> FakeInvoker:
    return FakeInvoker()


@pytest.fixture
async def session_factory():
    """Fresh in-memory SQLite schema per test. StaticPool keeps one shared connection."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


class FixedPredictor(Predictor):
    """Predictor returning a preset answer, or raising when given an exception."""

    def __init__(self, answer, model_tag: str = "ml@fixed"):
        self.answer = answer
        self.model_tag = model_tag

    def predict(self, features):
        if isinstance(self.answer, Exception):
            raise self.answer
        return self.answer


def ml_answer(risk: str = "aggressive", cognitive: str = "analytical", mood: str = "neutral", confidence: float = 0.55):
    return {
        IndicatorKey.RISK_PROFILE: (risk, confidence),
        IndicatorKey.COGNITIVE_STYLE: (cognitive, confidence),
        IndicatorKey.MOOD: (mood, confidence),
    }


def fast_policies():
    """Default operation policies without retry backoff."""
    policies = build_default_policies()
    for policy in policies.values():
        policy.retry.base_delay = 0.0
        policy.retry.max_delay = 0.0
    return policies
