"""Tests for the Celery inference and maintenance tasks."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from psyche.audit.audit_logger import AuditLogger
from psyche.audit.stores import SqlAuditStore
from psyche.core.exceptions import InputValidationError
from psyche.inference.stores import SqlProfileStore
from psyche.models.behavioral_event import BehavioralEventRecord
from psyche.tasks.inference_tasks import _run_cycle_async, run_inference_cycle_task
from psyche.tasks.maintenance_tasks import _purge_async, purge_audit_logs_task
from psyche.tasks.worker_context import run_async

from tests.conftest import ROUTINE_WINDOW, FakeInvoker, llm_output, make_events


def _engine_mock() -> MagicMock:
    engine = MagicMock()
    engine.dispose = AsyncMock()
    return engine


# ==========================================================================
# Test: async bodies against SQLite
# ==========================================================================


@pytest.mark.asyncio
async def test_run_cycle_async_persists_profile(session_factory):
    async with session_factory() as db:
        for event in make_events(ROUTINE_WINDOW):
            db.add(
                BehavioralEventRecord(
                    id=event.id,
                    user_id=event.user_id,
                    type=event.type,
                    timestamp=event.timestamp,
                    payload=dict(event.payload),
                )
            )
        await db.commit()

    engine = _engine_mock()
    with (
        patch("psyche.tasks.inference_tasks.make_session_factory", return_value=(session_factory, engine)),
        patch("psyche.core.container.build_invoker", return_value=FakeInvoker([llm_output()])),
    ):
        result = await _run_cycle_async("user-1", "acme", "task-1")

    assert result["cycle_id"] == "task-1"
    assert result["user_id"] == "user-1"
    assert result["reason"] in {"routine", "disagreement", "high_value"}
    assert await SqlProfileStore(session_factory).get("user-1", "acme") is not None
    engine.dispose.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_cycle_async_disposes_engine_on_error(session_factory):
    engine = _engine_mock()
    with patch("psyche.tasks.inference_tasks.make_session_factory", return_value=(session_factory, engine)):
        with pytest.raises(InputValidationError):
            await _run_cycle_async("nobody", "acme", "task-2")
    engine.dispose.assert_awaited_once()


@pytest.mark.asyncio
async def test_purge_async(session_factory):
    audit = AuditLogger(SqlAuditStore(session_factory))
    old = audit.build_record(tenant_id="acme", operation_type="psychographic_analysis", input_text="x", success=True)
    old.created_at = datetime.now(timezone.utc) - timedelta(days=400)
    await audit.store.add(old)
    await audit.record(tenant_id="acme", operation_type="psychographic_analysis", input_text="y", success=True)

    engine = _engine_mock()
    with patch("psyche.tasks.maintenance_tasks.make_session_factory", return_value=(session_factory, engine)):
        deleted = await _purge_async(365)

    assert deleted == 1
    assert len(await audit.get_audit_logs("acme")) == 1


# ==========================================================================
# Test: task wrappers (sync, eager)
# ==========================================================================


class TestInferenceTask:
    def test_task_id_becomes_cycle_id(self):
        fake = AsyncMock(return_value={"cycle_id": "task-123", "reason": "routine"})
        with patch("psyche.tasks.inference_tasks._run_cycle_async", fake):
            result = run_inference_cycle_task.apply(args=["user-1", "acme"], task_id="task-123").get()

        assert result == {"cycle_id": "task-123", "reason": "routine"}
        fake.assert_awaited_once_with("user-1", "acme", "task-123")

    def test_explicit_cycle_id(self):
        fake = AsyncMock(return_value={})
        with patch("psyche.tasks.inference_tasks._run_cycle_async", fake):
            run_inference_cycle_task.apply(args=["user-1", "acme", "c-7"]).get()
        fake.assert_awaited_once_with("user-1", "acme", "c-7")

    def test_governance_error_reported(self):
        fake = AsyncMock(side_effect=InputValidationError("no behavioral events"))
        with patch("psyche.tasks.inference_tasks._run_cycle_async", fake):
            result = run_inference_cycle_task.apply(args=["user-1", "acme"]).get()
        assert result == {"error": "no behavioral events", "code": "VALIDATION_ERROR", "user_id": "user-1"}

    def test_unexpected_error_reported(self):
        fake = AsyncMock(side_effect=RuntimeError("db down"))
        with patch("psyche.tasks.inference_tasks._run_cycle_async", fake):
            result = run_inference_cycle_task.apply(args=["user-1", "acme"]).get()
        assert result == {"error": "db down", "user_id": "user-1"}


class TestPurgeTask:
    def test_success(self):
        with patch("psyche.tasks.maintenance_tasks._purge_async", AsyncMock(return_value=3)):
            result = purge_audit_logs_task.apply().get()
        assert result["status"] == "ok"
        assert result["deleted"] == 3

    def test_failure(self):
        with patch("psyche.tasks.maintenance_tasks._purge_async", AsyncMock(side_effect=RuntimeError("db down"))):
            result = purge_audit_logs_task.apply().get()
        assert result == {"status": "error", "error": "db down"}


def test_run_async_runs_coroutine():
    async def answer():
        return 42

    assert run_async(answer()) == 42
