"""Celery tasks for inference cycles."""

import logging

from psyche.core.container import build_sql_container
from psyche.core.exceptions import GovernanceError
from psyche.gateway.types import DEFAULT_OPERATION_POLICIES
from psyche.tasks.celery_app import celery_app
from psyche.tasks.worker_context import make_session_factory, run_async, worker_breakers, worker_buckets

logger = logging.getLogger(__name__)


async def _run_cycle_async(user_id: str, tenant_id: str, cycle_id: str | None = None) -> dict:
    session_factory, engine = make_session_factory()
    try:
        container = build_sql_container(
            session_factory,
            policies=DEFAULT_OPERATION_POLICIES,
            buckets=worker_buckets,
            breakers=worker_breakers,
        )
        result = await container.orchestrator.run_inference_cycle(user_id, tenant_id=tenant_id, cycle_id=cycle_id)
        return {
            "cycle_id": result.cycle_id,
            "user_id": user_id,
            "reason": result.reason.value,
            "escalated": result.escalated,
            "llm_status": result.llm_status,
            "confidence": result.profile.confidence,
        }
    finally:
        await engine.dispose()


@celery_app.task(bind=True, name="run_inference_cycle", max_retries=0)
def run_inference_cycle_task(self, user_id: str, tenant_id: str, cycle_id: str | None = None):
    """Celery task: one inference cycle for one user.

    Upstream retries happen inside the gateway, so Celery-level retries are
    disabled. The task id doubles as the cycle id, which keys credit consumption.
    """
    cycle_id = cycle_id or self.request.id
    logger.info("Starting inference cycle for tenant=%s user=%s", tenant_id, user_id)
    try:
        result = run_async(_run_cycle_async(user_id, tenant_id, cycle_id))
        logger.info("Inference cycle done for user %s: %s", user_id, result)
        return result
    except GovernanceError as exc:
        logger.warning("Inference cycle rejected for user %s: %s", user_id, exc.message)
        return {"error": exc.message, "code": exc.code.value, "user_id": user_id}
    except Exception as exc:
        logger.error("Inference cycle failed for user %s: %s", user_id, exc)
        return {"error": str(exc), "user_id": user_id}
