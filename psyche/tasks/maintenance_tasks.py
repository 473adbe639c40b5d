"""Celery tasks for data retention."""

import logging
from datetime import datetime, timedelta, timezone

from psyche.audit.audit_logger import AuditLogger
from psyche.audit.stores import SqlAuditStore
from psyche.core.config import settings
from psyche.tasks.celery_app import celery_app
from psyche.tasks.worker_context import make_session_factory, run_async

logger = logging.getLogger(__name__)


async def _purge_async(retention_days: int) -> int:
    session_factory, engine = make_session_factory()
    try:
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        return await AuditLogger(SqlAuditStore(session_factory)).purge_older_than(cutoff)
    finally:
        await engine.dispose()


@celery_app.task(name="purge_audit_logs")
def purge_audit_logs_task():
    """Delete audit records older than audit_retention_days.

    Runs daily at 03:30 UTC via Celery Beat.
    """
    days = settings.audit_retention_days
    logger.info("Purging audit records older than %d days...", days)
    try:
        deleted = run_async(_purge_async(days))
        return {"status": "ok", "deleted": deleted, "retention_days": days}
    except Exception as exc:
        logger.error("Failed to purge audit records: %s", exc)
        return {"status": "error", "error": str(exc)}
