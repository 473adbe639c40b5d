from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging as celery_setup_logging
from celery.signals import worker_process_init

from psyche.core.config import settings
from psyche.core.logging import setup_logging
from psyche.core.sentry import init_sentry

celery_app = Celery(
    "psyche",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

# One cycle can spend at most llm_max_attempts full timeouts plus backoff upstream
_CYCLE_SOFT_LIMIT = int(settings.llm_max_attempts * (settings.llm_timeout_seconds + settings.llm_max_retry_delay)) + 30

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
    result_expires=24 * 3600,
    task_routes={
        "run_inference_cycle": {"queue": "inference"},
        "purge_audit_logs": {"queue": "maintenance"},
    },
    task_annotations={
        "run_inference_cycle": {"soft_time_limit": _CYCLE_SOFT_LIMIT, "time_limit": _CYCLE_SOFT_LIMIT + 30},
    },
)

# Celery Beat schedule
celery_app.conf.beat_schedule = {
    "purge-audit-logs": {
        "task": "purge_audit_logs",
        "schedule": crontab(hour=3, minute=30),  # daily at 03:30 UTC
    },
}


@celery_setup_logging.connect
def _configure_worker_logging(**kwargs):
    # Connecting this signal stops Celery from installing its own root handlers
    setup_logging()


@worker_process_init.connect
def _init_worker_process(**kwargs):
    init_sentry()


celery_app.conf.include = [
    "psyche.tasks.inference_tasks",
    "psyche.tasks.maintenance_tasks",
]
