"""Centralized logging configuration.

Every record passes two filters before it is formatted:
  - LogContextFilter stamps the current cycle context (cycle_id, tenant_id,
    user_id) bound with ``bind_log_context``
  - PiiMaskingFilter masks e-mails, card numbers, phones and IPs in the
    rendered message, so raw behavioral payloads never reach the log sink
"""

import contextvars
import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from psyche.core.config import settings
from psyche.gateway.prompt_guard import mask_pii

CONTEXT_FIELDS = ("cycle_id", "tenant_id", "user_id")

_log_context: contextvars.ContextVar[dict[str, str]] = contextvars.ContextVar("psyche_log_context", default={})


@contextmanager
def bind_log_context(**fields: str | None) -> Iterator[None]:
    """Attach cycle fields to every record logged inside the block (task- and coroutine-local)."""
    merged = {**_log_context.get(), **{k: v for k, v in fields.items() if v}}
    token = _log_context.set(merged)
    try:
        yield
    finally:
        _log_context.reset(token)


def current_log_context() -> dict[str, str]:
    return dict(_log_context.get())


class LogContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        context = _log_context.get()
        for name in CONTEXT_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, context.get(name, "-"))
        return True


class PiiMaskingFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked, found = mask_pii(message)
        if found:
            record.msg = masked
            record.args = None
        return True


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter for production."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, "-")
            if value != "-":
                log_data[name] = value
        if record.exc_info and record.exc_info[1]:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False)


def setup_logging() -> None:
    """Configure logging for the API process and Celery workers."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(LogContextFilter())
    handler.addFilter(PiiMaskingFilter())

    if settings.log_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | cycle=%(cycle_id)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    root.addHandler(handler)

    # Suppress noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING if not settings.app_debug else level)
    logging.getLogger("celery").setLevel(level)
