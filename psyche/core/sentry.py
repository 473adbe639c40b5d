"""Sentry error tracking.

Enabled only when SENTRY_DSN is set. Events are scrubbed before sending:
request bodies and prompt-bearing extras are dropped, and the cycle context
from psyche.core.logging becomes tags.
"""

import logging
from typing import Any

from psyche import __version__
from psyche.core.config import settings
from psyche.core.logging import current_log_context

logger = logging.getLogger(__name__)

SCRUBBED_EXTRA_KEYS = ("prompt", "system_prompt", "input_text", "events", "payload")


def scrub_event(event: dict[str, Any], hint: dict[str, Any] | None = None) -> dict[str, Any]:
    """before_send hook: no raw prompts or behavioral payloads leave the process."""
    request = event.get("request")
    if isinstance(request, dict):
        request.pop("data", None)
        request.pop("cookies", None)

    extra = event.get("extra")
    if isinstance(extra, dict):
        for key in SCRUBBED_EXTRA_KEYS:
            if key in extra:
                extra[key] = "[Filtered]"

    context = current_log_context()
    if context:
        event.setdefault("tags", {}).update(context)
    return event


def init_sentry() -> bool:
    """Initialize Sentry if SENTRY_DSN is configured. Returns True when enabled."""
    if not settings.sentry_dsn:
        logger.debug("Sentry DSN not configured, skipping")
        return False

    import sentry_sdk
    from sentry_sdk.integrations.celery import CeleryIntegration
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.app_env,
        release=f"psyche@{__version__}",
        traces_sample_rate=0.1 if settings.app_env == "production" else 1.0,
        send_default_pii=False,
        before_send=scrub_event,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            CeleryIntegration(),
        ],
    )
    logger.info("Sentry initialized (env=%s)", settings.app_env)
    return True
