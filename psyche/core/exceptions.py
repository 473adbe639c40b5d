"""Exception types.

Two families live here:
  - Governance errors: raised by the inference core (ledger, gateway, orchestrator)
    and carrying an ErrorCode plus actionable details (retry_after, remaining).
  - HTTP errors: fastapi.HTTPException subclasses used directly by API routes.

Model-boundary errors (TransientModelError / PermanentModelError) are raised by
model invokers and consumed by the retry loop; they never reach API callers.
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, status

from psyche.gateway.types import ErrorCode


# ---------------------------------------------------------------------------
# Governance errors
# ---------------------------------------------------------------------------


class GovernanceError(Exception):
    """Base class for typed inference-core failures."""

    code: ErrorCode = ErrorCode.SYSTEM_ERROR

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "code": self.code.value, **self.details}


class InputValidationError(GovernanceError):
    code = ErrorCode.VALIDATION_ERROR


class RateLimitedError(GovernanceError):
    code = ErrorCode.RATE_LIMITED

    def __init__(self, message: str, retry_after: int):
        super().__init__(message, {"retry_after": retry_after})
        self.retry_after = retry_after


class CircuitOpenError(GovernanceError):
    code = ErrorCode.CIRCUIT_OPEN


class InsufficientCreditsError(GovernanceError):
    code = ErrorCode.INSUFFICIENT_CREDITS

    def __init__(self, message: str, remaining: int):
        super().__init__(message, {"remaining": remaining})
        self.remaining = remaining


class UpstreamError(GovernanceError):
    """Upstream model failed after retries (or with a permanent error)."""

    code = ErrorCode.SYSTEM_ERROR


# ---------------------------------------------------------------------------
# Model boundary
# ---------------------------------------------------------------------------


class TransientModelError(Exception):
    """Timeout, 5xx or 429 from the model provider. Retryable."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class PermanentModelError(Exception):
    """Non-retryable provider failure (4xx, malformed payload)."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class OutputValidationError(Exception):
    """Model output violates the declared schema. Never retried."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []


# ---------------------------------------------------------------------------
# HTTP errors
# ---------------------------------------------------------------------------


class NotFoundError(HTTPException):
    def __init__(self, detail: str = "Not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class BadRequestError(HTTPException):
    def __init__(self, detail: str = "Bad request"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class ServiceUnavailableError(HTTPException):
    def __init__(self, detail: str = "Service unavailable"):
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)


# Status code per governance error code, used by the API exception handler
GOVERNANCE_HTTP_STATUS: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    ErrorCode.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorCode.CIRCUIT_OPEN: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.INSUFFICIENT_CREDITS: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorCode.SYSTEM_ERROR: status.HTTP_502_BAD_GATEWAY,
}
