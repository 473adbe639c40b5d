"""Prompt Guard: input sanitization and output schema validation.

Input side (``sanitize``):
  1. Strip NUL bytes
  2. Remove fenced code blocks -> [CODE-BLOCK-REMOVED]
  3. Remove URLs -> [URL-REMOVED]
  4. Mask PII (email, card, SSN, phone, IP)
  5. Neutralize (-> [FILTERED]) or reject known prompt-injection patterns
  6. Normalize whitespace
  7. Enforce length: below min -> rejected, above max -> truncated + warning

Output side (``validate``): the expected shape is a pydantic model; required
fields, numeric bounds and enum sets are enforced by ``model_validate``.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from psyche.core.exceptions import InputValidationError, OutputValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class InjectionPolicy(str, Enum):
    """What to do when an injection pattern is found."""

    NEUTRALIZE = "neutralize"  # replace with [FILTERED], keep going
    REJECT = "reject"  # VALIDATION_ERROR


class GuardFlag(str, Enum):
    """Flags assigned during sanitization."""

    CLEAN = "clean"
    CODE_BLOCK_REMOVED = "code_block_removed"
    URL_REMOVED = "url_removed"
    PII_MASKED = "pii_masked"
    INJECTION_FILTERED = "injection_filtered"
    TRUNCATED = "truncated"


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

INJECTION_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"ignore\s+(?:all\s+|the\s+)?(?:previous|prior|above)\s+instructions", re.IGNORECASE),
    re.compile(r"ignore\s+all\s+instructions", re.IGNORECASE),
    re.compile(r"\b(?:system|assistant|human)\s*:", re.IGNORECASE),
    re.compile(r"\[/?system\]", re.IGNORECASE),
    re.compile(r"act\s+as\s+if", re.IGNORECASE),
    re.compile(r"pretend\s+you\s+are", re.IGNORECASE),
]

_CODE_BLOCK_RE = re.compile(r"```.*?```", re.DOTALL)
_URL_RE = re.compile(r"https?://[^\s<>\"']+", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"[ \t\r\f\v]+")
_BLANK_LINES_RE = re.compile(r"\n{3,}")

# Order matters: card before phone, SSN before phone
PII_PATTERNS: list[tuple[str, re.Pattern[str], str]] = [
    ("email", re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE), "[EMAIL-MASKED]"),
    ("card", re.compile(r"\b(?:\d{4}[\s-]?){3}\d{4}\b"), "[CARD-MASKED]"),
    ("ssn", re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "[SSN-MASKED]"),
    ("phone", re.compile(r"(?<![\w-])(?:\+\d{1,3}[\s.-]?)?\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}\b"), "[PHONE-MASKED]"),
    ("ip", re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b"), "[IP-MASKED]"),
]


def mask_pii(text: str) -> tuple[str, list[str]]:
    """Replace PII with fixed tokens. Returns (masked_text, kinds_found)."""
    found: list[str] = []
    for kind, pattern, token in PII_PATTERNS:
        text, count = pattern.subn(token, text)
        if count:
            found.append(kind)
    return text, found


def detect_pii(text: str) -> list[str]:
    """Kinds of PII present in text, without modifying it."""
    return mask_pii(text)[1]


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


@dataclass
class SanitizedPrompt:
    """Result of PromptGuard.sanitize."""

    text: str
    original_length: int = 0
    warnings: list[str] = field(default_factory=list)
    flags: list[GuardFlag] = field(default_factory=list)
    pii_detected: list[str] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return self.flags == [GuardFlag.CLEAN]


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------


class PromptGuard:
    """Sanitizes model input and validates model output."""

    def __init__(
        self,
        min_length: int = 50,
        max_length: int = 10_000,
        injection_policy: InjectionPolicy = InjectionPolicy.NEUTRALIZE,
        strip_urls: bool = True,
    ):
        if min_length > max_length:
            raise ValueError("min_length must not exceed max_length")
        self.min_length = min_length
        self.max_length = max_length
        self.injection_policy = injection_policy
        self.strip_urls = strip_urls

    def sanitize(self, text: str) -> SanitizedPrompt:
        """Clean a prompt before it leaves the process.

        Raises:
            InputValidationError: input too short after cleaning, or an
                injection pattern was found under the REJECT policy.
        """
        if not isinstance(text, str):
            raise InputValidationError("Prompt must be a string")

        result = SanitizedPrompt(text="", original_length=len(text))
        cleaned = text.replace("\x00", "")

        cleaned, n = _CODE_BLOCK_RE.subn("[CODE-BLOCK-REMOVED]", cleaned)
        if n:
            result.flags.append(GuardFlag.CODE_BLOCK_REMOVED)

        if self.strip_urls:
            cleaned, n = _URL_RE.subn("[URL-REMOVED]", cleaned)
            if n:
                result.flags.append(GuardFlag.URL_REMOVED)

        cleaned, pii = mask_pii(cleaned)
        if pii:
            result.flags.append(GuardFlag.PII_MASKED)
            result.pii_detected = pii
            result.warnings.append(f"PII masked: {', '.join(pii)}")

        hits = 0
        for pattern in INJECTION_PATTERNS:
            cleaned, n = pattern.subn("[FILTERED]", cleaned)
            hits += n
        if hits:
            if self.injection_policy == InjectionPolicy.REJECT:
                logger.warning("Prompt rejected: %d injection pattern match(es)", hits)
                raise InputValidationError(
                    "Potentially malicious content detected: prompt injection attempt",
                    {"matches": hits},
                )
            logger.info("Neutralized %d injection pattern match(es)", hits)
            result.flags.append(GuardFlag.INJECTION_FILTERED)
            result.warnings.append(f"Injection patterns filtered: {hits}")

        cleaned = _WHITESPACE_RE.sub(" ", cleaned)
        cleaned = _BLANK_LINES_RE.sub("\n\n", cleaned).strip()

        if len(cleaned) < self.min_length:
            raise InputValidationError(
                f"Input too short: minimum {self.min_length} characters required",
                {"length": len(cleaned)},
            )

        if len(cleaned) > self.max_length:
            cleaned = cleaned[: self.max_length]
            result.flags.append(GuardFlag.TRUNCATED)
            result.warnings.append(f"Input truncated: maximum {self.max_length} characters allowed")
            logger.warning("Prompt truncated from %d to %d characters", result.original_length, self.max_length)

        if len(cleaned.split()) < 10:
            result.warnings.append("Limited content may result in low-confidence analysis")

        if not result.flags:
            result.flags.append(GuardFlag.CLEAN)
        result.text = cleaned
        return result

    @staticmethod
    def json_schema(schema: type[BaseModel]) -> dict[str, Any]:
        """JSON Schema sent to the provider for structured output."""
        return schema.model_json_schema()

    def validate(self, output: str | dict[str, Any], schema: type[ModelT]) -> ModelT:
        """Parse and validate model output against the schema.

        Raises:
            OutputValidationError: malformed JSON or schema violation.
        """
        if isinstance(output, str):
            try:
                payload = json.loads(_strip_json_fence(output))
            except json.JSONDecodeError as e:
                raise OutputValidationError(f"Model returned malformed JSON: {e.msg}", [str(e)]) from e
        else:
            payload = output

        if not isinstance(payload, dict):
            raise OutputValidationError("Model output must be a JSON object", ["root: not an object"])

        try:
            return schema.model_validate(payload)
        except ValidationError as e:
            errors = [f"{'.'.join(str(p) for p in err['loc']) or 'root'}: {err['msg']}" for err in e.errors()]
            raise OutputValidationError(f"Model output failed {schema.__name__} validation", errors) from e


def _strip_json_fence(text: str) -> str:
    """Remove a ```json ... ``` wrapper some models add around JSON output."""
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
        if stripped.rstrip().endswith("```"):
            stripped = stripped.rstrip()[:-3]
    return stripped.strip()
