"""Audit Logger: compliance records for every governed LLM operation.

A record never stores raw prompt or output text. It keeps:
  - SHA-256 of the input and of the serialized output (tamper evidence)
  - a PII-masked preview of the input (first 200 characters)
  - a structural summary of the output (which fields are present, their shapes)
  - latency, success flag, error code, confidence scores

Writes are best-effort: a failing audit store is logged and never blocks the
operation being audited. The read path aggregates records into a
compliance report over a date range.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from psyche.gateway.prompt_guard import mask_pii

if TYPE_CHECKING:
    from psyche.audit.stores import AuditStore

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 200
HIGH_CONFIDENCE = 0.8


# ---------------------------------------------------------------------------
# Record
# ---------------------------------------------------------------------------


@dataclass
class AuditRecord:
    """One compliance record."""

    operation_id: str
    tenant_id: str
    operation_type: str
    input_hash: str
    prompt_hash: str
    success: bool
    user_id: str | None = None
    model_tag: str = ""
    output_hash: str | None = None
    prompt_version: str = ""
    input_preview: str = ""
    input_length: int = 0
    output_summary: dict[str, Any] = field(default_factory=dict)
    model_config: dict[str, Any] = field(default_factory=dict)
    validation_results: dict[str, Any] = field(default_factory=dict)
    pii_detected: list[str] = field(default_factory=list)
    confidence_scores: dict[str, float] = field(default_factory=dict)
    latency_ms: int = 0
    error_code: str | None = None
    error_message: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "operation_type": self.operation_type,
            "model_tag": self.model_tag,
            "input_hash": self.input_hash,
            "output_hash": self.output_hash,
            "prompt_hash": self.prompt_hash,
            "prompt_version": self.prompt_version,
            "input_preview": self.input_preview,
            "input_length": self.input_length,
            "output_summary": self.output_summary,
            "model_config": self.model_config,
            "validation_results": self.validation_results,
            "pii_detected": self.pii_detected,
            "confidence_scores": self.confidence_scores,
            "latency_ms": self.latency_ms,
            "success": self.success,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def sha256_hex(value: str | bytes) -> str:
    if isinstance(value, str):
        value = value.encode("utf-8")
    return hashlib.sha256(value).hexdigest()


def serialize_output(output: Any) -> str:
    """Stable serialization used for the output hash."""
    if isinstance(output, str):
        return output
    return json.dumps(output, sort_keys=True, ensure_ascii=False, default=str)


def masked_preview(text: str, length: int = PREVIEW_LENGTH) -> tuple[str, list[str]]:
    masked, kinds = mask_pii(text)
    if len(masked) > length:
        masked = masked[:length] + "..."
    return masked, kinds


def summarize_output(output: Any) -> dict[str, Any]:
    """Shape of the output without its content."""
    if not isinstance(output, dict):
        return {"type": type(output).__name__, "length": len(output) if isinstance(output, str) else None}

    summary: dict[str, Any] = {
        "fields_present": sorted(output.keys()),
        "field_count": len(output),
    }
    shapes: dict[str, str] = {}
    for key, value in output.items():
        if isinstance(value, list):
            shapes[key] = f"list[{len(value)}]"
        elif isinstance(value, dict):
            shapes[key] = f"object[{len(value)}]"
        elif isinstance(value, str):
            shapes[key] = "text" if len(value) > 40 else "label"
        else:
            shapes[key] = type(value).__name__
    summary["shapes"] = shapes
    summary["has_reasoning"] = bool(output.get("reasoning"))
    return summary


def extract_confidences(output: Any, prefix: str = "") -> dict[str, float]:
    """Collect numeric leaves whose path mentions 'confidence'."""
    scores: dict[str, float] = {}
    if not isinstance(output, dict):
        return scores
    for key, value in output.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict):
            scores.update(extract_confidences(value, path))
        elif isinstance(value, (int, float)) and not isinstance(value, bool) and "confidence" in path:
            scores[path] = float(value)
    return scores


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


@dataclass
class AuditSummary:
    """Aggregates over a tenant's records in a date range."""

    total: int = 0
    successful: int = 0
    avg_latency_ms: float = 0.0
    unhashed_inputs: int = 0
    high_confidence: int = 0
    validation_failures: int = 0
    with_pii: int = 0
    operations_by_type: dict[str, int] = field(default_factory=dict)
    errors: dict[str, int] = field(default_factory=dict)
    prompt_versions: list[str] = field(default_factory=list)


def is_high_confidence(scores: dict[str, float] | None) -> bool:
    return any(score > HIGH_CONFIDENCE for score in (scores or {}).values())


def summarize_records(records: list[AuditRecord]) -> AuditSummary:
    total = len(records)
    return AuditSummary(
        total=total,
        successful=sum(1 for r in records if r.success),
        avg_latency_ms=round(sum(r.latency_ms for r in records) / total, 1) if total else 0.0,
        unhashed_inputs=sum(1 for r in records if not r.input_hash),
        high_confidence=sum(1 for r in records if is_high_confidence(r.confidence_scores)),
        validation_failures=sum(1 for r in records if r.validation_results.get("valid") is False),
        with_pii=sum(1 for r in records if r.pii_detected),
        operations_by_type=dict(Counter(r.operation_type for r in records)),
        errors=dict(Counter(r.error_code or "UNKNOWN" for r in records if not r.success)),
        prompt_versions=sorted({r.prompt_version for r in records if r.prompt_version}),
    )


# ---------------------------------------------------------------------------
# Logger
# ---------------------------------------------------------------------------


class AuditLogger:
    """Builds and persists compliance records.

    Usage:
        audit = AuditLogger(SqlAuditStore(session_factory))
        await audit.record(tenant_id=..., operation_type="psychographic_analysis", ...)
    """

    def __init__(self, store: AuditStore):
        self.store = store

    def build_record(
        self,
        *,
        tenant_id: str,
        operation_type: str,
        input_text: str,
        success: bool,
        output: Any = None,
        system_prompt: str = "",
        prompt_version: str = "",
        user_id: str | None = None,
        model_tag: str = "",
        latency_ms: int = 0,
        model_config: dict[str, Any] | None = None,
        validation_results: dict[str, Any] | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
        operation_id: str | None = None,
    ) -> AuditRecord:
        preview, pii = masked_preview(input_text)
        return AuditRecord(
            operation_id=operation_id or uuid.uuid4().hex,
            tenant_id=tenant_id,
            user_id=user_id,
            operation_type=operation_type,
            model_tag=model_tag,
            input_hash=sha256_hex(input_text),
            output_hash=sha256_hex(serialize_output(output)) if output is not None else None,
            prompt_hash=sha256_hex(f"{prompt_version}\n{system_prompt}"),
            prompt_version=prompt_version,
            input_preview=preview,
            input_length=len(input_text),
            output_summary=summarize_output(output) if output is not None else {},
            model_config=model_config or {},
            validation_results=validation_results or {},
            pii_detected=pii,
            confidence_scores=extract_confidences(output),
            latency_ms=latency_ms,
            success=success,
            error_code=error_code,
            error_message=(error_message or "")[:1000] or None,
        )

    async def record(self, **kwargs: Any) -> AuditRecord | None:
        """Build and persist a record. Best-effort: failures are logged, not raised."""
        try:
            record = self.build_record(**kwargs)
            await self.store.add(record)
            return record
        except Exception:
            logger.exception("Audit write failed for %s", kwargs.get("operation_type", "unknown"))
            return None

    async def get_audit_logs(
        self,
        tenant_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        operation_type: str | None = None,
        success: bool | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AuditRecord]:
        return await self.store.fetch(
            tenant_id,
            start=start,
            end=end,
            operation_type=operation_type,
            success=success,
            limit=limit,
            offset=offset,
        )

    async def generate_compliance_report(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
    ) -> dict[str, Any]:
        """Aggregate success rate, latency, quality and error breakdown over [start, end]."""
        summary = await self.store.summarize(tenant_id, start, end)
        total = summary.total

        return {
            "tenant_id": tenant_id,
            "period": {"start": start.isoformat(), "end": end.isoformat()},
            "summary": {
                "total_operations": total,
                "successful_operations": summary.successful,
                "failed_operations": total - summary.successful,
                "success_rate": round(summary.successful / total, 4) if total else 0.0,
                "avg_latency_ms": summary.avg_latency_ms,
                "operations_by_type": summary.operations_by_type,
            },
            "quality_metrics": {
                "high_confidence_operations": summary.high_confidence,
                "validation_failures": summary.validation_failures,
            },
            "compliance_indicators": {
                "all_inputs_hashed": summary.unhashed_inputs == 0,
                "raw_content_stored": False,
                "operations_with_pii_masked": summary.with_pii,
                "prompt_versions": summary.prompt_versions,
            },
            "error_analysis": summary.errors,
        }

    async def purge_older_than(self, cutoff: datetime) -> int:
        deleted = await self.store.purge_older_than(cutoff)
        logger.info("Purged %d audit records older than %s", deleted, cutoff.isoformat())
        return deleted
