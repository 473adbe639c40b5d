"""Tests for compliance audit records and reports."""

from datetime import datetime, timedelta, timezone

import pytest

from psyche.audit.audit_logger import (
    AuditLogger,
    extract_confidences,
    masked_preview,
    sha256_hex,
    summarize_output,
)
from psyche.audit.stores import AuditStore, InMemoryAuditStore, SqlAuditStore

from tests.conftest import llm_output

NOW = datetime(2026, 10, 15, 12, 0, tzinfo=timezone.utc)


async def _record(audit: AuditLogger, *, success: bool = True, created_at: datetime = NOW, **overrides):
    kwargs = dict(
        tenant_id="acme",
        operation_type="psychographic_analysis",
        input_text="Visitor compared pricing; contact jane@example.com",
        output=llm_output() if success else None,
        success=success,
        prompt_version="psychographic_analysis@v1",
        system_prompt="Classify the visitor.",
        latency_ms=120,
        error_code=None if success else "SYSTEM_ERROR",
    )
    kwargs.update(overrides)
    record = audit.build_record(**kwargs)
    record.created_at = created_at
    await audit.store.add(record)
    return record


class _BrokenStore(AuditStore):
    async def add(self, record):
        raise RuntimeError("database down")

    async def fetch(self, tenant_id, **kwargs):
        return []

    async def purge_older_than(self, cutoff):
        return 0


# ==========================================================================
# Test: helpers
# ==========================================================================


class TestHelpers:
    def test_sha256_hex(self):
        assert sha256_hex("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"

    def test_masked_preview_truncates_and_masks(self):
        preview, kinds = masked_preview("mail a@b.io " + "x" * 300)
        assert preview.startswith("mail [EMAIL-MASKED]")
        assert preview.endswith("...")
        assert len(preview) == 203
        assert kinds == ["email"]

    def test_summarize_output_has_no_content(self):
        summary = summarize_output(llm_output())
        assert summary["fields_present"] == sorted(llm_output().keys())
        assert summary["shapes"]["motivation_stack"] == "list[2]"
        assert summary["shapes"]["risk_profile"] == "label"
        assert summary["has_reasoning"]
        assert "aggressive" not in str(summary)

    def test_summarize_non_dict(self):
        assert summarize_output("raw text") == {"type": "str", "length": 8}

    def test_extract_confidences(self):
        scores = extract_confidences(llm_output(confidence=0.75))
        assert scores == {
            "emotional_state.confidence": 0.75,
            "confidences.risk_profile": 0.75,
            "confidences.cognitive_style": 0.75,
            "confidences.mood": 0.75,
        }


# ==========================================================================
# Test: AuditLogger
# ==========================================================================


class TestAuditLogger:
    def test_build_record_never_keeps_raw_text(self):
        audit = AuditLogger(InMemoryAuditStore())
        record = audit.build_record(
            tenant_id="acme",
            operation_type="psychographic_analysis",
            input_text="Contact jane@example.com",
            output=llm_output(),
            success=True,
        )
        assert "jane@example.com" not in record.input_preview
        assert record.pii_detected == ["email"]
        assert record.input_hash == sha256_hex("Contact jane@example.com")
        assert record.output_hash is not None
        assert "reasoning" not in record.to_dict()

    @pytest.mark.asyncio
    async def test_record_is_best_effort(self):
        audit = AuditLogger(_BrokenStore())
        result = await audit.record(
            tenant_id="acme", operation_type="psychographic_analysis", input_text="x", success=True
        )
        assert result is None

    @pytest.mark.asyncio
    async def test_get_audit_logs_filters(self):
        audit = AuditLogger(InMemoryAuditStore())
        await _record(audit, created_at=NOW - timedelta(days=2))
        await _record(audit, success=False, created_at=NOW - timedelta(days=1))
        await _record(audit, tenant_id="other")

        logs = await audit.get_audit_logs("acme")
        assert len(logs) == 2
        assert logs[0].created_at > logs[1].created_at

        failed = await audit.get_audit_logs("acme", success=False)
        assert [r.error_code for r in failed] == ["SYSTEM_ERROR"]

        recent = await audit.get_audit_logs("acme", start=NOW - timedelta(hours=36))
        assert len(recent) == 1

    @pytest.mark.asyncio
    async def test_compliance_report(self):
        audit = AuditLogger(InMemoryAuditStore())
        await _record(audit)
        await _record(audit, output=llm_output(confidence=0.5))
        await _record(audit, success=False, validation_results={"valid": False, "errors": ["risk_profile: bad"]})
        await _record(audit, created_at=NOW - timedelta(days=60))

        report = await audit.generate_compliance_report("acme", NOW - timedelta(days=30), NOW)

        assert report["summary"]["total_operations"] == 3
        assert report["summary"]["successful_operations"] == 2
        assert report["summary"]["success_rate"] == round(2 / 3, 4)
        assert report["summary"]["avg_latency_ms"] == 120.0
        assert report["quality_metrics"] == {"high_confidence_operations": 1, "validation_failures": 1}
        assert report["compliance_indicators"]["raw_content_stored"] is False
        assert report["compliance_indicators"]["operations_with_pii_masked"] == 3
        assert report["compliance_indicators"]["prompt_versions"] == ["psychographic_analysis@v1"]
        assert report["error_analysis"] == {"SYSTEM_ERROR": 1}

    @pytest.mark.asyncio
    async def test_empty_report(self):
        audit = AuditLogger(InMemoryAuditStore())
        report = await audit.generate_compliance_report("acme", NOW - timedelta(days=30), NOW)
        assert report["summary"]["total_operations"] == 0
        assert report["summary"]["success_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_purge(self):
        audit = AuditLogger(InMemoryAuditStore())
        await _record(audit, created_at=NOW - timedelta(days=400))
        await _record(audit)
        assert await audit.purge_older_than(NOW - timedelta(days=365)) == 1
        assert len(await audit.get_audit_logs("acme")) == 1


class TestSqlAuditStore:
    @pytest.mark.asyncio
    async def test_round_trip_and_report(self, session_factory):
        audit = AuditLogger(SqlAuditStore(session_factory))
        await _record(audit, created_at=NOW - timedelta(hours=1), operation_id="cycle-1:psychographic_analysis:a1")
        await _record(audit, success=False, created_at=NOW, operation_id="cycle-2:psychographic_analysis:b2")

        logs = await audit.get_audit_logs("acme")
        assert [r.operation_id for r in logs] == [
            "cycle-2:psychographic_analysis:b2",
            "cycle-1:psychographic_analysis:a1",
        ]
        assert logs[1].confidence_scores["confidences.mood"] == 0.9
        assert logs[0].created_at.tzinfo is not None

        report = await audit.generate_compliance_report("acme", NOW - timedelta(days=1), NOW)
        assert report["summary"]["total_operations"] == 2
        assert report["error_analysis"] == {"SYSTEM_ERROR": 1}

    @pytest.mark.asyncio
    async def test_summary_aggregated_in_sql_matches_in_memory(self, session_factory):
        sql = AuditLogger(SqlAuditStore(session_factory))
        memory = AuditLogger(InMemoryAuditStore())
        for audit in (sql, memory):
            await _record(audit, operation_id="a", latency_ms=100)
            await _record(audit, operation_id="b", output=llm_output(confidence=0.5), input_text="plain text")
            await _record(
                audit,
                operation_id="c",
                success=False,
                error_code=None,
                validation_results={"valid": False, "errors": ["risk_profile: bad"]},
            )
            await _record(audit, operation_id="d", operation_type="health_check", prompt_version="", latency_ms=60)
            await _record(audit, operation_id="e", created_at=NOW - timedelta(days=60))
            await _record(audit, operation_id="f", tenant_id="other")

        start = NOW - timedelta(days=30)
        summary = await sql.store.summarize("acme", start, NOW)

        assert summary.total == 4
        assert summary.successful == 3
        assert summary.avg_latency_ms == 100.0
        assert summary.unhashed_inputs == 0
        assert summary.high_confidence == 2
        assert summary.validation_failures == 1
        assert summary.with_pii == 3
        assert summary.operations_by_type == {"psychographic_analysis": 3, "health_check": 1}
        assert summary.errors == {"UNKNOWN": 1}
        assert summary.prompt_versions == ["psychographic_analysis@v1"]
        assert summary == await memory.store.summarize("acme", start, NOW)
        assert await sql.generate_compliance_report("acme", start, NOW) == await memory.generate_compliance_report(
            "acme", start, NOW
        )

    @pytest.mark.asyncio
    async def test_purge(self, session_factory):
        audit = AuditLogger(SqlAuditStore(session_factory))
        await _record(audit, created_at=NOW - timedelta(days=400), operation_id="old")
        await _record(audit, created_at=NOW, operation_id="new")
        assert await audit.purge_older_than(NOW - timedelta(days=365)) == 1
        assert [r.operation_id for r in await audit.get_audit_logs("acme")] == ["new"]
