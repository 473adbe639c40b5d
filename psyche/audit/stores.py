"""Audit record persistence."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone

from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from psyche.audit.audit_logger import AuditRecord, AuditSummary, is_high_confidence, summarize_records
from psyche.models.audit_log import LlmAuditLog


def _aware(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class AuditStore(ABC):
    @abstractmethod
    async def add(self, record: AuditRecord) -> None:
        ...

    @abstractmethod
    async def fetch(
        self,
        tenant_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        operation_type: str | None = None,
        success: bool | None = None,
        limit: int | None = 100,
        offset: int = 0,
    ) -> list[AuditRecord]:
        """Records newest first. limit=None returns everything in range."""
        ...

    @abstractmethod
    async def purge_older_than(self, cutoff: datetime) -> int:
        ...

    async def summarize(self, tenant_id: str, start: datetime, end: datetime) -> AuditSummary:
        """Report aggregates over [start, end]. Stores with a query engine override this."""
        return summarize_records(await self.fetch(tenant_id, start=start, end=end, limit=None))


class InMemoryAuditStore(AuditStore):
    def __init__(self):
        self.records: list[AuditRecord] = []

    async def add(self, record: AuditRecord) -> None:
        self.records.append(record)

    async def fetch(
        self,
        tenant_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        operation_type: str | None = None,
        success: bool | None = None,
        limit: int | None = 100,
        offset: int = 0,
    ) -> list[AuditRecord]:
        matched = [
            r
            for r in self.records
            if r.tenant_id == tenant_id
            and (start is None or r.created_at >= start)
            and (end is None or r.created_at <= end)
            and (operation_type is None or r.operation_type == operation_type)
            and (success is None or r.success == success)
        ]
        matched.sort(key=lambda r: r.created_at, reverse=True)
        return matched[offset:] if limit is None else matched[offset : offset + limit]

    async def purge_older_than(self, cutoff: datetime) -> int:
        before = len(self.records)
        self.records = [r for r in self.records if r.created_at >= cutoff]
        return before - len(self.records)


def _to_row(record: AuditRecord) -> LlmAuditLog:
    return LlmAuditLog(
        operation_id=record.operation_id,
        tenant_id=record.tenant_id,
        user_id=record.user_id,
        operation_type=record.operation_type,
        model_tag=record.model_tag,
        input_hash=record.input_hash,
        output_hash=record.output_hash,
        prompt_hash=record.prompt_hash,
        prompt_version=record.prompt_version,
        input_preview=record.input_preview,
        input_length=record.input_length,
        output_summary=record.output_summary,
        model_config_data=record.model_config,
        validation_results=record.validation_results,
        pii_detected=record.pii_detected,
        confidence_scores=record.confidence_scores,
        latency_ms=record.latency_ms,
        success=record.success,
        error_code=record.error_code,
        error_message=record.error_message,
        created_at=record.created_at,
    )


def _from_row(row: LlmAuditLog) -> AuditRecord:
    return AuditRecord(
        operation_id=row.operation_id,
        tenant_id=row.tenant_id,
        user_id=row.user_id,
        operation_type=row.operation_type,
        model_tag=row.model_tag,
        input_hash=row.input_hash,
        output_hash=row.output_hash,
        prompt_hash=row.prompt_hash,
        prompt_version=row.prompt_version,
        input_preview=row.input_preview,
        input_length=row.input_length,
        output_summary=row.output_summary or {},
        model_config=row.model_config_data or {},
        validation_results=row.validation_results or {},
        pii_detected=row.pii_detected or [],
        confidence_scores=row.confidence_scores or {},
        latency_ms=row.latency_ms,
        success=row.success,
        error_code=row.error_code,
        error_message=row.error_message,
        created_at=_aware(row.created_at),
    )


class SqlAuditStore(AuditStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def add(self, record: AuditRecord) -> None:
        async with self._session_factory() as db:
            db.add(_to_row(record))
            await db.commit()

    async def fetch(
        self,
        tenant_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        operation_type: str | None = None,
        success: bool | None = None,
        limit: int | None = 100,
        offset: int = 0,
    ) -> list[AuditRecord]:
        query = select(LlmAuditLog).where(LlmAuditLog.tenant_id == tenant_id)
        if start is not None:
            query = query.where(LlmAuditLog.created_at >= start)
        if end is not None:
            query = query.where(LlmAuditLog.created_at <= end)
        if operation_type is not None:
            query = query.where(LlmAuditLog.operation_type == operation_type)
        if success is not None:
            query = query.where(LlmAuditLog.success == success)
        query = query.order_by(LlmAuditLog.created_at.desc(), LlmAuditLog.id.desc()).offset(offset)
        if limit is not None:
            query = query.limit(limit)

        async with self._session_factory() as db:
            result = await db.execute(query)
            return [_from_row(row) for row in result.scalars().all()]

    async def summarize(self, tenant_id: str, start: datetime, end: datetime) -> AuditSummary:
        in_range = (
            LlmAuditLog.tenant_id == tenant_id,
            LlmAuditLog.created_at >= start,
            LlmAuditLog.created_at <= end,
        )
        totals = select(
            func.count(LlmAuditLog.id),
            func.sum(case((LlmAuditLog.success.is_(True), 1), else_=0)),
            func.avg(LlmAuditLog.latency_ms),
            func.sum(case((LlmAuditLog.input_hash == "", 1), else_=0)),
        ).where(*in_range)
        by_operation = (
            select(LlmAuditLog.operation_type, func.count(LlmAuditLog.id))
            .where(*in_range)
            .group_by(LlmAuditLog.operation_type)
        )
        error_code = func.coalesce(LlmAuditLog.error_code, "UNKNOWN")
        errors = (
            select(error_code, func.count(LlmAuditLog.id))
            .where(*in_range, LlmAuditLog.success.is_(False))
            .group_by(error_code)
        )
        versions = (
            select(LlmAuditLog.prompt_version)
            .where(*in_range, LlmAuditLog.prompt_version != "")
            .distinct()
            .order_by(LlmAuditLog.prompt_version)
        )
        # JSON columns differ per dialect; count them from a narrow column scan
        json_columns = select(
            LlmAuditLog.confidence_scores,
            LlmAuditLog.validation_results,
            LlmAuditLog.pii_detected,
        ).where(*in_range)

        async with self._session_factory() as db:
            total, successful, avg_latency, unhashed = (await db.execute(totals)).one()
            summary = AuditSummary(
                total=total,
                successful=successful or 0,
                avg_latency_ms=round(float(avg_latency), 1) if avg_latency is not None else 0.0,
                unhashed_inputs=unhashed or 0,
                operations_by_type={op: count for op, count in (await db.execute(by_operation)).all()},
                errors={code: count for code, count in (await db.execute(errors)).all()},
                prompt_versions=list((await db.execute(versions)).scalars().all()),
            )
            for scores, validation, pii in await db.execute(json_columns):
                summary.high_confidence += is_high_confidence(scores)
                summary.validation_failures += (validation or {}).get("valid") is False
                summary.with_pii += bool(pii)
        return summary

    async def purge_older_than(self, cutoff: datetime) -> int:
        async with self._session_factory() as db:
            result = await db.execute(delete(LlmAuditLog).where(LlmAuditLog.created_at < cutoff))
            await db.commit()
            return result.rowcount or 0
