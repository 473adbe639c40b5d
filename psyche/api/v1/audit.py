"""Audit API: compliance records and reports."""

from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Query

from psyche.core.container import Container
from psyche.core.dependencies import get_container, get_tenant_id
from psyche.core.exceptions import BadRequestError
from psyche.schemas.audit import AuditLogItem, AuditLogsResponse

router = APIRouter(prefix="/audit", tags=["audit"])


def _range(start: datetime | None, end: datetime | None, default_days: int) -> tuple[datetime, datetime]:
    end = end or datetime.now(timezone.utc)
    start = start or end - timedelta(days=default_days)
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    if end.tzinfo is None:
        end = end.replace(tzinfo=timezone.utc)
    if start > end:
        raise BadRequestError("start must not be after end")
    return start, end


@router.get("/logs", response_model=AuditLogsResponse)
async def get_audit_logs(
    start: datetime | None = None,
    end: datetime | None = None,
    operation_type: str | None = None,
    success: bool | None = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    tenant_id: str = Depends(get_tenant_id),
    container: Container = Depends(get_container),
):
    if start is not None or end is not None:
        start, end = _range(start, end, default_days=30)
    records = await container.audit.get_audit_logs(
        tenant_id,
        start=start,
        end=end,
        operation_type=operation_type,
        success=success,
        limit=limit,
        offset=offset,
    )
    items = []
    for record in records:
        data = record.to_dict()
        data["model_config_data"] = data.pop("model_config")
        items.append(AuditLogItem(**data))
    return AuditLogsResponse(tenant_id=tenant_id, items=items, limit=limit, offset=offset)


@router.get("/compliance-report")
async def get_compliance_report(
    start: datetime | None = None,
    end: datetime | None = None,
    tenant_id: str = Depends(get_tenant_id),
    container: Container = Depends(get_container),
):
    start, end = _range(start, end, default_days=30)
    return await container.audit.generate_compliance_report(tenant_id, start, end)
