"""Credits API: consumption, balance, usage log, ledger settings."""

from fastapi import APIRouter, Depends, Query

from psyche.core.container import Container
from psyche.core.dependencies import get_container, get_tenant_id
from psyche.core.exceptions import NotFoundError
from psyche.schemas.credits import (
    BalanceResponse,
    ConsumeRequest,
    ConsumeResponse,
    LedgerUpdate,
    UsageItem,
    UsageResponse,
)

router = APIRouter(prefix="/credits", tags=["credits"])


@router.post("/consume", response_model=ConsumeResponse)
async def consume_credits(
    body: ConsumeRequest,
    tenant_id: str = Depends(get_tenant_id),
    container: Container = Depends(get_container),
):
    """Deduct credits once per idempotency key.

    Repeating a key returns the recorded outcome without charging again. The
    replayed body matches the first one except `replayed` is true.
    """
    result = await container.ledger.consume(tenant_id, body.cost, body.idempotency_key, body.context)
    return result.to_dict()


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    tenant_id: str = Depends(get_tenant_id),
    container: Container = Depends(get_container),
):
    snapshot = await container.ledger.get_balance(tenant_id)
    if snapshot is None:
        raise NotFoundError("Ledger not found")
    return snapshot.to_dict()


@router.get("/usage", response_model=UsageResponse)
async def list_usage(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    tenant_id: str = Depends(get_tenant_id),
    container: Container = Depends(get_container),
):
    records = await container.ledger.list_usage(tenant_id, limit=limit, offset=offset)
    return UsageResponse(
        tenant_id=tenant_id,
        items=[
            UsageItem(
                idempotency_key=r.idempotency_key,
                credits=r.credits,
                is_overage=r.is_overage,
                credits_remaining_after=r.credits_remaining_after,
                context=r.context,
                created_at=r.created_at,
            )
            for r in records
        ],
    )


@router.put("/ledger", response_model=BalanceResponse)
async def update_ledger(
    body: LedgerUpdate,
    tenant_id: str = Depends(get_tenant_id),
    container: Container = Depends(get_container),
):
    snapshot = await container.ledger.initialize_ledger(
        tenant_id,
        monthly_allotment=body.monthly_allotment,
        overage_enabled=body.overage_enabled,
        overage_cap=body.overage_cap,
        reset_balance=body.reset_balance,
    )
    return snapshot.to_dict()
