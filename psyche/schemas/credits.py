from datetime import date, datetime

from pydantic import BaseModel, Field


class ConsumeRequest(BaseModel):
    cost: int = Field(gt=0, le=10_000)
    idempotency_key: str = Field(min_length=1, max_length=255)
    context: dict = {}


class ConsumeResponse(BaseModel):
    tenant_id: str
    idempotency_key: str
    consumed: int
    remaining: int
    is_overage: bool
    replayed: bool


class LedgerUpdate(BaseModel):
    monthly_allotment: int = Field(ge=0)
    overage_enabled: bool = False
    overage_cap: int | None = Field(None, ge=0)
    reset_balance: bool = False


class BalanceResponse(BaseModel):
    tenant_id: str
    monthly_allotment: int
    credits_remaining: int
    overage_enabled: bool
    overage_cap: int | None
    overage_consumed: int
    last_reset_date: date


class UsageItem(BaseModel):
    idempotency_key: str
    credits: int
    is_overage: bool
    credits_remaining_after: int
    context: dict
    created_at: datetime


class UsageResponse(BaseModel):
    tenant_id: str
    items: list[UsageItem]
