from datetime import datetime

from pydantic import BaseModel


class FusedIndicatorResponse(BaseModel):
    value: str
    confidence: float
    source: str


class FusedProfileResponse(BaseModel):
    user_id: str
    indicators: dict[str, FusedIndicatorResponse]
    confidence: float
    evidence: str
    provenance: list[str]
    degraded: list[str] = []
    layers: dict = {}
    event_window: list[dict] = []
    updated_at: datetime


class InferenceRunRequest(BaseModel):
    cycle_id: str | None = None


class InferenceRunResponse(BaseModel):
    cycle_id: str
    user_id: str
    tenant_id: str
    profile: FusedProfileResponse
    reason: str
    escalated: bool
    llm_status: str | None
    degraded: list[str] = []


class ProfileUpdateResponse(BaseModel):
    cycle_id: str
    reason: str
    reason_text: str
    escalated: bool
    llm_status: str | None
    snapshot: dict
    created_at: datetime


class ProfileHistoryResponse(BaseModel):
    user_id: str
    items: list[ProfileUpdateResponse]
