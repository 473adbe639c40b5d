from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class AuditLogItem(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    operation_id: str
    tenant_id: str
    user_id: str | None
    operation_type: str
    model_tag: str
    input_hash: str
    output_hash: str | None
    prompt_hash: str
    prompt_version: str
    input_preview: str
    input_length: int
    output_summary: dict
    model_config_data: dict = Field(default_factory=dict, serialization_alias="model_config")
    validation_results: dict
    pii_detected: list[str]
    confidence_scores: dict[str, float]
    latency_ms: int
    success: bool
    error_code: str | None
    error_message: str | None
    created_at: datetime


class AuditLogsResponse(BaseModel):
    tenant_id: str
    items: list[AuditLogItem]
    limit: int
    offset: int
