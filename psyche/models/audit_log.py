from datetime import datetime, timezone

from sqlalchemy import BigInteger, Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from psyche.db.base import Base, JSONType


class LlmAuditLog(Base):
    """Compliance record of one governed LLM operation. Raw prompts and outputs are never stored."""

    __tablename__ = "llm_audit_logs"
    __table_args__ = (Index("ix_llm_audit_logs_tenant_created", "tenant_id", "created_at"),)

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    operation_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    operation_type: Mapped[str] = mapped_column(String(64), nullable=False)
    model_tag: Mapped[str] = mapped_column(String(100), nullable=False, default="")

    # Tamper evidence (sha256 hex)
    input_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    output_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    prompt_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prompt_version: Mapped[str] = mapped_column(String(50), nullable=False, default="")

    input_preview: Mapped[str] = mapped_column(String(256), nullable=False, default="")  # PII-masked
    input_length: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    output_summary: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    model_config_data: Mapped[dict | None] = mapped_column("model_config", JSONType, nullable=True)
    validation_results: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    pii_detected: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    confidence_scores: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    latency_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
