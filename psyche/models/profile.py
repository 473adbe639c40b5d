from datetime import datetime, timezone

from sqlalchemy import BigInteger, Boolean, DateTime, Float, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from psyche.db.base import Base, JSONType


class FusedProfileRecord(Base):
    """Current fused psychographic profile, one row per (tenant, user), overwritten each cycle."""

    __tablename__ = "fused_profiles"
    __table_args__ = (UniqueConstraint("tenant_id", "user_id", name="uq_fused_profiles_tenant_user"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # {"risk_profile": {"value": "aggressive", "confidence": 0.9, "source": "llm@gpt-4o-mini"}, ...}
    indicators: Mapped[dict] = mapped_column(JSONType, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    evidence: Mapped[str] = mapped_column(Text, nullable=False, default="")
    provenance: Mapped[list] = mapped_column(JSONType, nullable=False)  # ["heuristics@v1", "ml@linear-v1"]
    degraded: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    layers: Mapped[dict | None] = mapped_column(JSONType, nullable=True)  # per-layer indicator sets
    event_window: Mapped[list | None] = mapped_column(JSONType, nullable=True)  # compact evidence, <= 20 events

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )


class ProfileUpdateAuditRecord(Base):
    """Append-only history of every fusion result."""

    __tablename__ = "profile_update_audits"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    cycle_id: Mapped[str] = mapped_column(String(64), nullable=False)

    reason: Mapped[str] = mapped_column(String(20), nullable=False)  # routine | disagreement | high_value
    reason_text: Mapped[str] = mapped_column(String(100), nullable=False)
    escalated: Mapped[bool] = mapped_column(Boolean, default=False)
    llm_status: Mapped[str | None] = mapped_column(String(32), nullable=True)  # ErrorCode when escalated

    snapshot: Mapped[dict] = mapped_column(JSONType, nullable=False)  # full FusedProfile.to_dict()
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
