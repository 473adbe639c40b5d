from datetime import date, datetime, timezone

from sqlalchemy import BigInteger, Boolean, CheckConstraint, Date, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from psyche.db.base import Base, JSONType


class CreditLedgerRecord(Base):
    """Per-tenant credit balance. Mutated only through the ledger store."""

    __tablename__ = "credit_ledgers"
    __table_args__ = (
        CheckConstraint("credits_remaining >= 0", name="ck_credit_ledgers_remaining_nonneg"),
        CheckConstraint("monthly_allotment >= 0", name="ck_credit_ledgers_allotment_nonneg"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    monthly_allotment: Mapped[int] = mapped_column(Integer, nullable=False, default=1000)
    credits_remaining: Mapped[int] = mapped_column(Integer, nullable=False, default=1000)
    overage_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    overage_cap: Mapped[int | None] = mapped_column(Integer, nullable=True)  # NULL = unbounded
    overage_consumed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # this month
    last_reset_date: Mapped[date] = mapped_column(Date, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )


class UsageEventRecord(Base):
    """One accepted consumption. Doubles as the idempotency record; never updated."""

    __tablename__ = "usage_events"
    __table_args__ = (UniqueConstraint("tenant_id", "idempotency_key", name="uq_usage_events_idempotency"),)

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    credits: Mapped[int] = mapped_column(Integer, nullable=False)
    is_overage: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    credits_remaining_after: Mapped[int] = mapped_column(Integer, nullable=False)
    context: Mapped[dict | None] = mapped_column(JSONType, nullable=True)  # {"operation": ..., "user_id": ...}
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
