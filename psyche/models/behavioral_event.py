from datetime import datetime

from sqlalchemy import DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from psyche.db.base import Base, JSONType


class BehavioralEventRecord(Base):
    """Raw behavioral event. Written by the external ingestion pipeline, read-only here."""

    __tablename__ = "behavioral_events"
    __table_args__ = (Index("ix_behavioral_events_user_ts", "user_id", "timestamp"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    type: Mapped[str] = mapped_column(String(64), nullable=False)  # click | hover | scroll | page_view | checkout_start ...
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSONType, nullable=True)  # {"url": ..., "duration": ...}
