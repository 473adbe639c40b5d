"""Event source and profile persistence for the orchestrator."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from psyche.inference.types import (
    BehavioralEvent,
    FusedIndicator,
    FusedProfile,
    IndicatorKey,
    ProfileUpdateAudit,
    UpdateReason,
)
from psyche.models.behavioral_event import BehavioralEventRecord
from psyche.models.profile import FusedProfileRecord, ProfileUpdateAuditRecord

logger = logging.getLogger(__name__)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Contracts
# ---------------------------------------------------------------------------


class EventSource(ABC):
    """Read-only access to the external behavioral event store."""

    @abstractmethod
    async def recent_events(self, user_id: str, limit: int = 50) -> list[BehavioralEvent]:
        """Most recent ``limit`` events, newest first."""
        ...


class ProfileStore(ABC):
    """Profiles and their history are owned by a tenant; every read is scoped by it."""

    @abstractmethod
    async def get(self, user_id: str, tenant_id: str) -> FusedProfile | None:
        ...

    @abstractmethod
    async def save(self, profile: FusedProfile, tenant_id: str) -> None:
        """Upsert the single current profile for (tenant, user)."""
        ...

    @abstractmethod
    async def append_update(self, entry: ProfileUpdateAudit) -> None:
        ...

    @abstractmethod
    async def history(
        self, user_id: str, tenant_id: str, limit: int = 50, offset: int = 0
    ) -> list[ProfileUpdateAudit]:
        """The tenant's update log for the user, newest first."""
        ...


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryEventSource(EventSource):
    def __init__(self, events: list[BehavioralEvent] | None = None):
        self._events: dict[str, list[BehavioralEvent]] = defaultdict(list)
        for event in events or []:
            self.add(event)

    def add(self, event: BehavioralEvent) -> None:
        self._events[event.user_id].append(event)

    async def recent_events(self, user_id: str, limit: int = 50) -> list[BehavioralEvent]:
        ordered = sorted(self._events.get(user_id, []), key=lambda e: e.timestamp, reverse=True)
        return ordered[:limit]


class InMemoryProfileStore(ProfileStore):
    def __init__(self):
        self.profiles: dict[tuple[str, str], FusedProfile] = {}
        self.updates: list[ProfileUpdateAudit] = []

    async def get(self, user_id: str, tenant_id: str) -> FusedProfile | None:
        return self.profiles.get((tenant_id, user_id))

    async def save(self, profile: FusedProfile, tenant_id: str) -> None:
        self.profiles[(tenant_id, profile.user_id)] = profile

    async def append_update(self, entry: ProfileUpdateAudit) -> None:
        self.updates.append(entry)

    async def history(
        self, user_id: str, tenant_id: str, limit: int = 50, offset: int = 0
    ) -> list[ProfileUpdateAudit]:
        matched = [u for u in reversed(self.updates) if u.user_id == user_id and u.tenant_id == tenant_id]
        return matched[offset : offset + limit]


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------


def _event_from_row(row: BehavioralEventRecord) -> BehavioralEvent:
    return BehavioralEvent(
        id=row.id,
        user_id=row.user_id,
        type=row.type,
        timestamp=_aware(row.timestamp),
        payload=row.payload if isinstance(row.payload, dict) else {},
    )


def _indicators_from_json(data: dict[str, Any]) -> dict[IndicatorKey, FusedIndicator]:
    indicators: dict[IndicatorKey, FusedIndicator] = {}
    for key, item in (data or {}).items():
        try:
            indicator_key = IndicatorKey(key)
        except ValueError:
            continue  # key retired since the row was written
        indicators[indicator_key] = FusedIndicator(
            value=item["value"], confidence=float(item["confidence"]), source=item.get("source", "")
        )
    return indicators


def _profile_from_row(row: FusedProfileRecord) -> FusedProfile:
    return FusedProfile(
        user_id=row.user_id,
        indicators=_indicators_from_json(row.indicators),
        confidence=row.confidence,
        evidence=row.evidence,
        provenance=list(row.provenance or []),
        degraded=list(row.degraded or []),
        layers=dict(row.layers or {}),
        event_window=list(row.event_window or []),
        updated_at=_aware(row.updated_at),
    )


class SqlEventSource(EventSource):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def recent_events(self, user_id: str, limit: int = 50) -> list[BehavioralEvent]:
        query = (
            select(BehavioralEventRecord)
            .where(BehavioralEventRecord.user_id == user_id)
            .order_by(BehavioralEventRecord.timestamp.desc())
            .limit(limit)
        )
        async with self._session_factory() as db:
            result = await db.execute(query)
            return [_event_from_row(row) for row in result.scalars().all()]


class SqlProfileStore(ProfileStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, user_id: str, tenant_id: str) -> FusedProfile | None:
        query = select(FusedProfileRecord).where(
            FusedProfileRecord.tenant_id == tenant_id,
            FusedProfileRecord.user_id == user_id,
        )
        async with self._session_factory() as db:
            result = await db.execute(query)
            row = result.scalar_one_or_none()
            return _profile_from_row(row) if row else None

    async def save(self, profile: FusedProfile, tenant_id: str) -> None:
        try:
            await self._save_once(profile, tenant_id)
        except IntegrityError:
            # A concurrent first cycle inserted the row; the retry takes the update path
            logger.info("Concurrent profile insert for tenant=%s user=%s, updating", tenant_id, profile.user_id)
            await self._save_once(profile, tenant_id)

    async def _save_once(self, profile: FusedProfile, tenant_id: str) -> None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(FusedProfileRecord)
                .where(FusedProfileRecord.tenant_id == tenant_id, FusedProfileRecord.user_id == profile.user_id)
                .with_for_update()
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = FusedProfileRecord(user_id=profile.user_id, tenant_id=tenant_id)
                db.add(row)
            row.indicators = profile.indicators_dict()
            row.confidence = profile.confidence
            row.evidence = profile.evidence
            row.provenance = profile.provenance
            row.degraded = profile.degraded
            row.layers = profile.layers
            row.event_window = profile.event_window
            row.updated_at = profile.updated_at
            await db.commit()

    async def append_update(self, entry: ProfileUpdateAudit) -> None:
        async with self._session_factory() as db:
            db.add(
                ProfileUpdateAuditRecord(
                    user_id=entry.user_id,
                    tenant_id=entry.tenant_id,
                    cycle_id=entry.cycle_id,
                    reason=entry.reason.value,
                    reason_text=entry.reason_text,
                    escalated=entry.escalated,
                    llm_status=entry.llm_status,
                    snapshot=entry.snapshot,
                    created_at=entry.created_at,
                )
            )
            await db.commit()

    async def history(
        self, user_id: str, tenant_id: str, limit: int = 50, offset: int = 0
    ) -> list[ProfileUpdateAudit]:
        query = (
            select(ProfileUpdateAuditRecord)
            .where(ProfileUpdateAuditRecord.user_id == user_id, ProfileUpdateAuditRecord.tenant_id == tenant_id)
            .order_by(ProfileUpdateAuditRecord.created_at.desc(), ProfileUpdateAuditRecord.id.desc())
            .offset(offset)
            .limit(limit)
        )
        async with self._session_factory() as db:
            result = await db.execute(query)
            return [
                ProfileUpdateAudit(
                    user_id=row.user_id,
                    tenant_id=row.tenant_id,
                    cycle_id=row.cycle_id,
                    reason=UpdateReason(row.reason),
                    escalated=row.escalated,
                    snapshot=row.snapshot,
                    llm_status=row.llm_status,
                    created_at=_aware(row.created_at),
                )
                for row in result.scalars().all()
            ]
