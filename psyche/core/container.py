"""Service wiring.

The resilience registries, the gateway and the ML predictor hold process-wide
state and are built once (FastAPI lifespan, Celery task) and passed around by
reference. Stores are bound to a session factory, never to a single session.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from psyche.audit.audit_logger import AuditLogger
from psyche.audit.stores import AuditStore, InMemoryAuditStore, SqlAuditStore
from psyche.billing.credit_ledger import CreditLedger
from psyche.billing.stores import CreditLedgerStore, InMemoryCreditLedgerStore, SqlCreditLedgerStore
from psyche.core.config import settings
from psyche.gateway.circuit_breaker import CircuitBreakerRegistry
from psyche.gateway.gateway import LLMGateway
from psyche.gateway.model_adapters import ModelInvoker, build_invoker
from psyche.gateway.prompt_guard import PromptGuard
from psyche.gateway.token_bucket import TokenBucketRegistry
from psyche.gateway.types import OperationPolicy, build_default_policies
from psyche.inference.fusion import FusionEngine
from psyche.inference.heuristics import HeuristicLayer
from psyche.inference.ml_layer import MLLayer, Predictor
from psyche.inference.orchestrator import InferenceOrchestrator
from psyche.inference.stores import (
    EventSource,
    InMemoryEventSource,
    InMemoryProfileStore,
    ProfileStore,
    SqlEventSource,
    SqlProfileStore,
)


@dataclass
class Container:
    buckets: TokenBucketRegistry
    breakers: CircuitBreakerRegistry
    ledger: CreditLedger
    audit: AuditLogger
    gateway: LLMGateway
    events: EventSource
    profiles: ProfileStore
    engine: FusionEngine
    orchestrator: InferenceOrchestrator


def build_container(
    *,
    ledger_store: CreditLedgerStore,
    audit_store: AuditStore,
    events: EventSource,
    profiles: ProfileStore,
    invoker: ModelInvoker | None = None,
    predictor: Predictor | None = None,
    policies: dict[str, OperationPolicy] | None = None,
    buckets: TokenBucketRegistry | None = None,
    breakers: CircuitBreakerRegistry | None = None,
) -> Container:
    policies = policies or build_default_policies()
    buckets = buckets or TokenBucketRegistry({name: p.bucket for name, p in policies.items()})
    breakers = breakers or CircuitBreakerRegistry({name: p.breaker for name, p in policies.items()})
    invoker = invoker or build_invoker(settings.llm_api_key, settings.llm_model, settings.llm_api_url)

    ledger = CreditLedger(
        ledger_store,
        default_allotment=settings.credit_default_allotment,
        auto_provision=settings.credit_auto_provision,
    )
    audit = AuditLogger(audit_store)
    guard = PromptGuard(min_length=settings.prompt_min_length, max_length=settings.prompt_max_length)
    gateway = LLMGateway(
        invoker,
        buckets=buckets,
        breakers=breakers,
        guard=guard,
        ledger=ledger,
        audit=audit,
        policies=policies,
    )
    engine = FusionEngine(HeuristicLayer(), MLLayer(predictor), gateway)
    orchestrator = InferenceOrchestrator(events, profiles, engine, window_size=settings.event_window_size)
    return Container(
        buckets=buckets,
        breakers=breakers,
        ledger=ledger,
        audit=audit,
        gateway=gateway,
        events=events,
        profiles=profiles,
        engine=engine,
        orchestrator=orchestrator,
    )


def build_sql_container(session_factory: async_sessionmaker[AsyncSession], **kwargs) -> Container:
    """PostgreSQL-backed wiring used by the API and the workers."""
    return build_container(
        ledger_store=SqlCreditLedgerStore(session_factory),
        audit_store=SqlAuditStore(session_factory),
        events=SqlEventSource(session_factory),
        profiles=SqlProfileStore(session_factory),
        **kwargs,
    )


def build_memory_container(events: EventSource | None = None, **kwargs) -> Container:
    """Process-local wiring for tests and local experiments."""
    return build_container(
        ledger_store=InMemoryCreditLedgerStore(),
        audit_store=InMemoryAuditStore(),
        events=events or InMemoryEventSource(),
        profiles=InMemoryProfileStore(),
        **kwargs,
    )
