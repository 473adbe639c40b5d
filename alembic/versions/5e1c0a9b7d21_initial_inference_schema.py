"""initial inference schema

Revision ID: 5e1c0a9b7d21
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "5e1c0a9b7d21"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # =========================================================
    # 1. Behavioral events (written by the ingestion pipeline)
    # =========================================================
    op.create_table(
        "behavioral_events",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("type", sa.String(64), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload", JSONB(), nullable=True),
    )
    op.create_index("ix_behavioral_events_user_ts", "behavioral_events", ["user_id", "timestamp"])

    # =========================================================
    # 2. Fused profiles + update history
    # =========================================================
    op.create_table(
        "fused_profiles",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("tenant_id", sa.String(64), nullable=False, index=True),
        sa.Column("indicators", JSONB(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("evidence", sa.Text(), nullable=False, server_default=""),
        sa.Column("provenance", JSONB(), nullable=False),
        sa.Column("degraded", JSONB(), nullable=True),
        sa.Column("layers", JSONB(), nullable=True),
        sa.Column("event_window", JSONB(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "user_id", name="uq_fused_profiles_tenant_user"),
    )

    op.create_table(
        "profile_update_audits",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(128), nullable=False, index=True),
        sa.Column("tenant_id", sa.String(64), nullable=False, index=True),
        sa.Column("cycle_id", sa.String(64), nullable=False),
        sa.Column("reason", sa.String(20), nullable=False),
        sa.Column("reason_text", sa.String(100), nullable=False),
        sa.Column("escalated", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("llm_status", sa.String(32), nullable=True),
        sa.Column("snapshot", JSONB(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # =========================================================
    # 3. Credit ledger + usage (idempotency) log
    # =========================================================
    op.create_table(
        "credit_ledgers",
        sa.Column("tenant_id", sa.String(64), primary_key=True),
        sa.Column("monthly_allotment", sa.Integer(), nullable=False, server_default="1000"),
        sa.Column("credits_remaining", sa.Integer(), nullable=False, server_default="1000"),
        sa.Column("overage_enabled", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("overage_cap", sa.Integer(), nullable=True),
        sa.Column("overage_consumed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_reset_date", sa.Date(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("credits_remaining >= 0", name="ck_credit_ledgers_remaining_nonneg"),
        sa.CheckConstraint("monthly_allotment >= 0", name="ck_credit_ledgers_allotment_nonneg"),
    )

    op.create_table(
        "usage_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(64), nullable=False, index=True),
        sa.Column("idempotency_key", sa.String(255), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("is_overage", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("credits_remaining_after", sa.Integer(), nullable=False),
        sa.Column("context", JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "idempotency_key", name="uq_usage_events_idempotency"),
    )

    # =========================================================
    # 4. LLM audit log
    # =========================================================
    op.create_table(
        "llm_audit_logs",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("operation_id", sa.String(128), nullable=False, unique=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(128), nullable=True),
        sa.Column("operation_type", sa.String(64), nullable=False),
        sa.Column("model_tag", sa.String(100), nullable=False, server_default=""),
        sa.Column("input_hash", sa.String(64), nullable=False),
        sa.Column("output_hash", sa.String(64), nullable=True),
        sa.Column("prompt_hash", sa.String(64), nullable=False),
        sa.Column("prompt_version", sa.String(50), nullable=False, server_default=""),
        sa.Column("input_preview", sa.String(256), nullable=False, server_default=""),
        sa.Column("input_length", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("output_summary", JSONB(), nullable=True),
        sa.Column("model_config", JSONB(), nullable=True),
        sa.Column("validation_results", JSONB(), nullable=True),
        sa.Column("pii_detected", JSONB(), nullable=True),
        sa.Column("confidence_scores", JSONB(), nullable=True),
        sa.Column("latency_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_code", sa.String(32), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_llm_audit_logs_tenant_created", "llm_audit_logs", ["tenant_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_llm_audit_logs_tenant_created", table_name="llm_audit_logs")
    op.drop_table("llm_audit_logs")
    op.drop_table("usage_events")
    op.drop_table("credit_ledgers")
    op.drop_table("profile_update_audits")
    op.drop_table("fused_profiles")
    op.drop_index("ix_behavioral_events_user_ts", table_name="behavioral_events")
    op.drop_table("behavioral_events")
