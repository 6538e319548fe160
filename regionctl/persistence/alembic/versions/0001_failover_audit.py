"""add failover audit log table

Revision ID: 0001_failover_audit
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_failover_audit"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Append-only history of every applied or attempted routing change.
    op.create_table(
        "failover_audit_entries",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cycle_id", sa.String(), nullable=True),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("previous_primary", sa.String(), nullable=True),
        sa.Column("new_primary", sa.String(), nullable=False),
        sa.Column("previous_decision_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("decision_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("region_snapshot_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_failover_audit_entries_occurred_at",
        "failover_audit_entries",
        ["occurred_at"],
        unique=False,
    )
    op.create_index(
        "ix_failover_audit_entries_cycle_id",
        "failover_audit_entries",
        ["cycle_id"],
        unique=False,
    )
    op.create_index(
        "ix_failover_audit_entries_outcome_occurred",
        "failover_audit_entries",
        ["outcome", "occurred_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_failover_audit_entries_outcome_occurred", table_name="failover_audit_entries")
    op.drop_index("ix_failover_audit_entries_cycle_id", table_name="failover_audit_entries")
    op.drop_index("ix_failover_audit_entries_occurred_at", table_name="failover_audit_entries")
    op.drop_table("failover_audit_entries")
