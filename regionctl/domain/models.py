from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, DateTime, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on PostgreSQL, plain JSON elsewhere so SQLite test databases work.
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class FailoverAuditEntry(Base):
    __tablename__ = "failover_audit_entries"
    __table_args__ = (
        Index("ix_failover_audit_entries_outcome_occurred", "outcome", "occurred_at"),
    )

    # Monotonic id keeps append order stable when timestamps collide.
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    cycle_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    outcome: Mapped[str] = mapped_column(String, nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    previous_primary: Mapped[str | None] = mapped_column(String, nullable=True)
    new_primary: Mapped[str] = mapped_column(String, nullable=False)
    previous_decision_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    decision_json: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    region_snapshot_json: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
