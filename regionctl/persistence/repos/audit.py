from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from regionctl.domain.models import FailoverAuditEntry
from regionctl.domain.state import APPLY_OUTCOME_APPLIED, AuditEntry


def to_row(entry: AuditEntry) -> FailoverAuditEntry:
    # Primaries are denormalized into columns so operators can filter without JSON queries.
    return FailoverAuditEntry(
        occurred_at=entry.timestamp,
        cycle_id=entry.cycle_id,
        outcome=entry.outcome,
        attempt=entry.attempt,
        previous_primary=entry.previous.primary if entry.previous is not None else None,
        new_primary=entry.decision.primary,
        previous_decision_json=entry.previous.to_dict() if entry.previous is not None else None,
        decision_json=entry.decision.to_dict(),
        region_snapshot_json=entry.region_snapshot,
        reason=entry.reason,
        error_message=entry.error,
    )


async def insert_entry(session: AsyncSession, entry: AuditEntry) -> FailoverAuditEntry:
    # Caller owns the transaction; flush assigns the id.
    row = to_row(entry)
    session.add(row)
    await session.flush()
    return row


async def list_entries(
    session: AsyncSession,
    *,
    outcome: str | None = None,
    limit: int = 50,
) -> list[FailoverAuditEntry]:
    # Newest first; id breaks ties between entries written in the same instant.
    stmt = select(FailoverAuditEntry)
    if outcome:
        stmt = stmt.where(FailoverAuditEntry.outcome == outcome)
    stmt = stmt.order_by(FailoverAuditEntry.occurred_at.desc(), FailoverAuditEntry.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def latest_applied(session: AsyncSession) -> FailoverAuditEntry | None:
    rows = await list_entries(session, outcome=APPLY_OUTCOME_APPLIED, limit=1)
    return rows[0] if rows else None
