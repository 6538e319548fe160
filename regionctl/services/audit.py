from __future__ import annotations

from datetime import timezone
import logging
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from regionctl.core.errors import AuditWriteError
from regionctl.domain.models import FailoverAuditEntry
from regionctl.domain.state import APPLY_OUTCOME_APPLIED, AuditEntry, RoutingDecision
from regionctl.persistence.repos import audit as audit_repo
from regionctl.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class AuditLog(Protocol):
    # Append-only store of routing attempts; entries are never updated or deleted.
    async def append(self, entry: AuditEntry) -> None:
        ...

    async def list_entries(self, *, limit: int = 50) -> list[AuditEntry]:
        ...

    async def latest_applied(self) -> AuditEntry | None:
        ...


def _report_write_failure(entry: AuditEntry, exc: BaseException) -> None:
    # Audit failures go to the log sink and never block the reconcile cycle.
    increment_counter("audit_write_failures_total")
    logger.warning(
        "audit_entry_write_failed cycle_id=%s outcome=%s primary=%s",
        entry.cycle_id,
        entry.outcome,
        entry.decision.primary,
        exc_info=exc,
    )


def entry_from_row(row: FailoverAuditEntry) -> AuditEntry:
    # Stored decisions are revalidated on the way out.
    occurred_at = row.occurred_at
    if occurred_at.tzinfo is None:
        # SQLite drops tzinfo; rows are always written in UTC.
        occurred_at = occurred_at.replace(tzinfo=timezone.utc)
    return AuditEntry(
        timestamp=occurred_at,
        previous=RoutingDecision.from_dict(row.previous_decision_json) if row.previous_decision_json else None,
        decision=RoutingDecision.from_dict(row.decision_json),
        region_snapshot=list(row.region_snapshot_json or []),
        reason=row.reason,
        outcome=row.outcome,
        attempt=row.attempt,
        error=row.error_message,
        cycle_id=row.cycle_id,
    )


class MemoryAuditLog:
    # Process-local log for tests and single-shot tooling.
    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []

    @property
    def entries(self) -> list[AuditEntry]:
        return list(self._entries)

    async def append(self, entry: AuditEntry) -> None:
        self._entries.append(entry)
        increment_counter(f"audit_entries_total.{entry.outcome}")

    async def list_entries(self, *, limit: int = 50) -> list[AuditEntry]:
        # Newest first, like the SQL log.
        return list(reversed(self._entries))[:limit]

    async def latest_applied(self) -> AuditEntry | None:
        for entry in reversed(self._entries):
            if entry.outcome == APPLY_OUTCOME_APPLIED:
                return entry
        return None


class SqlAuditLog:
    # Durable log backed by the failover_audit_entries table.
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(self, entry: AuditEntry) -> None:
        try:
            await self._write(entry)
        except AuditWriteError as exc:
            _report_write_failure(entry, exc)
            return
        increment_counter(f"audit_entries_total.{entry.outcome}")

    async def _write(self, entry: AuditEntry) -> None:
        # Storage errors surface as AuditWriteError so append can report them uniformly.
        try:
            async with self._session_factory() as session:
                try:
                    await audit_repo.insert_entry(session, entry)
                    await session.commit()
                except SQLAlchemyError:
                    await session.rollback()
                    raise
        except (SQLAlchemyError, OSError) as exc:
            raise AuditWriteError(f"Failed to persist audit entry for cycle {entry.cycle_id}") from exc

    async def list_entries(self, *, limit: int = 50) -> list[AuditEntry]:
        async with self._session_factory() as session:
            rows = await audit_repo.list_entries(session, limit=limit)
        return [entry_from_row(row) for row in rows]

    async def latest_applied(self) -> AuditEntry | None:
        # Used on startup and on leadership takeover to recover the live decision.
        async with self._session_factory() as session:
            row = await audit_repo.latest_applied(session)
        return entry_from_row(row) if row is not None else None
