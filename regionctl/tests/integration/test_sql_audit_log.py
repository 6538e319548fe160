from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from regionctl.core.errors import InvalidInputError
from regionctl.domain.models import FailoverAuditEntry
from regionctl.domain.state import APPLY_OUTCOME_APPLIED, APPLY_OUTCOME_FAILED, AuditEntry, RoutingDecision
from regionctl.services.audit import SqlAuditLog
from regionctl.services.reconciler import ReconcileLoop
from regionctl.services.telemetry import counters_snapshot
from regionctl.tests.utils.fakes import Harness


_T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
MILAN_PRIMARY = RoutingDecision.binary("milan", ["milan", "dublin"])
DUBLIN_PRIMARY = RoutingDecision.binary("dublin", ["milan", "dublin"])


def _entry(offset_s: int, decision: RoutingDecision, outcome: str, **kwargs) -> AuditEntry:
    return AuditEntry(
        timestamp=_T0 + timedelta(seconds=offset_s),
        previous=kwargs.pop("previous", None),
        decision=decision,
        region_snapshot=[{"region_id": "milan", "status": "unhealthy"}],
        reason=kwargs.pop("reason", "test"),
        outcome=outcome,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_sql_audit_log_round_trips_entries(audit_session_factory) -> None:
    audit = SqlAuditLog(audit_session_factory)
    await audit.append(_entry(0, MILAN_PRIMARY, APPLY_OUTCOME_APPLIED, reason="initial primary milan"))
    await audit.append(
        _entry(
            10,
            DUBLIN_PRIMARY,
            APPLY_OUTCOME_APPLIED,
            previous=MILAN_PRIMARY,
            reason="milan unhealthy, failover to dublin",
            cycle_id="c2",
        )
    )
    await audit.append(
        _entry(20, MILAN_PRIMARY, APPLY_OUTCOME_FAILED, previous=DUBLIN_PRIMARY, attempt=2, error="boom")
    )

    entries = await audit.list_entries(limit=10)
    assert [entry.outcome for entry in entries] == [APPLY_OUTCOME_FAILED, APPLY_OUTCOME_APPLIED, APPLY_OUTCOME_APPLIED]
    assert entries[0].attempt == 2
    assert entries[0].error == "boom"
    assert entries[1].previous == MILAN_PRIMARY
    assert entries[1].decision == DUBLIN_PRIMARY
    assert entries[1].cycle_id == "c2"
    assert entries[1].timestamp == _T0 + timedelta(seconds=10)
    assert entries[1].region_snapshot == [{"region_id": "milan", "status": "unhealthy"}]

    latest = await audit.latest_applied()
    assert latest is not None
    assert latest.decision == DUBLIN_PRIMARY
    assert counters_snapshot()["audit_entries_total.applied"] == 2


@pytest.mark.asyncio
async def test_sql_audit_log_limit(audit_session_factory) -> None:
    audit = SqlAuditLog(audit_session_factory)
    for idx in range(5):
        await audit.append(_entry(idx, MILAN_PRIMARY, APPLY_OUTCOME_APPLIED))
    entries = await audit.list_entries(limit=2)
    assert [entry.timestamp for entry in entries] == [_T0 + timedelta(seconds=4), _T0 + timedelta(seconds=3)]


@pytest.mark.asyncio
async def test_sql_audit_write_failure_is_reported_not_raised(tmp_path) -> None:
    # A database path under a missing directory cannot be opened.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'audit.db'}")
    audit = SqlAuditLog(async_sessionmaker(engine, expire_on_commit=False))
    try:
        await audit.append(_entry(0, MILAN_PRIMARY, APPLY_OUTCOME_APPLIED))
    finally:
        await engine.dispose()
    assert counters_snapshot()["audit_write_failures_total"] == 1


@pytest.mark.asyncio
async def test_restart_restores_decision_from_sql_audit(audit_session_factory) -> None:
    # First controller fails over to dublin; a fresh controller resumes from the audit table.
    first = Harness()
    first_loop = ReconcileLoop(
        first.config,
        probe=first.probe,
        backend=first.backend,
        audit_log=SqlAuditLog(audit_session_factory),
        alerts=first.alerts,
        clock=first.clock,
    )
    await first_loop.run_cycle()
    await first_loop.run_cycle()
    first.probe.set("milan", False)
    for _ in range(3):
        await first_loop.run_cycle()
    assert first.backend.current == DUBLIN_PRIMARY

    second = Harness()
    second_loop = ReconcileLoop(
        second.config,
        probe=second.probe,
        backend=second.backend,
        audit_log=SqlAuditLog(audit_session_factory),
        alerts=second.alerts,
    )
    assert await second_loop.restore() == DUBLIN_PRIMARY
    await second_loop.run_cycle()
    await second_loop.run_cycle()
    assert second.backend.calls == []


@pytest.mark.asyncio
async def test_corrupted_decision_row_is_rejected_and_not_restored(audit_session_factory) -> None:
    # A hand-edited row whose weights do not add up must never become the live decision.
    async with audit_session_factory() as session:
        session.add(
            FailoverAuditEntry(
                occurred_at=_T0,
                outcome=APPLY_OUTCOME_APPLIED,
                attempt=1,
                new_primary="milan",
                decision_json={"primary": "milan", "weights": {"milan": 50, "dublin": 0}},
                region_snapshot_json=[],
                reason="manual edit",
            )
        )
        await session.commit()

    audit = SqlAuditLog(audit_session_factory)
    with pytest.raises(InvalidInputError):
        await audit.latest_applied()

    h = Harness()
    loop = ReconcileLoop(h.config, probe=h.probe, backend=h.backend, audit_log=audit, alerts=h.alerts)
    assert await loop.restore() is None
    assert loop.applied_decision is None
