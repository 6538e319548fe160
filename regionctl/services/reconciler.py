from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from types import MappingProxyType
from typing import Any, Callable, Mapping
from uuid import uuid4

from regionctl.core.config import ControllerConfig
from regionctl.core.errors import InvalidInputError
from regionctl.domain.state import (
    APPLY_OUTCOME_APPLIED,
    APPLY_OUTCOME_FAILED,
    AuditEntry,
    CycleReport,
    HealthSample,
    LoopState,
    PolicyEvaluation,
    Region,
    RoutingDecision,
    Status,
)
from regionctl.providers.routing import RoutingBackend
from regionctl.services.alerts import (
    ALERT_ALL_REGIONS_UNHEALTHY,
    ALERT_APPLY_RETRIES_EXHAUSTED,
    SEVERITY_CRITICAL,
    Alert,
    AlertSink,
    deliver_alert,
)
from regionctl.services.audit import AuditLog
from regionctl.services.lease import ControllerLease
from regionctl.services.policy import FailoverPolicy, evaluate
from regionctl.services.probe import HealthProbe
from regionctl.services.region_state import RegionState
from regionctl.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

_STATUS_GAUGE = {Status.HEALTHY: 1.0, Status.UNKNOWN: 0.5, Status.UNHEALTHY: 0.0}


def _utc_now() -> datetime:
    # Default clock for samples and audit timestamps.
    return datetime.now(timezone.utc)


def _describe(exc: BaseException) -> str:
    # Short "Type: message" text for audit and sample errors.
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


class ReconcileLoop:
    """Single-owner control loop reconciling routing with observed region health.

    One cycle probes every region concurrently under a deadline, folds the
    samples into each RegionState, evaluates the failover policy and applies
    the resulting decision when it differs from the last applied one. A failed
    apply moves the loop to cooldown and is retried by the next cycle until
    ``max_apply_retries`` attempts have failed, at which point an operator
    alert is raised and the loop waits for its next scheduled tick.

    RegionState, the applied decision and the retry counters are only touched
    while holding the cycle lock, so an ops-triggered cycle and the background
    loop never interleave.
    """

    def __init__(
        self,
        config: ControllerConfig,
        *,
        probe: HealthProbe,
        backend: RoutingBackend,
        audit_log: AuditLog,
        alerts: AlertSink,
        policy: FailoverPolicy = evaluate,
        lease: ControllerLease | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._probe = probe
        self._backend = backend
        self._audit_log = audit_log
        self._alerts = alerts
        self._policy = policy
        self._lease = lease
        self._clock = clock or _utc_now
        self._states = self._fresh_states()
        self._state = LoopState.IDLE
        self._applied: RoutingDecision | None = None
        self._pending_decision: RoutingDecision | None = None
        self._pending_attempts = 0
        self._degraded = False
        self._outage_alerted = False
        self._last_report: CycleReport | None = None
        self._cycle_lock = asyncio.Lock()
        self._trigger = asyncio.Event()
        self._stop = asyncio.Event()
        self._running = False

    @property
    def config(self) -> ControllerConfig:
        return self._config

    @property
    def audit_log(self) -> AuditLog:
        return self._audit_log

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def applied_decision(self) -> RoutingDecision | None:
        return self._applied

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def pending_attempts(self) -> int:
        return self._pending_attempts

    @property
    def last_report(self) -> CycleReport | None:
        return self._last_report

    @property
    def running(self) -> bool:
        return self._running

    @property
    def region_states(self) -> Mapping[str, RegionState]:
        return MappingProxyType(self._states)

    def status(self) -> dict[str, Any]:
        # Plain-data view of the loop for the ops API.
        return {
            "state": self._state.value,
            "running": self._running,
            "degraded": self._degraded,
            "applied_decision": self._applied.to_dict() if self._applied is not None else None,
            "pending_apply_attempts": self._pending_attempts,
            "regions": self._snapshot(),
            "last_cycle": self._last_report.to_dict() if self._last_report is not None else None,
        }

    async def restore(self) -> RoutingDecision | None:
        # Resume from the last applied decision so a restart neither re-applies nor loses stickiness.
        try:
            entry = await self._audit_log.latest_applied()
        except Exception as exc:  # noqa: BLE001 - restore is best-effort; probes rebuild state anyway
            logger.warning("restore_decision_failed", exc_info=exc)
            return None
        if entry is None:
            return None
        decision = entry.decision
        if set(decision.weights) != set(self._config.region_ids):
            logger.info(
                "restore_decision_skipped reason=region_set_changed primary=%s",
                decision.primary,
            )
            return None
        async with self._cycle_lock:
            self._applied = decision
        logger.info("restore_decision primary=%s", decision.primary)
        return decision

    def attach_lease(self, lease: ControllerLease | None) -> None:
        # Leases need a running event loop for Redis, so they are attached after construction.
        self._lease = lease

    def trigger(self) -> None:
        # Wake the loop early; the next cycle starts as soon as the current one finishes.
        self._trigger.set()

    def stop(self) -> None:
        # Ask run_forever to exit after the current cycle.
        self._running = False
        self._stop.set()
        self._trigger.set()

    async def run_cycle(self) -> CycleReport:
        # Run one full cycle now; safe to call while run_forever is active.
        async with self._cycle_lock:
            report = await self._run_cycle_locked()
        self._last_report = report
        return report

    async def run_forever(self) -> None:
        # Background loop: cycle on every tick, back off after failed applies, exit on stop().
        self._running = True
        self._stop.clear()
        leading = False
        logger.info(
            "reconcile_loop_started regions=%s interval_s=%s",
            ",".join(self._config.region_ids),
            self._config.cycle_interval_s,
        )
        try:
            while self._running:
                if self._lease is not None:
                    if not await self._lease.hold():
                        if leading:
                            logger.warning("controller_lease_lost")
                        leading = False
                        logger.debug("reconcile_cycle_skipped reason=not_leader")
                        await self._wait_for_tick()
                        continue
                    if not leading:
                        leading = True
                        await self._resume_leadership()
                report: CycleReport | None = None
                try:
                    report = await self.run_cycle()
                except InvalidInputError:
                    logger.critical("reconcile_loop_aborted reason=invalid_input", exc_info=True)
                    raise
                except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                    logger.exception("reconcile cycle failed")
                    self._set_state(LoopState.IDLE)
                if report is not None and report.state is LoopState.COOLDOWN:
                    await self._pause(self._config.cooldown_s)
                    if report.retry_scheduled:
                        continue
                    self._set_state(LoopState.IDLE)
                if not self._running:
                    break
                await self._wait_for_tick()
        finally:
            self._running = False
            if self._lease is not None:
                await self._lease.release()
            logger.info("reconcile_loop_stopped")

    async def _resume_leadership(self) -> None:
        # Another replica may have moved traffic while this one stood by; resume from its decision.
        async with self._cycle_lock:
            self._states = self._fresh_states()
            self._pending_decision = None
            self._pending_attempts = 0
            self._outage_alerted = False
        restored = await self.restore()
        logger.info(
            "controller_lease_acquired primary=%s",
            restored.primary if restored is not None else None,
        )

    async def _run_cycle_locked(self) -> CycleReport:
        # Probe, fold samples, decide, then apply only when the decision changed.
        cycle_id = uuid4().hex[:12]
        started_at = self._clock()
        increment_counter("reconcile_cycles_total")

        self._set_state(LoopState.PROBING)
        samples = await self._probe_all()
        for sample in samples:
            region_state = self._states.get(sample.region_id)
            if region_state is None:
                raise InvalidInputError(f"Probe returned a sample for unknown region {sample.region_id!r}")
            if region_state.record_sample(sample):
                increment_counter(f"region_status_transitions_total.{sample.region_id}")
            set_gauge(f"region_status.{sample.region_id}", _STATUS_GAUGE[region_state.current_status()])

        self._set_state(LoopState.DECIDING)
        evaluation = self._policy(self._states, self._applied)
        await self._track_outage(evaluation)

        self._set_state(LoopState.APPLYING)
        decision = evaluation.decision
        if decision is None or decision == self._applied:
            self._pending_decision = None
            self._pending_attempts = 0
            self._set_state(LoopState.IDLE)
            return CycleReport(
                cycle_id=cycle_id,
                started_at=started_at,
                samples=samples,
                evaluation=evaluation,
                apply_attempted=False,
                applied=False,
                state=self._state,
            )
        return await self._apply(cycle_id, started_at, samples, evaluation, decision)

    async def _apply(
        self,
        cycle_id: str,
        started_at: datetime,
        samples: list[HealthSample],
        evaluation: PolicyEvaluation,
        decision: RoutingDecision,
    ) -> CycleReport:
        # A new decision starts a fresh attempt series; the same one keeps counting.
        if decision != self._pending_decision:
            self._pending_decision = decision
            self._pending_attempts = 0
        self._pending_attempts += 1
        attempt = self._pending_attempts
        previous = self._applied
        snapshot = self._snapshot()

        try:
            await asyncio.wait_for(self._backend.apply(decision), timeout=self._config.apply_timeout_s)
        except InvalidInputError:
            raise
        except Exception as exc:  # noqa: BLE001 - every backend failure is an apply failure
            error = _describe(exc)
            increment_counter("routing_apply_total.failed")
            logger.warning(
                "routing_apply_failed cycle_id=%s primary=%s attempt=%s max=%s error=%s",
                cycle_id,
                decision.primary,
                attempt,
                self._config.max_apply_retries,
                error,
            )
            await self._append_audit(
                AuditEntry(
                    timestamp=self._clock(),
                    previous=previous,
                    decision=decision,
                    region_snapshot=snapshot,
                    reason=evaluation.reason,
                    outcome=APPLY_OUTCOME_FAILED,
                    attempt=attempt,
                    error=error,
                    cycle_id=cycle_id,
                )
            )
            exhausted = attempt >= self._config.max_apply_retries
            if exhausted:
                await deliver_alert(
                    self._alerts,
                    Alert(
                        code=ALERT_APPLY_RETRIES_EXHAUSTED,
                        severity=SEVERITY_CRITICAL,
                        message=f"Routing backend {self._backend.name} failed {attempt} times applying primary {decision.primary}",
                        metadata={
                            "cycle_id": cycle_id,
                            "decision": decision.to_dict(),
                            "previous": previous.to_dict() if previous is not None else None,
                            "last_error": error,
                        },
                    ),
                )
                self._pending_decision = None
                self._pending_attempts = 0
            self._set_state(LoopState.COOLDOWN)
            return CycleReport(
                cycle_id=cycle_id,
                started_at=started_at,
                samples=samples,
                evaluation=evaluation,
                apply_attempted=True,
                applied=False,
                state=self._state,
                retry_scheduled=not exhausted,
                error=error,
            )

        increment_counter("routing_apply_total.applied")
        if previous is not None and previous.primary != decision.primary:
            increment_counter("failover_transitions_total")
        self._applied = decision
        self._pending_decision = None
        self._pending_attempts = 0
        logger.info(
            "routing_decision_applied cycle_id=%s primary=%s previous=%s reason=%s",
            cycle_id,
            decision.primary,
            previous.primary if previous is not None else None,
            evaluation.reason,
        )
        await self._append_audit(
            AuditEntry(
                timestamp=self._clock(),
                previous=previous,
                decision=decision,
                region_snapshot=snapshot,
                reason=evaluation.reason,
                outcome=APPLY_OUTCOME_APPLIED,
                attempt=attempt,
                cycle_id=cycle_id,
            )
        )
        self._set_state(LoopState.IDLE)
        return CycleReport(
            cycle_id=cycle_id,
            started_at=started_at,
            samples=samples,
            evaluation=evaluation,
            apply_attempted=True,
            applied=True,
            state=self._state,
        )

    async def _probe_all(self) -> list[HealthSample]:
        # Probes run concurrently; anything still pending at the deadline becomes a failed sample.
        regions = self._config.regions
        tasks: dict[asyncio.Task[HealthSample], Region] = {
            asyncio.create_task(self._probe.probe(region, self._config.probe_timeout_s)): region
            for region in regions
        }
        try:
            _done, pending = await asyncio.wait(tasks, timeout=self._config.cycle_deadline_s)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        samples: list[HealthSample] = []
        for task, region in tasks.items():
            if task in pending or task.cancelled():
                increment_counter("probe_deadline_exceeded_total")
                samples.append(
                    HealthSample(
                        region_id=region.id,
                        timestamp=self._clock(),
                        success=False,
                        error=f"no report within cycle deadline of {self._config.cycle_deadline_s:.3f}s",
                    )
                )
                continue
            exc = task.exception()
            if exc is not None:
                logger.warning("probe_raised region=%s", region.id, exc_info=exc)
                samples.append(
                    HealthSample(
                        region_id=region.id,
                        timestamp=self._clock(),
                        success=False,
                        error=_describe(exc),
                    )
                )
                continue
            samples.append(task.result())
        return samples

    async def _track_outage(self, evaluation: PolicyEvaluation) -> None:
        # Mirror degraded mode in a gauge and page once per total outage.
        if evaluation.degraded != self._degraded:
            logger.warning("controller_degraded_changed degraded=%s reason=%s", evaluation.degraded, evaluation.reason)
        self._degraded = evaluation.degraded
        set_gauge("controller_degraded", 1.0 if self._degraded else 0.0)

        # Unknown regions are still warming up; only a confirmed total outage pages operators.
        outage = all(state.current_status() is Status.UNHEALTHY for state in self._states.values())
        if outage and not self._outage_alerted:
            self._outage_alerted = True
            await deliver_alert(
                self._alerts,
                Alert(
                    code=ALERT_ALL_REGIONS_UNHEALTHY,
                    severity=SEVERITY_CRITICAL,
                    message="All regions unhealthy; holding last known good routing",
                    metadata={
                        "holding": self._applied.to_dict() if self._applied is not None else None,
                        "regions": self._snapshot(),
                    },
                ),
            )
        elif not outage and self._outage_alerted:
            self._outage_alerted = False
            logger.info("all_regions_unhealthy_cleared")

    async def _append_audit(self, entry: AuditEntry) -> None:
        try:
            await self._audit_log.append(entry)
        except Exception as exc:  # noqa: BLE001 - audit failures never block the cycle
            increment_counter("audit_write_failures_total")
            logger.warning("audit_entry_write_failed cycle_id=%s", entry.cycle_id, exc_info=exc)

    def _fresh_states(self) -> dict[str, RegionState]:
        # Every region restarts from unknown with the configured hysteresis.
        return {
            region.id: RegionState(
                region,
                failure_threshold=self._config.failure_threshold,
                success_threshold=self._config.success_threshold,
                history_size=self._config.sample_history_size,
            )
            for region in self._config.regions
        }

    def _snapshot(self) -> list[dict[str, Any]]:
        # Region snapshots sorted by id for stable audit and API output.
        return [self._states[region_id].snapshot() for region_id in sorted(self._states)]

    def _set_state(self, target: LoopState) -> None:
        # Single place for loop state changes so transitions are traceable in debug logs.
        if target is not self._state:
            logger.debug("reconcile_state from=%s to=%s", self._state.value, target.value)
        self._state = target

    async def _pause(self, seconds: float) -> None:
        # Sleep that ends early on stop().
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            pass

    async def _wait_for_tick(self) -> None:
        # Wait for the interval or an explicit trigger, whichever comes first.
        try:
            await asyncio.wait_for(self._trigger.wait(), timeout=max(0.0, self._config.cycle_interval_s))
        except asyncio.TimeoutError:
            pass
        self._trigger.clear()
