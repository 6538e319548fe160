from __future__ import annotations

from datetime import datetime, timedelta, timezone
import random

import pytest

from regionctl.core.errors import InvalidInputError
from regionctl.domain.state import HealthSample, Status
from regionctl.services.region_state import RegionState
from regionctl.tests.utils.fakes import DUBLIN, MILAN


_T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _sample(region_id: str, success: bool, offset_s: int = 0) -> HealthSample:
    return HealthSample(region_id=region_id, timestamp=_T0 + timedelta(seconds=offset_s), success=success)


def _feed(state: RegionState, outcomes: list[bool]) -> list[bool]:
    return [state.record_sample(_sample(state.region_id, ok, idx)) for idx, ok in enumerate(outcomes)]


def test_new_region_starts_unknown() -> None:
    state = RegionState(MILAN, failure_threshold=3, success_threshold=2)
    assert state.current_status() is Status.UNKNOWN
    assert state.last_transition_time is None
    assert state.samples == []


def test_unhealthy_only_after_consecutive_failure_threshold() -> None:
    # Two failures stay below the threshold; the third flips the status.
    state = RegionState(MILAN, failure_threshold=3, success_threshold=2)
    _feed(state, [True, True])
    assert state.current_status() is Status.HEALTHY

    transitions = _feed(state, [False, False])
    assert transitions == [False, False]
    assert state.current_status() is Status.HEALTHY

    assert state.record_sample(_sample("milan", False, 10)) is True
    assert state.current_status() is Status.UNHEALTHY
    assert state.last_transition_time == _T0 + timedelta(seconds=10)


def test_interleaved_success_resets_failure_streak() -> None:
    state = RegionState(MILAN, failure_threshold=3, success_threshold=2)
    _feed(state, [True, True, False, False, True, False, False])
    assert state.current_status() is Status.HEALTHY
    assert state.consecutive_failures == 2


def test_recovery_requires_success_threshold() -> None:
    # A single good probe after an outage is not enough to route traffic back.
    state = RegionState(MILAN, failure_threshold=3, success_threshold=2)
    _feed(state, [False, False, False])
    assert state.current_status() is Status.UNHEALTHY

    assert state.record_sample(_sample("milan", True, 5)) is False
    assert state.current_status() is Status.UNHEALTHY
    assert state.record_sample(_sample("milan", True, 6)) is True
    assert state.current_status() is Status.HEALTHY


def test_unknown_leaves_with_same_thresholds() -> None:
    state = RegionState(DUBLIN, failure_threshold=3, success_threshold=2)
    _feed(state, [False, False])
    assert state.current_status() is Status.UNKNOWN
    _feed(state, [False])
    assert state.current_status() is Status.UNHEALTHY


def test_history_ring_buffer_is_bounded() -> None:
    state = RegionState(MILAN, failure_threshold=3, success_threshold=2, history_size=3)
    _feed(state, [True, False, True, False, True])
    samples = state.samples
    assert len(samples) == 3
    assert [sample.timestamp for sample in samples] == [_T0 + timedelta(seconds=idx) for idx in (2, 3, 4)]


def test_sample_for_other_region_is_rejected() -> None:
    state = RegionState(MILAN, failure_threshold=3, success_threshold=2)
    with pytest.raises(InvalidInputError):
        state.record_sample(_sample("dublin", True))
    assert state.samples == []


def test_thresholds_below_one_are_rejected() -> None:
    with pytest.raises(InvalidInputError):
        RegionState(MILAN, failure_threshold=0, success_threshold=2)


def test_transitions_always_follow_full_streaks() -> None:
    # Random sequences: a status change only ever happens at the end of a full streak.
    rng = random.Random(1234)
    for _ in range(200):
        failure_threshold = rng.randint(1, 4)
        success_threshold = rng.randint(1, 4)
        state = RegionState(MILAN, failure_threshold=failure_threshold, success_threshold=success_threshold)
        outcomes: list[bool] = []
        for idx in range(40):
            ok = rng.random() < 0.5
            outcomes.append(ok)
            before = state.current_status()
            changed = state.record_sample(_sample("milan", ok, idx))
            after = state.current_status()
            assert changed == (before is not after)
            if changed and after is Status.UNHEALTHY:
                assert outcomes[-failure_threshold:] == [False] * failure_threshold
            if changed and after is Status.HEALTHY:
                assert outcomes[-success_threshold:] == [True] * success_threshold


def test_snapshot_reports_last_sample() -> None:
    state = RegionState(MILAN, failure_threshold=1, success_threshold=1)
    _feed(state, [True])
    snapshot = state.snapshot()
    assert snapshot["region_id"] == "milan"
    assert snapshot["status"] == "healthy"
    assert snapshot["priority_rank"] == 1
    assert snapshot["last_sample"]["success"] is True
