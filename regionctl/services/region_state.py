from __future__ import annotations

from collections import deque
from datetime import datetime
import logging
from typing import Any, Deque

from regionctl.core.errors import InvalidInputError
from regionctl.domain.state import HealthSample, Region, Status


logger = logging.getLogger(__name__)


class RegionState:
    """Health history and debounced status of one region.

    Status only moves to unhealthy after ``failure_threshold`` consecutive
    failed samples and only moves to healthy after ``success_threshold``
    consecutive successful samples. The asymmetric thresholds keep a
    flapping endpoint from bouncing traffic between regions.
    """

    def __init__(
        self,
        region: Region,
        *,
        failure_threshold: int,
        success_threshold: int,
        history_size: int = 20,
    ) -> None:
        if failure_threshold < 1 or success_threshold < 1:
            raise InvalidInputError("Hysteresis thresholds must be >= 1")
        self._region = region
        self._failure_threshold = failure_threshold
        self._success_threshold = success_threshold
        self._samples: Deque[HealthSample] = deque(maxlen=max(1, history_size))
        self._status = Status.UNKNOWN
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        self._last_transition_time: datetime | None = None

    @property
    def region(self) -> Region:
        return self._region

    @property
    def region_id(self) -> str:
        return self._region.id

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def consecutive_successes(self) -> int:
        return self._consecutive_successes

    @property
    def last_transition_time(self) -> datetime | None:
        return self._last_transition_time

    # Oldest first, bounded by history_size.
    @property
    def samples(self) -> list[HealthSample]:
        return list(self._samples)

    def current_status(self) -> Status:
        # Debounced status; raw sample outcomes never leak through directly.
        return self._status

    def record_sample(self, sample: HealthSample) -> bool:
        # Returns True when the sample moved the region to a new status.
        if sample.region_id != self._region.id:
            raise InvalidInputError(
                f"Sample for region {sample.region_id!r} delivered to state of {self._region.id!r}"
            )
        self._samples.append(sample)
        # A sample of the opposite outcome resets the other streak.
        if sample.success:
            self._consecutive_successes += 1
            self._consecutive_failures = 0
            if self._status is not Status.HEALTHY and self._consecutive_successes >= self._success_threshold:
                return self._transition(Status.HEALTHY, sample.timestamp)
        else:
            self._consecutive_failures += 1
            self._consecutive_successes = 0
            if self._status is not Status.UNHEALTHY and self._consecutive_failures >= self._failure_threshold:
                return self._transition(Status.UNHEALTHY, sample.timestamp)
        return False

    def _transition(self, target: Status, at: datetime) -> bool:
        # Record the new status and when it happened.
        logger.info(
            "region_status_transition region=%s from=%s to=%s failures=%s successes=%s",
            self._region.id,
            self._status.value,
            target.value,
            self._consecutive_failures,
            self._consecutive_successes,
        )
        self._status = target
        self._last_transition_time = at
        return True

    def snapshot(self) -> dict[str, Any]:
        # Plain-data view for audit entries and ops responses.
        last = self._samples[-1] if self._samples else None
        return {
            "region_id": self._region.id,
            "priority_rank": self._region.priority_rank,
            "status": self._status.value,
            "consecutive_failures": self._consecutive_failures,
            "consecutive_successes": self._consecutive_successes,
            "last_transition_time": (
                self._last_transition_time.isoformat() if self._last_transition_time else None
            ),
            "last_sample": last.to_dict() if last is not None else None,
        }
