from __future__ import annotations

from regionctl.core.errors import ApplyFailureError
from regionctl.domain.state import RoutingDecision


class InMemoryRoutingBackend:
    # In-process backend for tests and dry runs; nothing leaves the process.
    name = "memory"

    def __init__(self) -> None:
        # Every call is recorded, including no-op repeats, so tests can count applies.
        self.calls: list[RoutingDecision] = []
        self.current: RoutingDecision | None = None
        self._failures_remaining = 0

    def fail_next(self, count: int = 1) -> None:
        # Make the next `count` applies raise, to exercise retry and alert paths.
        self._failures_remaining = max(0, count)

    async def apply(self, decision: RoutingDecision) -> None:
        # Record the call, then fail or accept it.
        self.calls.append(decision)
        if self._failures_remaining > 0:
            self._failures_remaining -= 1
            raise ApplyFailureError("injected routing failure", backend=self.name)
        self.current = decision
