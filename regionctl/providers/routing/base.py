from __future__ import annotations

from typing import Protocol

from regionctl.domain.state import RoutingDecision


class RoutingBackend(Protocol):
    # Implementations must treat a repeated apply of the same decision as a no-op.
    name: str

    async def apply(self, decision: RoutingDecision) -> None:
        ...
