from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from regionctl.core.errors import InvalidInputError


class Status(str, Enum):
    # Debounced region health; every region starts unknown.
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class LoopState(str, Enum):
    # Phases of one reconcile cycle plus the post-failure cooldown.
    IDLE = "idle"
    PROBING = "probing"
    DECIDING = "deciding"
    APPLYING = "applying"
    COOLDOWN = "cooldown"


# Audit outcomes for routing apply attempts.
APPLY_OUTCOME_APPLIED = "applied"
APPLY_OUTCOME_FAILED = "apply_failed"


@dataclass(frozen=True)
class Endpoint:
    # Health-check target; defaults mirror the DNS HTTP health checks.
    host: str
    port: int = 80
    protocol: str = "http"
    health_check_path: str = "/health"

    def url(self) -> str:
        # Build the probe URL, tolerating paths configured without a leading slash.
        path = self.health_check_path if self.health_check_path.startswith("/") else f"/{self.health_check_path}"
        return f"{self.protocol}://{self.host}:{self.port}{path}"


@dataclass(frozen=True)
class Region:
    # Immutable region definition; lower priority_rank is preferred.
    id: str
    priority_rank: int
    endpoint: Endpoint
    # AWS region code of the Global Accelerator endpoint group, when it differs from id.
    aws_region: str | None = None


@dataclass(frozen=True)
class HealthSample:
    # One probe outcome; failures are data, never exceptions.
    region_id: str
    timestamp: datetime
    success: bool
    latency_ms: float | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "region_id": self.region_id,
            "timestamp": self.timestamp.isoformat(),
            "success": self.success,
            "latency_ms": self.latency_ms,
            "error": self.error,
        }


@dataclass(frozen=True)
class RoutingDecision:
    # Weights are frozen so decisions compare and hash by value.
    primary: str
    weights: Mapping[str, int]

    def __post_init__(self) -> None:
        frozen = MappingProxyType(dict(sorted(self.weights.items())))
        object.__setattr__(self, "weights", frozen)
        # Weights are percentages of traffic; the primary must carry a share.
        if any(weight < 0 or weight > 100 for weight in frozen.values()):
            raise InvalidInputError(f"Routing weights must be within 0-100: {dict(frozen)}")
        if sum(frozen.values()) != 100:
            raise InvalidInputError(f"Routing weights must sum to 100: {dict(frozen)}")
        if self.primary not in frozen:
            raise InvalidInputError(f"Primary {self.primary!r} has no routing weight")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RoutingDecision):
            return NotImplemented
        return self.primary == other.primary and dict(self.weights) == dict(other.weights)

    def __hash__(self) -> int:
        return hash((self.primary, tuple(self.weights.items())))

    @classmethod
    def binary(cls, primary: str, region_ids: list[str] | tuple[str, ...]) -> RoutingDecision:
        # Send all traffic to the primary and none to the rest.
        weights = {region_id: 0 for region_id in region_ids}
        weights[primary] = 100
        return cls(primary=primary, weights=weights)

    def to_dict(self) -> dict[str, Any]:
        return {"primary": self.primary, "weights": dict(self.weights)}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> RoutingDecision:
        # Rebuild a stored decision; malformed payloads fail the same checks as new ones.
        try:
            primary = str(payload["primary"])
            weights = {str(key): int(value) for key, value in dict(payload.get("weights") or {}).items()}
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidInputError(f"Malformed routing decision payload: {payload!r}") from exc
        return cls(primary=primary, weights=weights)


@dataclass(frozen=True)
class PolicyEvaluation:
    # Policy output: the decision plus why it was made.
    decision: RoutingDecision | None
    degraded: bool
    reason: str


@dataclass(frozen=True)
class AuditEntry:
    # Append-only record of one applied or attempted routing change.
    timestamp: datetime
    previous: RoutingDecision | None
    decision: RoutingDecision
    region_snapshot: list[dict[str, Any]]
    reason: str
    outcome: str
    attempt: int = 1
    error: str | None = None
    cycle_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "previous": self.previous.to_dict() if self.previous is not None else None,
            "decision": self.decision.to_dict(),
            "region_snapshot": self.region_snapshot,
            "reason": self.reason,
            "outcome": self.outcome,
            "attempt": self.attempt,
            "error": self.error,
            "cycle_id": self.cycle_id,
        }


@dataclass(frozen=True)
class CycleReport:
    # Outcome of one reconcile cycle, returned to callers and the ops API.
    cycle_id: str
    started_at: datetime
    samples: list[HealthSample]
    evaluation: PolicyEvaluation
    apply_attempted: bool
    applied: bool
    state: LoopState
    retry_scheduled: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        decision = self.evaluation.decision
        return {
            "cycle_id": self.cycle_id,
            "started_at": self.started_at.isoformat(),
            "samples": [sample.to_dict() for sample in self.samples],
            "decision": decision.to_dict() if decision is not None else None,
            "degraded": self.evaluation.degraded,
            "reason": self.evaluation.reason,
            "apply_attempted": self.apply_attempted,
            "applied": self.applied,
            "state": self.state.value,
            "retry_scheduled": self.retry_scheduled,
            "error": self.error,
        }
