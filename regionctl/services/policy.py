from __future__ import annotations

from typing import Mapping, Protocol

from regionctl.domain.state import PolicyEvaluation, RoutingDecision, Status
from regionctl.services.region_state import RegionState


class FailoverPolicy(Protocol):
    # Any callable with this shape can replace the default binary policy.
    def __call__(
        self,
        states: Mapping[str, RegionState],
        previous: RoutingDecision | None,
    ) -> PolicyEvaluation:
        ...


def _preference_key(state: RegionState) -> tuple[int, str]:
    # Lower rank wins; equal ranks fall back to lexical region id.
    return (state.region.priority_rank, state.region_id)


def evaluate(
    states: Mapping[str, RegionState],
    previous: RoutingDecision | None,
) -> PolicyEvaluation:
    # Binary failover: sticky primary, lowest-rank healthy fallback, hold on total outage.
    region_ids = sorted(states)
    # Only debounced healthy regions are eligible; unknown counts as not healthy.
    healthy = [states[region_id] for region_id in region_ids if states[region_id].current_status() is Status.HEALTHY]

    # Total outage: keep serving the last decision rather than routing nowhere.
    if not healthy:
        if previous is None:
            return PolicyEvaluation(decision=None, degraded=True, reason="no healthy region and no previous decision")
        return PolicyEvaluation(
            decision=previous,
            degraded=True,
            reason=f"all regions not healthy, holding {previous.primary}",
        )

    # Sticky primary: a healthy incumbent is never displaced by a better-ranked region.
    if previous is not None and previous.primary in states:
        if states[previous.primary].current_status() is Status.HEALTHY:
            return PolicyEvaluation(
                decision=RoutingDecision.binary(previous.primary, region_ids),
                degraded=False,
                reason=f"{previous.primary} healthy, keeping primary",
            )

    # Failover or first decision: best-ranked healthy region.
    chosen = min(healthy, key=_preference_key)
    decision = RoutingDecision.binary(chosen.region_id, region_ids)
    if previous is None:
        reason = f"initial primary {chosen.region_id}"
    else:
        old = states.get(previous.primary)
        old_status = old.current_status().value if old is not None else "removed"
        reason = f"{previous.primary} {old_status}, failover to {chosen.region_id}"
    return PolicyEvaluation(decision=decision, degraded=False, reason=reason)


def decide(
    states: Mapping[str, RegionState],
    previous: RoutingDecision | None,
) -> RoutingDecision | None:
    # Decision-only shortcut for callers that do not need the reason.
    return evaluate(states, previous).decision
