from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from regionctl.apps.api.deps import get_reconciler
from regionctl.apps.api.response import SuccessEnvelope, success_response
from regionctl.services.reconciler import ReconcileLoop
from regionctl.services.telemetry import counters_snapshot, external_latency_by_integration, gauges_snapshot


router = APIRouter(prefix="/ops", tags=["ops"])


class FailoverStatusResponse(BaseModel):
    # Mirrors ReconcileLoop.status().
    state: str
    running: bool
    degraded: bool
    applied_decision: dict[str, Any] | None
    pending_apply_attempts: int
    regions: list[dict[str, Any]]
    last_cycle: dict[str, Any] | None


class ReconcileTriggerResponse(BaseModel):
    # cycle is only present when the caller waited for it.
    triggered: bool
    cycle: dict[str, Any] | None = None


class AuditListResponse(BaseModel):
    items: list[dict[str, Any]]


class MetricsResponse(BaseModel):
    counters: dict[str, int]
    gauges: dict[str, float]
    integrations: dict[str, dict[str, float | None]]


@router.get("/failover/status", response_model=SuccessEnvelope[FailoverStatusResponse])
async def failover_status(
    request: Request,
    reconciler: ReconcileLoop = Depends(get_reconciler),
) -> dict:
    # Read-only snapshot; never waits on a running cycle.
    payload = FailoverStatusResponse(**reconciler.status())
    return success_response(request=request, data=payload)


@router.post("/failover/reconcile", response_model=SuccessEnvelope[ReconcileTriggerResponse])
async def trigger_reconcile(
    request: Request,
    wait: bool = Query(default=False),
    reconciler: ReconcileLoop = Depends(get_reconciler),
) -> dict:
    # wait=true runs one cycle inline; the cycle lock keeps it serialized with the background loop.
    if wait:
        report = await reconciler.run_cycle()
        payload = ReconcileTriggerResponse(triggered=True, cycle=report.to_dict())
    else:
        reconciler.trigger()
        payload = ReconcileTriggerResponse(triggered=True)
    return success_response(request=request, data=payload)


@router.get("/failover/audit", response_model=SuccessEnvelope[AuditListResponse])
async def failover_audit(
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    reconciler: ReconcileLoop = Depends(get_reconciler),
) -> dict:
    # Newest entries first, including failed apply attempts.
    entries = await reconciler.audit_log.list_entries(limit=limit)
    payload = AuditListResponse(items=[entry.to_dict() for entry in entries])
    return success_response(request=request, data=payload)


@router.get("/metrics", response_model=SuccessEnvelope[MetricsResponse])
async def metrics(request: Request) -> dict:
    # Process-local telemetry over the last 15 minutes.
    payload = MetricsResponse(
        counters=counters_snapshot(),
        gauges=gauges_snapshot(),
        integrations=external_latency_by_integration(window_s=900),
    )
    return success_response(request=request, data=payload)
