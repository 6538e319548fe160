from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from regionctl.apps.api.response import SuccessEnvelope, success_response

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    # Liveness of the ops API plus a coarse view of the controller behind it.
    status: str
    controller_running: bool
    loop_state: str | None = None
    degraded: bool = False


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    # Always 200 while the API is up; "degraded" flags a held decision.
    reconciler = getattr(request.app.state, "reconciler", None)
    if reconciler is None:
        payload = HealthResponse(status="degraded", controller_running=False)
    else:
        payload = HealthResponse(
            status="degraded" if reconciler.degraded else "ok",
            controller_running=reconciler.running,
            loop_state=reconciler.state.value,
            degraded=reconciler.degraded,
        )
    return success_response(request=request, data=payload)
