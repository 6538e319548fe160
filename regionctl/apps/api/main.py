from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from regionctl.apps.api.errors import (
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from regionctl.apps.api.response import API_VERSION
from regionctl.apps.api.routes.health import router as health_router
from regionctl.apps.api.routes.ops import router as ops_router
from regionctl.core.config import get_settings
from regionctl.core.logging import configure_logging
from regionctl.services.bootstrap import build_lease, build_reconciler
from regionctl.services.reconciler import ReconcileLoop


logger = logging.getLogger(__name__)

# Give an in-flight cycle this long to finish before the loop task is cancelled.
_SHUTDOWN_GRACE_S = 5.0


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    # Start the reconcile loop with the API and stop it on shutdown.
    settings = get_settings()
    reconciler: ReconcileLoop = app.state.reconciler
    task: asyncio.Task[None] | None = None
    if settings.controller_autostart:
        if settings.audit_backend == "sql" and settings.database_url.startswith("sqlite"):
            from regionctl.persistence.db import init_models

            await init_models()
        if settings.restore_decision_on_start:
            await reconciler.restore()
        reconciler.attach_lease(await build_lease(settings))
        task = asyncio.create_task(reconciler.run_forever())
    try:
        yield
    finally:
        if task is not None:
            reconciler.stop()
            if task.done():
                # An aborted loop already logged its failure; retrieve it so shutdown stays clean.
                if not task.cancelled() and task.exception() is not None:
                    logger.error("reconcile_loop_exited_before_shutdown")
            else:
                try:
                    await asyncio.wait_for(task, timeout=_SHUTDOWN_GRACE_S)
                except asyncio.TimeoutError:
                    logger.warning("reconcile_loop_shutdown_timeout grace_s=%s", _SHUTDOWN_GRACE_S)


def create_app(reconciler: ReconcileLoop | None = None) -> FastAPI:
    # Tests pass a prebuilt loop; production wires one from settings.
    configure_logging()
    app = FastAPI(title="regionctl ops API", lifespan=_lifespan)
    app.state.reconciler = reconciler or build_reconciler()

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")
    return app
