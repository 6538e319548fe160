from __future__ import annotations

from fastapi import Request

from regionctl.apps.api.errors import api_error
from regionctl.services.reconciler import ReconcileLoop


def get_reconciler(request: Request) -> ReconcileLoop:
    # The loop is attached to app state by create_app.
    reconciler = getattr(request.app.state, "reconciler", None)
    if reconciler is None:
        raise api_error("CONTROLLER_NOT_CONFIGURED", "Reconcile loop is not configured", 503)
    return reconciler
