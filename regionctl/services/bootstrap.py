from __future__ import annotations

import logging

from regionctl.core.config import ControllerConfig, Settings, get_settings, load_controller_config
from regionctl.core.errors import ConfigError
from regionctl.providers.routing.factory import get_routing_backend
from regionctl.services.alerts import AlertSink, CompositeAlertSink, LoggingAlertSink, WebhookAlertSink
from regionctl.services.audit import AuditLog, MemoryAuditLog, SqlAuditLog
from regionctl.services.lease import ControllerLease, get_lease_redis
from regionctl.services.probe import EndpointHealthProbe
from regionctl.services.reconciler import ReconcileLoop


logger = logging.getLogger(__name__)


def build_audit_log(settings: Settings) -> AuditLog:
    # Durable SQL audit by default; memory for dry runs.
    backend = (settings.audit_backend or "sql").lower()
    if backend == "memory":
        return MemoryAuditLog()
    if backend == "sql":
        # Import lazily so memory-only deployments never create a DB engine.
        from regionctl.persistence.db import SessionLocal

        return SqlAuditLog(SessionLocal)
    raise ConfigError(f"Unsupported audit backend: {backend}")


def build_alert_sink(settings: Settings) -> AlertSink:
    # Alerts always reach the log; the webhook is optional.
    sinks: list[AlertSink] = [LoggingAlertSink()]
    if settings.alert_webhook_url:
        sinks.append(
            WebhookAlertSink(
                settings.alert_webhook_url,
                secret=settings.alert_webhook_secret,
                timeout_s=max(0.2, settings.webhook_timeout_ms / 1000.0),
            )
        )
    return CompositeAlertSink(sinks)


def build_reconciler(
    settings: Settings | None = None,
    *,
    config: ControllerConfig | None = None,
) -> ReconcileLoop:
    # Wire the loop from settings; every collaborator is chosen once at startup.
    settings = settings or get_settings()
    config = config or load_controller_config(settings)
    return ReconcileLoop(
        config,
        probe=EndpointHealthProbe(),
        backend=get_routing_backend(config, settings),
        audit_log=build_audit_log(settings),
        alerts=build_alert_sink(settings),
    )


async def build_lease(settings: Settings | None = None) -> ControllerLease:
    # Must run inside the event loop that will hold the lease.
    settings = settings or get_settings()
    redis = get_lease_redis(settings)
    if redis is None:
        logger.info("controller_lease_local reason=redis_not_configured")
    return ControllerLease(
        key=f"{settings.controller_redis_prefix}:lease",
        ttl_s=settings.controller_lease_ttl_s,
        redis=redis,
    )
