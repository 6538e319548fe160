from __future__ import annotations

from regionctl.core.config import ControllerConfig, Settings, get_settings
from regionctl.core.errors import ConfigError
from regionctl.providers.routing.base import RoutingBackend
from regionctl.providers.routing.global_accelerator import GlobalAcceleratorBackend
from regionctl.providers.routing.memory import InMemoryRoutingBackend
from regionctl.providers.routing.route53 import Route53WeightedRecordBackend
from regionctl.providers.routing.webhook import WebhookRoutingBackend


def get_routing_backend(config: ControllerConfig, settings: Settings | None = None) -> RoutingBackend:
    # Pick the routing backend named by settings; incomplete configuration fails at startup.
    settings = settings or get_settings()
    backend = (settings.routing_backend or "memory").lower()

    if backend == "memory":
        return InMemoryRoutingBackend()
    if backend == "route53":
        return Route53WeightedRecordBackend(
            hosted_zone_id=settings.route53_hosted_zone_id or "",
            record_name=settings.route53_record_name or "",
            regions=config.regions,
            ttl=settings.route53_record_ttl,
        )
    if backend == "global_accelerator":
        return GlobalAcceleratorBackend(
            listener_arn=settings.global_accelerator_listener_arn or "",
            regions=config.regions,
            api_region=settings.global_accelerator_api_region,
        )
    if backend == "webhook":
        return WebhookRoutingBackend(
            settings.routing_webhook_url or "",
            secret=settings.routing_webhook_secret,
            timeout_s=max(0.2, settings.webhook_timeout_ms / 1000.0),
        )

    raise ConfigError(f"Unsupported routing backend: {backend}")
