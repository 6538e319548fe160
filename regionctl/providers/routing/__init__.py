from __future__ import annotations

# Re-export routing backends for centralized imports.

from regionctl.providers.routing.base import RoutingBackend
from regionctl.providers.routing.factory import get_routing_backend
from regionctl.providers.routing.global_accelerator import GlobalAcceleratorBackend
from regionctl.providers.routing.memory import InMemoryRoutingBackend
from regionctl.providers.routing.route53 import Route53WeightedRecordBackend
from regionctl.providers.routing.webhook import WebhookRoutingBackend

__all__ = [
    "RoutingBackend",
    "get_routing_backend",
    "GlobalAcceleratorBackend",
    "InMemoryRoutingBackend",
    "Route53WeightedRecordBackend",
    "WebhookRoutingBackend",
]
