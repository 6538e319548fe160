from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import hashlib
import hmac
import json
import logging
from typing import Any, Protocol
from uuid import uuid4

import httpx

from regionctl.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ALERT_APPLY_RETRIES_EXHAUSTED = "apply_retries_exhausted"
ALERT_ALL_REGIONS_UNHEALTHY = "all_regions_unhealthy"

SEVERITY_CRITICAL = "critical"

SIGNATURE_HEADER = "X-Regionctl-Signature"


@dataclass(frozen=True)
class Alert:
    # Operator-facing alert; id and raised_at let receivers deduplicate.
    code: str
    severity: str
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid4().hex)
    raised_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "severity": self.severity,
            "message": self.message,
            "metadata": self.metadata,
            "raised_at": self.raised_at.isoformat(),
        }


class AlertSink(Protocol):
    # Sinks may raise; callers go through deliver_alert.
    async def send(self, alert: Alert) -> None:
        ...


def compute_signature(raw_body: bytes, secret: str) -> str:
    # Receivers recompute this over the raw body to authenticate the sender.
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class LoggingAlertSink:
    # Default sink: alerts always reach the logs even with no webhook configured.
    async def send(self, alert: Alert) -> None:
        level = logger.error if alert.severity == SEVERITY_CRITICAL else logger.warning
        level(
            "operator_alert code=%s severity=%s message=%s metadata=%s",
            alert.code,
            alert.severity,
            alert.message,
            json.dumps(alert.metadata, sort_keys=True, default=str),
        )


class WebhookAlertSink:
    # POST the alert as JSON, signed when a secret is configured.
    def __init__(
        self,
        url: str,
        *,
        secret: str | None = None,
        timeout_s: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._secret = secret
        self._timeout_s = timeout_s
        self._transport = transport

    async def send(self, alert: Alert) -> None:
        body = json.dumps(alert.to_dict(), sort_keys=True).encode("utf-8")
        headers = {"Content-Type": "application/json", "X-Alert-Id": alert.id}
        if self._secret:
            headers[SIGNATURE_HEADER] = compute_signature(body, self._secret)
        async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
            response = await client.post(self._url, content=body, headers=headers)
        response.raise_for_status()


class CompositeAlertSink:
    # Fan one alert out to every configured sink.
    def __init__(self, sinks: list[AlertSink]) -> None:
        self._sinks = list(sinks)

    async def send(self, alert: Alert) -> None:
        # One failing sink must not starve the others.
        for sink in self._sinks:
            await _send_best_effort(sink, alert)


async def _send_best_effort(sink: AlertSink, alert: Alert) -> None:
    # Delivery failures are counted and logged, never raised.
    try:
        await sink.send(alert)
    except Exception as exc:  # noqa: BLE001 - alert sinks are external collaborators
        increment_counter("alert_delivery_failures_total")
        logger.warning("alert_delivery_failed code=%s sink=%s", alert.code, type(sink).__name__, exc_info=exc)


async def deliver_alert(sink: AlertSink, alert: Alert) -> None:
    # Alert delivery is best-effort; a broken sink must never stop reconciliation.
    increment_counter(f"alerts_raised_total.{alert.code}")
    await _send_best_effort(sink, alert)
