from __future__ import annotations

import json
import time

import httpx

from regionctl.core.errors import ApplyFailureError, ConfigError
from regionctl.domain.state import RoutingDecision
from regionctl.services.alerts import SIGNATURE_HEADER, compute_signature
from regionctl.services.telemetry import record_external_call


class WebhookRoutingBackend:
    # Hand decisions to an external router over a signed HTTP POST.
    name = "webhook"

    def __init__(
        self,
        url: str,
        *,
        secret: str | None = None,
        timeout_s: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not url:
            raise ConfigError("webhook backend requires ROUTING_WEBHOOK_URL")
        self._url = url
        self._secret = secret
        self._timeout_s = timeout_s
        self._transport = transport

    async def apply(self, decision: RoutingDecision) -> None:
        # Receivers key on the body digest, so identical decisions are safe to resend.
        body = json.dumps(decision.to_dict(), sort_keys=True).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self._secret:
            headers[SIGNATURE_HEADER] = compute_signature(body, self._secret)
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
                response = await client.post(self._url, content=body, headers=headers)
        except httpx.HTTPError as exc:
            record_external_call(
                integration="routing.webhook",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise ApplyFailureError(f"Routing webhook unreachable: {exc}", backend=self.name) from exc
        ok = response.status_code < 300
        record_external_call(
            integration="routing.webhook",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=ok,
        )
        if not ok:
            raise ApplyFailureError(
                f"Routing webhook rejected decision ({response.status_code})",
                backend=self.name,
            )
