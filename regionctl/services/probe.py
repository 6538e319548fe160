from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
import time
from typing import Callable, Protocol

import httpx

from regionctl.domain.state import HealthSample, Region
from regionctl.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)


class HealthProbe(Protocol):
    # Implementations report failures as unsuccessful samples instead of raising.
    async def probe(self, region: Region, timeout: float) -> HealthSample:
        ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _describe(exc: BaseException) -> str:
    # Keep error detail short and stable for audit snapshots.
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


class EndpointHealthProbe:
    # HTTP(S) GET or TCP connect against the region health endpoint.
    def __init__(
        self,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] | None = None,
        verify_tls: bool = True,
    ) -> None:
        self._transport = transport
        self._clock = clock or _utc_now
        self._verify_tls = verify_tls

    async def probe(self, region: Region, timeout: float) -> HealthSample:
        # Never raise: every failure mode becomes a failed sample.
        started = time.monotonic()
        success = False
        error: str | None = None
        try:
            if region.endpoint.protocol == "tcp":
                await asyncio.wait_for(self._probe_tcp(region), timeout=timeout)
                success = True
            else:
                # 2xx and 3xx count as healthy, matching Route53 HTTP health checks.
                status_code = await asyncio.wait_for(self._probe_http(region, timeout), timeout=timeout)
                if 200 <= status_code < 400:
                    success = True
                else:
                    error = f"unhealthy status code {status_code}"
        except asyncio.TimeoutError:
            error = f"timed out after {timeout:.3f}s"
        except (httpx.HTTPError, OSError) as exc:
            error = _describe(exc)
        latency_ms = (time.monotonic() - started) * 1000.0
        record_external_call(integration=f"probe.{region.id}", latency_ms=latency_ms, success=success)
        if not success:
            increment_counter(f"probe_failures_total.{region.id}")
            logger.debug("probe_failed region=%s error=%s", region.id, error)
        return HealthSample(
            region_id=region.id,
            timestamp=self._clock(),
            success=success,
            latency_ms=round(latency_ms, 3),
            error=error,
        )

    async def _probe_http(self, region: Region, timeout: float) -> int:
        # Redirects are not followed; a 3xx already counts as healthy.
        async with httpx.AsyncClient(
            timeout=timeout,
            transport=self._transport,
            verify=self._verify_tls,
            follow_redirects=False,
        ) as client:
            response = await client.get(region.endpoint.url())
        return response.status_code

    async def _probe_tcp(self, region: Region) -> None:
        # A completed handshake is enough; nothing is sent.
        _reader, writer = await asyncio.open_connection(region.endpoint.host, region.endpoint.port)
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            # The connect succeeded; a reset during close does not make the endpoint unhealthy.
            pass
