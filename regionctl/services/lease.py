from __future__ import annotations

import asyncio
import logging
from typing import Any
from uuid import uuid4

from redis.asyncio import Redis
from redis.exceptions import RedisError

from regionctl.core.config import Settings, get_settings
from regionctl.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

# redis.asyncio connections are bound to the loop that opened them.
_lease_client: tuple[asyncio.AbstractEventLoop, Redis] | None = None


def get_lease_redis(settings: Settings | None = None) -> Redis | None:
    # Lease store client for the running loop; None keeps the lease process-local.
    global _lease_client
    settings = settings or get_settings()
    if not settings.redis_url:
        return None
    loop = asyncio.get_running_loop()
    if _lease_client is not None and _lease_client[0] is loop:
        return _lease_client[1]
    timeout_s = max(0.1, settings.controller_redis_timeout_ms / 1000.0)
    client = Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=timeout_s,
        socket_connect_timeout=timeout_s,
    )
    _lease_client = (loop, client)
    return client


def reset_lease_redis() -> None:
    # Drop a client bound to a finished event loop (tests, restarts).
    global _lease_client
    _lease_client = None


def _decode(value: Any) -> str:
    # Redis may return bytes or str depending on decode_responses.
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8")
    return str(value or "")


class ControllerLease:
    """Exclusive, expiring ownership of the reconcile loop.

    With Redis the lease is a ``SET NX EX`` key renewed on every cycle, so only
    one controller replica per deployment applies routing decisions. Without
    Redis an in-process lock keeps the same contract for single-instance runs.
    """

    _local_lock = asyncio.Lock()

    def __init__(self, *, key: str, ttl_s: int, redis: Any | None = None) -> None:
        self._key = key
        self._ttl_s = max(5, int(ttl_s))
        self._redis = redis
        self._token = uuid4().hex
        self._held_locally = False

    @property
    def token(self) -> str:
        return self._token

    async def hold(self) -> bool:
        # Acquire or renew; False means another replica owns the loop this cycle.
        if self._redis is None:
            return await self._hold_local()
        try:
            acquired = await self._redis.set(self._key, self._token, nx=True, ex=self._ttl_s)
            if acquired:
                self._set_leader(True)
                return True
            current = _decode(await self._redis.get(self._key))
            if current == self._token:
                await self._redis.expire(self._key, self._ttl_s)
                self._set_leader(True)
                return True
        except (RedisError, OSError) as exc:
            # Without a reachable lease store no replica may act as leader.
            increment_counter("controller_lease_errors_total")
            logger.warning("controller_lease_unavailable key=%s", self._key, exc_info=exc)
        self._set_leader(False)
        return False

    async def release(self) -> None:
        if self._redis is None:
            if self._held_locally and ControllerLease._local_lock.locked():
                ControllerLease._local_lock.release()
            self._held_locally = False
            self._set_leader(False)
            return
        try:
            current = _decode(await self._redis.get(self._key))
            if current == self._token:
                await self._redis.delete(self._key)
        except (RedisError, OSError) as exc:
            logger.warning("controller_lease_release_failed key=%s", self._key, exc_info=exc)
        self._set_leader(False)

    async def _hold_local(self) -> bool:
        if self._held_locally:
            return True
        if ControllerLease._local_lock.locked():
            self._set_leader(False)
            return False
        await ControllerLease._local_lock.acquire()
        self._held_locally = True
        self._set_leader(True)
        return True

    def _set_leader(self, leader: bool) -> None:
        set_gauge("controller_is_leader", 1.0 if leader else 0.0)
