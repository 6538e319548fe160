from __future__ import annotations

import json

import pytest

from regionctl.core.config import Settings
from regionctl.core.errors import ConfigError
from regionctl.providers.routing.memory import InMemoryRoutingBackend
from regionctl.services.audit import MemoryAuditLog, SqlAuditLog
from regionctl.services.bootstrap import build_audit_log, build_lease, build_reconciler


_REGIONS_JSON = json.dumps(
    [
        {"id": "milan", "priority_rank": 1, "host": "milan.example.internal"},
        {"id": "dublin", "priority_rank": 2, "host": "dublin.example.internal"},
    ]
)


def test_build_reconciler_wires_configured_collaborators() -> None:
    settings = Settings(regions_json=_REGIONS_JSON, audit_backend="memory", routing_backend="memory")
    loop = build_reconciler(settings)
    assert loop.config.region_ids == ("milan", "dublin")
    assert isinstance(loop.audit_log, MemoryAuditLog)
    assert isinstance(loop._backend, InMemoryRoutingBackend)


def test_build_audit_log_selects_backend() -> None:
    assert isinstance(build_audit_log(Settings(audit_backend="sql")), SqlAuditLog)
    with pytest.raises(ConfigError):
        build_audit_log(Settings(audit_backend="s3"))


@pytest.mark.asyncio
async def test_build_lease_falls_back_to_local_lock(monkeypatch) -> None:
    monkeypatch.delenv("REDIS_URL", raising=False)
    lease = await build_lease(Settings(controller_redis_prefix="test:controller"))
    assert lease._redis is None
    assert lease._key == "test:controller:lease"
