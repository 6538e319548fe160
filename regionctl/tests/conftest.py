from __future__ import annotations

import os

# The engine is created at import time, so point it at SQLite before any regionctl import.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./regionctl_test.db")

import pytest
from sqlalchemy import delete

from regionctl.core.config import get_settings
from regionctl.services.lease import reset_lease_redis
from regionctl.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def reset_process_state():
    # Settings and counters are process-wide; keep every test independent.
    get_settings.cache_clear()
    reset_telemetry()
    reset_lease_redis()
    yield
    get_settings.cache_clear()
    reset_lease_redis()


@pytest.fixture
async def audit_session_factory():
    from regionctl.domain.models import FailoverAuditEntry
    from regionctl.persistence.db import SessionLocal, engine, init_models

    await init_models()
    async with SessionLocal() as session:
        await session.execute(delete(FailoverAuditEntry))
        await session.commit()
    yield SessionLocal
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    await engine.dispose()
