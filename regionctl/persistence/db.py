from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from regionctl.core.config import get_settings
from regionctl.domain.models import Base


settings = get_settings()
_engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
# Pool sizing only applies to server databases.
if not settings.database_url.startswith("sqlite"):
    _engine_kwargs["pool_size"] = max(1, int(settings.api_db_pool_size))
    _engine_kwargs["max_overflow"] = max(0, int(settings.api_db_max_overflow))
    _engine_kwargs["pool_timeout"] = 30
    _engine_kwargs["pool_recycle"] = 1800
engine = create_async_engine(settings.database_url, **_engine_kwargs)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


async def init_models() -> None:
    # Create tables directly for SQLite/dev runs; production schemas come from Alembic.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
