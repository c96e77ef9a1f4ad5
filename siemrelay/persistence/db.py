from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from siemrelay.core.config import Settings, get_settings


def _engine_options(settings: Settings) -> dict[str, Any]:
    options: dict[str, Any] = {"pool_pre_ping": True}
    lock_timeout_s = max(0.0, float(settings.db_lock_timeout_s))
    if settings.database_url.startswith("sqlite"):
        # API handlers and delivery workers write the same file; wait on its lock instead of failing.
        options["connect_args"] = {"timeout": lock_timeout_s}
        return options
    options.update(
        pool_size=max(1, int(settings.db_pool_size)),
        max_overflow=max(0, int(settings.db_max_overflow)),
        pool_timeout=30,
        pool_recycle=1800,
        connect_args={
            "server_settings": {
                "application_name": settings.app_name,
                # Competing claims on one job row give up instead of queueing behind each other.
                "lock_timeout": str(int(lock_timeout_s * 1000)),
            }
        },
    )
    return options


_settings = get_settings()
engine = create_async_engine(_settings.database_url, **_engine_options(_settings))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


def pool_stats() -> dict[str, int | None]:
    """Connection counters for /v1/metrics; None where the pool class has no such counter."""
    pool = engine.sync_engine.pool
    stats: dict[str, int | None] = {}
    counters = (("size", "size"), ("checked_out", "checkedout"), ("checked_in", "checkedin"), ("overflow", "overflow"))
    for name, attr in counters:
        counter = getattr(pool, attr, None)
        stats[name] = int(counter()) if callable(counter) else None
    return stats
