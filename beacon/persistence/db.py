from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from beacon.core.config import Settings, get_settings
from beacon.domain.models import Base


def build_engine(settings: Settings | None = None) -> AsyncEngine:
    settings = settings or get_settings()
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    # Configure bounded asyncpg pools; SQLite uses its own single-connection pool.
    if not settings.database_url.startswith("sqlite"):
        engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
        engine_kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
        engine_kwargs["pool_timeout"] = 30
        engine_kwargs["pool_recycle"] = 1800
    return create_async_engine(settings.database_url, **engine_kwargs)


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    # Local and test bootstrap only; production schemas are managed outside this package.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def is_missing_table_error(exc: Exception) -> bool:
    # Postgres reports undefined tables, SQLite reports "no such table".
    message = str(exc).lower()
    return "undefinedtable" in message or "does not exist" in message or "no such table" in message
