from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from beacon.core.config import get_settings
from beacon.persistence.db import build_sessionmaker, create_schema
from beacon.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Settings and counters are process-wide; isolate them per test.
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def db_engine():
    # One shared in-memory SQLite connection so every session sees the same tables.
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_sessionmaker(db_engine)
