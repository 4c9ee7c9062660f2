from __future__ import annotations

import asyncio

from beacon.core.logging import configure_logging
from beacon.persistence.db import build_engine, create_schema


async def init_db() -> None:
    # Create missing tables for local environments; existing tables are left untouched.
    configure_logging()
    engine = build_engine()
    try:
        await create_schema(engine)
    finally:
        await engine.dispose()
    print("schema_ready=true")


if __name__ == "__main__":
    asyncio.run(init_db())
