from __future__ import annotations

import asyncio

import httpx
import pytest

from beacon.core.config import Settings
from beacon.domain.jobs import JobType
from beacon.services.container import build_container, build_job_backend
from beacon.services.jobs.arq_backend import ArqJobBackend
from beacon.services.jobs.backends import InProcessJobBackend
from beacon.workers.job_worker import run_workers


def _settings(**overrides) -> Settings:
    base = {
        "job_backend": "inline",
        "database_url": "sqlite+aiosqlite:///:memory:",
        "discord_enabled": False,
        "email_enabled": False,
    }
    base.update(overrides)
    return Settings(**base)


def test_backend_selection() -> None:
    inline = build_job_backend(_settings(), queue_name="user-monitoring", concurrency=2)
    queued = build_job_backend(_settings(job_backend="queue"), queue_name="user-monitoring", concurrency=2)

    assert isinstance(inline, InProcessJobBackend)
    assert isinstance(queued, ArqJobBackend)
    with pytest.raises(ValueError):
        build_job_backend(_settings(job_backend="celery"), queue_name="x", concurrency=1)


@pytest.mark.asyncio
async def test_container_wires_both_queues(db_engine) -> None:
    container = build_container(
        _settings(slack_token_encryption_key="secret"),
        db_engine=db_engine,
        http_client=httpx.AsyncClient(),
    )

    assert [scheduler.queue_name for scheduler in container.schedulers()] == ["user-monitoring", "slack-cleanup"]
    assert JobType.CHECK_NEW_USERS.value in container.monitoring_scheduler.registered_job_types()
    assert container.cleanup_scheduler.registered_job_types() == [JobType.SLACK_CLEANUP_DND.value]

    await container.start()
    await container.aclose()


@pytest.mark.asyncio
async def test_cleanup_queue_needs_encryption_key(db_engine) -> None:
    container = build_container(_settings(), db_engine=db_engine, http_client=httpx.AsyncClient())

    assert container.cleanup_scheduler is None
    assert container.focus_cleanup is None
    await container.aclose()


@pytest.mark.asyncio
async def test_worker_stops_on_event() -> None:
    stop = asyncio.Event()
    stop.set()

    await asyncio.wait_for(run_workers(_settings(slack_cleanup_enabled=False), stop=stop), timeout=5)
