from __future__ import annotations

from dataclasses import dataclass
import logging

from arq.connections import RedisSettings
import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from beacon.core.config import Settings, get_settings
from beacon.persistence.db import build_engine, build_sessionmaker
from beacon.providers.slack_workspace import SlackWorkspaceClient
from beacon.services.focus_cleanup import FocusCleanupService
from beacon.services.jobs.arq_backend import ArqJobBackend
from beacon.services.jobs.backends import InProcessJobBackend, JobBackend
from beacon.services.jobs.processors import (
    MonitoringProcessors,
    register_cleanup_jobs,
    register_default_schedules,
    register_monitoring_jobs,
)
from beacon.services.jobs.scheduler import JobScheduler
from beacon.services.notifications.config import notification_config_from_settings
from beacon.services.notifications.dispatcher import IdempotentDispatcher
from beacon.services.notifications.engine import NotificationEngine
from beacon.services.notifications.ledger import SqlNotificationLedger
from beacon.services.resilience import job_retry_policy, slack_retry_policy
from beacon.services.security.tokens import TokenCipher


logger = logging.getLogger(__name__)


def build_job_backend(settings: Settings, *, queue_name: str, concurrency: int) -> JobBackend:
    mode = (settings.job_backend or "queue").lower()
    if mode == "inline":
        return InProcessJobBackend(
            queue_name,
            concurrency=concurrency,
            keep_completed=settings.job_keep_completed,
            keep_failed=settings.job_keep_failed,
        )
    if mode != "queue":
        raise ValueError(f"Unsupported job backend: {mode}")
    return ArqJobBackend(
        queue_name,
        redis_settings=RedisSettings.from_dsn(settings.redis_url),
        concurrency=concurrency,
        max_tries=settings.job_max_attempts,
        keep_result_s=settings.job_keep_result_s,
        job_timeout_s=settings.job_timeout_s,
        priority_lead_ms=settings.job_priority_lead_ms,
    )


@dataclass
class ServiceContainer:
    settings: Settings
    db_engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    http_client: httpx.AsyncClient
    ledger: SqlNotificationLedger
    notifications: NotificationEngine
    dispatcher: IdempotentDispatcher
    monitoring_scheduler: JobScheduler
    cleanup_scheduler: JobScheduler | None = None
    focus_cleanup: FocusCleanupService | None = None

    def schedulers(self) -> list[JobScheduler]:
        return [item for item in (self.monitoring_scheduler, self.cleanup_scheduler) if item is not None]

    async def start(self) -> None:
        for scheduler in self.schedulers():
            await scheduler.start()

    async def aclose(self) -> None:
        # Stop consuming jobs before tearing down the clients those jobs use.
        for scheduler in self.schedulers():
            await scheduler.shutdown()
        await self.http_client.aclose()
        await self.db_engine.dispose()


def build_container(
    settings: Settings | None = None,
    *,
    db_engine: AsyncEngine | None = None,
    http_client: httpx.AsyncClient | None = None,
    register_schedules: bool = True,
) -> ServiceContainer:
    settings = settings or get_settings()
    db_engine = db_engine or build_engine(settings)
    session_factory = build_sessionmaker(db_engine)
    http_client = http_client or httpx.AsyncClient(timeout=settings.ext_call_timeout_ms / 1000.0)

    ledger = SqlNotificationLedger(session_factory, fail_mode=settings.ledger_fail_mode)
    notifications = NotificationEngine(notification_config_from_settings(settings), client=http_client)
    dispatcher = IdempotentDispatcher(notifications, ledger, throttle_ms=settings.notify_batch_throttle_ms)

    policy = job_retry_policy(settings)
    monitoring_scheduler = JobScheduler(
        build_job_backend(
            settings,
            queue_name=settings.monitoring_queue_name,
            concurrency=settings.monitoring_concurrency,
        ),
        policy=policy,
    )
    register_monitoring_jobs(monitoring_scheduler, MonitoringProcessors(session_factory, dispatcher, settings))
    if register_schedules:
        register_default_schedules(monitoring_scheduler, settings)

    cleanup_scheduler: JobScheduler | None = None
    focus_cleanup: FocusCleanupService | None = None
    if settings.slack_cleanup_enabled and not settings.slack_token_encryption_key:
        logger.warning("focus_cleanup_disabled reason=missing_token_encryption_key")
    elif settings.slack_cleanup_enabled:
        focus_cleanup = FocusCleanupService(
            session_factory,
            SlackWorkspaceClient(base_url=settings.slack_api_base_url, client=http_client),
            TokenCipher.from_settings(settings),
            retry_policy=slack_retry_policy(settings),
            buffer_s=settings.focus_cleanup_buffer_s,
        )
        cleanup_scheduler = JobScheduler(
            build_job_backend(
                settings,
                queue_name=settings.cleanup_queue_name,
                concurrency=settings.cleanup_concurrency,
            ),
            policy=policy,
        )
        register_cleanup_jobs(cleanup_scheduler, focus_cleanup)
    else:
        logger.info("focus_cleanup_disabled reason=setting")

    return ServiceContainer(
        settings=settings,
        db_engine=db_engine,
        session_factory=session_factory,
        http_client=http_client,
        ledger=ledger,
        notifications=notifications,
        dispatcher=dispatcher,
        monitoring_scheduler=monitoring_scheduler,
        cleanup_scheduler=cleanup_scheduler,
        focus_cleanup=focus_cleanup,
    )
