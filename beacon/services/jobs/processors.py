from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from beacon.core.config import Settings
from beacon.domain.jobs import (
    EmptyJobData,
    FocusCleanupJobData,
    HeartbeatJobData,
    JobPriority,
    JobResult,
    JobType,
)
from beacon.domain.notifications import NotificationType
from beacon.persistence.repos import user_monitoring as monitoring_repo
from beacon.services.focus_cleanup import FocusCleanupService
from beacon.services.jobs.scheduler import JobScheduler
from beacon.services.notifications.dispatcher import IdempotentDispatcher
from beacon.services.notifications.reference_ids import (
    inactive_record_reference_id,
    new_record_reference_id,
    paid_record_reference_id,
)


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MonitoringProcessors:
    # Advisory checks: data-access failures become success=False results for the retry policy.
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: IdempotentDispatcher,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._settings = settings
        self._clock = clock

    async def check_new_users(self, _: EmptyJobData) -> JobResult:
        window = self._settings.new_user_lookback_minutes
        try:
            async with self._session_factory() as session:
                users = await monitoring_repo.list_new_users(session, within_minutes=window, now=self._clock())
        except SQLAlchemyError as exc:
            logger.warning("new_user_check_failed error=%s", exc)
            return JobResult(success=False, message=f"Failed to check new users: {exc}")
        summary = await self._dispatcher.dispatch(users, NotificationType.NEW_USER, new_record_reference_id)
        return JobResult(
            success=True,
            message=f"Processed {summary.total_found} new users, sent {summary.new_notifications} notifications",
            data={"windowMinutes": window, **summary.as_dict()},
        )

    async def check_paid_users(self, _: EmptyJobData) -> JobResult:
        window = self._settings.paid_user_lookback_minutes
        try:
            async with self._session_factory() as session:
                users = await monitoring_repo.list_paid_users(session, within_minutes=window, now=self._clock())
        except SQLAlchemyError as exc:
            logger.warning("paid_user_check_failed error=%s", exc)
            return JobResult(success=False, message=f"Failed to check paid users: {exc}")
        summary = await self._dispatcher.dispatch(users, NotificationType.PAID_USER, paid_record_reference_id)
        return JobResult(
            success=True,
            message=f"Processed {summary.total_found} paid users, sent {summary.new_notifications} notifications",
            data={"windowMinutes": window, **summary.as_dict()},
        )

    async def check_inactive_users(self, _: EmptyJobData) -> JobResult:
        threshold = self._settings.inactive_user_threshold_days
        try:
            async with self._session_factory() as session:
                users = await monitoring_repo.list_inactive_users(session, inactive_days=threshold, now=self._clock())
                total_users = await monitoring_repo.count_users(session)
        except SQLAlchemyError as exc:
            logger.warning("inactive_user_check_failed error=%s", exc)
            return JobResult(success=False, message=f"Failed to check inactive users: {exc}")
        summary = await self._dispatcher.dispatch(users, NotificationType.INACTIVE_USER, inactive_record_reference_id)
        return JobResult(
            success=True,
            message=f"Found {summary.total_found} inactive users out of {total_users}",
            data={"thresholdDays": threshold, "totalUsers": total_users, **summary.as_dict()},
        )

    async def check_offline_users(self, _: EmptyJobData) -> JobResult:
        minutes = self._settings.offline_after_minutes
        try:
            async with self._session_factory() as session:
                affected = await monitoring_repo.mark_offline_users(
                    session,
                    offline_after_minutes=minutes,
                    now=self._clock(),
                )
        except SQLAlchemyError as exc:
            logger.warning("offline_user_sweep_failed error=%s", exc)
            return JobResult(success=False, message=f"Failed to update offline users: {exc}")
        return JobResult(success=True, message=f"Marked {affected} users offline", data={"affectedRows": affected})

    async def heartbeat(self, payload: HeartbeatJobData) -> JobResult:
        logger.info("job_heartbeat message=%s", payload.message)
        return JobResult(success=True, message=payload.message)


class FocusCleanupProcessor:
    def __init__(self, cleanup: FocusCleanupService) -> None:
        self._cleanup = cleanup

    async def __call__(self, payload: FocusCleanupJobData) -> JobResult:
        # Errors outside per-workspace handling propagate so the queue retries the job.
        report = await self._cleanup.cleanup(payload.session_id, payload.user_id)
        return JobResult(
            success=True,
            message=f"Focus session {payload.session_id}: {report.outcome.value}",
            data={
                "sessionId": payload.session_id,
                "outcome": report.outcome.value,
                "workspaces": len(report.workspaces),
                "failedWorkspaces": report.failed_workspaces,
            },
        )


def register_monitoring_jobs(scheduler: JobScheduler, processors: MonitoringProcessors) -> None:
    scheduler.register_processor(JobType.CHECK_NEW_USERS, processors.check_new_users)
    scheduler.register_processor(JobType.CHECK_PAID_USERS, processors.check_paid_users)
    scheduler.register_processor(JobType.CHECK_INACTIVE_USERS, processors.check_inactive_users)
    scheduler.register_processor(JobType.CHECK_OFFLINE_USERS, processors.check_offline_users)
    scheduler.register_processor(JobType.HEARTBEAT, processors.heartbeat, HeartbeatJobData)


def register_default_schedules(scheduler: JobScheduler, settings: Settings) -> None:
    # Stable ids keep re-registration on every boot a no-op.
    scheduler.register_recurring(
        JobType.CHECK_NEW_USERS,
        settings.new_user_check_cron,
        JobPriority.NORMAL,
        job_id="recurring:check-new-users",
    )
    scheduler.register_recurring(
        JobType.CHECK_PAID_USERS,
        settings.paid_user_check_cron,
        JobPriority.NORMAL,
        job_id="recurring:check-paid-users",
    )
    scheduler.register_recurring(
        JobType.CHECK_INACTIVE_USERS,
        settings.inactive_user_check_cron,
        JobPriority.HIGH,
        job_id="recurring:check-inactive-users",
    )
    scheduler.register_recurring(
        JobType.CHECK_OFFLINE_USERS,
        settings.offline_user_sweep_cron,
        JobPriority.LOW,
        job_id="recurring:check-offline-users",
    )
    if settings.heartbeat_job_enabled:
        scheduler.register_recurring(
            JobType.HEARTBEAT,
            settings.heartbeat_cron,
            JobPriority.LOW,
            job_id="recurring:heartbeat",
        )


def register_cleanup_jobs(scheduler: JobScheduler, cleanup: FocusCleanupService) -> None:
    scheduler.register_processor(JobType.SLACK_CLEANUP_DND, FocusCleanupProcessor(cleanup), FocusCleanupJobData)
