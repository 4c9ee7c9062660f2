from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import TYPE_CHECKING, Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from beacon.core.errors import BeaconError, SlackApiError
from beacon.domain.focus import (
    CleanupOutcome,
    FocusCleanupReport,
    FocusSessionWorkspace,
    SlackPreferencesView,
    WorkspaceCleanupResult,
)
from beacon.domain.jobs import JobHandle, JobPriority, JobType
from beacon.persistence.repos import focus_sessions as focus_repo
from beacon.providers.slack_workspace import (
    ALREADY_CLEARED_CODES,
    SlackWorkspaceClient,
    is_retryable_slack_error,
)
from beacon.services.resilience import RetryPolicy, retry_async
from beacon.services.security.tokens import TokenCipher
from beacon.services.telemetry import increment_counter

if TYPE_CHECKING:
    from beacon.services.jobs.scheduler import JobScheduler


logger = logging.getLogger(__name__)

ACTIVITY_STATUS_CLEARED = "status_cleared"
ACTIVITY_DND_DISABLED = "dnd_disabled"
ACTIVITY_CLEANUP_ERROR = "cleanup_error"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def cleanup_job_id(session_id: str) -> str:
    # Stable id so rescheduling the same session never queues a second cleanup.
    return f"focus-cleanup:{session_id}"


class FocusCleanupService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        slack: SlackWorkspaceClient,
        cipher: TokenCipher,
        *,
        retry_policy: RetryPolicy,
        buffer_s: int = 60,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._slack = slack
        self._cipher = cipher
        self._retry_policy = retry_policy
        self._buffer = timedelta(seconds=max(0, buffer_s))
        self._clock = clock

    async def schedule(
        self,
        scheduler: "JobScheduler",
        *,
        session_id: str,
        user_id: str,
        duration_minutes: int,
    ) -> JobHandle:
        # Delayed one-off job; becomes visible when the focus session should end.
        handle = await scheduler.trigger_once(
            JobType.SLACK_CLEANUP_DND,
            {"session_id": session_id, "user_id": user_id},
            priority=JobPriority.NORMAL,
            delay=timedelta(minutes=max(0, duration_minutes)),
            job_id=cleanup_job_id(session_id),
        )
        logger.info(
            "focus_cleanup_scheduled session_id=%s user_id=%s delay_min=%s enqueued=%s",
            session_id,
            user_id,
            duration_minutes,
            handle.enqueued,
        )
        return handle

    async def cleanup(self, session_id: str, user_id: str) -> FocusCleanupReport:
        now = self._clock()
        async with self._session_factory() as session:
            focus = await focus_repo.get_focus_session(session, session_id=session_id, user_id=user_id)
            if focus is None:
                logger.info("focus_cleanup_skipped session_id=%s reason=not_found", session_id)
                return FocusCleanupReport(session_id=session_id, outcome=CleanupOutcome.NOT_FOUND)
            if not focus.is_active:
                logger.info("focus_cleanup_skipped session_id=%s reason=already_inactive", session_id)
                return FocusCleanupReport(session_id=session_id, outcome=CleanupOutcome.ALREADY_INACTIVE)
            # Scheduling jitter can fire the job slightly early; only the buffer is tolerated.
            if now < focus.expires_at - self._buffer:
                logger.info(
                    "focus_cleanup_skipped session_id=%s reason=not_expired expires_at=%s",
                    session_id,
                    focus.expires_at.isoformat(),
                )
                return FocusCleanupReport(session_id=session_id, outcome=CleanupOutcome.NOT_EXPIRED)
            preferences = await focus_repo.get_preferences(session, user_id=user_id)

        results: list[WorkspaceCleanupResult] = []
        if preferences.is_enabled:
            for workspace in focus.workspaces:
                results.append(await self._cleanup_workspace(focus.session_id, user_id, workspace, preferences))
        else:
            logger.info("focus_cleanup_reverts_skipped session_id=%s reason=integration_disabled", session_id)

        async with self._session_factory() as session:
            ended = await focus_repo.end_focus_session(session, session_id=session_id, end_time=now)
        increment_counter("focus_sessions_cleaned_total")
        logger.info(
            "focus_cleanup_complete session_id=%s workspaces=%s failed=%s ended=%s",
            session_id,
            len(results),
            sum(1 for item in results if item.error),
            ended,
        )
        return FocusCleanupReport(session_id=session_id, outcome=CleanupOutcome.CLEANED, workspaces=results)

    async def _revert(self, name: str, action: Callable[[], Awaitable[None]]) -> None:
        try:
            await retry_async(action, policy=self._retry_policy, retryable=is_retryable_slack_error, name=name)
        except SlackApiError as exc:
            if exc.code in ALREADY_CLEARED_CODES:
                logger.info("focus_cleanup_already_cleared action=%s code=%s", name, exc.code)
                return
            raise

    async def _cleanup_workspace(
        self,
        session_id: str,
        user_id: str,
        workspace: FocusSessionWorkspace,
        preferences: SlackPreferencesView,
    ) -> WorkspaceCleanupResult:
        clear_status = workspace.status_updated and preferences.auto_status_update
        end_dnd = workspace.dnd_enabled and preferences.auto_dnd
        if not clear_status and not end_dnd:
            return WorkspaceCleanupResult(workspace_id=workspace.workspace_id)

        status_cleared = False
        dnd_ended = False
        try:
            if not workspace.access_token_encrypted:
                raise BeaconError("no active Slack connection for workspace")
            token = self._cipher.decrypt(workspace.access_token_encrypted)
            details = {"session_id": session_id, "cleanup_type": "expired"}
            if clear_status:
                await self._revert("slack.clear_status", lambda: self._slack.clear_status(token))
                status_cleared = True
                await self._log_activity(session_id, user_id, workspace.workspace_id, ACTIVITY_STATUS_CLEARED, details)
            if end_dnd:
                await self._revert("slack.end_dnd", lambda: self._slack.end_dnd(token))
                dnd_ended = True
                await self._log_activity(session_id, user_id, workspace.workspace_id, ACTIVITY_DND_DISABLED, details)
        except BeaconError as exc:
            # One workspace failing never blocks its siblings.
            error_type = exc.details.type if isinstance(exc, SlackApiError) else type(exc).__name__
            logger.warning(
                "focus_cleanup_workspace_failed session_id=%s workspace_id=%s error_type=%s error=%s",
                session_id,
                workspace.workspace_id,
                error_type,
                exc,
            )
            increment_counter("focus_cleanup_workspace_failures_total")
            await self._log_activity(
                session_id,
                user_id,
                workspace.workspace_id,
                ACTIVITY_CLEANUP_ERROR,
                {"session_id": session_id, "action": "cleanup_expired", "error_type": error_type},
                success=False,
                error=str(exc),
            )
            return WorkspaceCleanupResult(
                workspace_id=workspace.workspace_id,
                status_cleared=status_cleared,
                dnd_ended=dnd_ended,
                error=str(exc),
            )
        return WorkspaceCleanupResult(
            workspace_id=workspace.workspace_id,
            status_cleared=status_cleared,
            dnd_ended=dnd_ended,
        )

    async def _log_activity(
        self,
        session_id: str,
        user_id: str,
        workspace_id: str,
        activity_type: str,
        details: dict,
        *,
        success: bool = True,
        error: str | None = None,
    ) -> None:
        # Activity rows are an audit trail; a failed write never blocks the remaining reverts.
        try:
            async with self._session_factory() as session:
                await focus_repo.record_activity(
                    session,
                    session_id=session_id,
                    user_id=user_id,
                    workspace_id=workspace_id,
                    activity_type=activity_type,
                    details=details,
                    success=success,
                    error=error,
                )
        except SQLAlchemyError as exc:
            increment_counter("focus_cleanup_activity_log_failures_total")
            logger.warning(
                "focus_cleanup_activity_log_failed session_id=%s workspace_id=%s activity=%s error=%s",
                session_id,
                workspace_id,
                activity_type,
                exc,
            )
