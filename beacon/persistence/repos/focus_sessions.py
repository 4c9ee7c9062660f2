from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from beacon.domain.focus import FocusSession, FocusSessionWorkspace, SlackPreferencesView
from beacon.domain.models import (
    SlackFocusSession,
    SlackFocusSessionWorkspace,
    SlackPreferences,
    SlackSessionActivity,
    SlackUserConnection,
    SlackWorkspace,
)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


async def get_focus_session(session: AsyncSession, *, session_id: str, user_id: str) -> FocusSession | None:
    # Load the session regardless of state so callers can tell "missing" from "already ended".
    row = await session.scalar(
        select(SlackFocusSession).where(
            SlackFocusSession.session_id == session_id,
            SlackFocusSession.user_id == user_id,
        )
    )
    if row is None:
        return None
    workspaces = await list_session_workspaces(session, session_id=session_id, user_id=user_id)
    return FocusSession(
        session_id=row.session_id,
        user_id=row.user_id,
        start_time=_as_utc(row.start_time),
        duration_minutes=int(row.duration_minutes or 0),
        is_active=bool(row.is_active),
        end_time=_as_utc(row.end_time),
        workspaces=tuple(workspaces),
    )


async def list_session_workspaces(
    session: AsyncSession,
    *,
    session_id: str,
    user_id: str,
) -> list[FocusSessionWorkspace]:
    # Outer join the connection so a disconnected workspace still shows up with no token.
    result = await session.execute(
        select(
            SlackFocusSessionWorkspace,
            SlackWorkspace.team_name,
            SlackUserConnection.access_token_encrypted,
        )
        .join(SlackWorkspace, SlackWorkspace.id == SlackFocusSessionWorkspace.workspace_id)
        .outerjoin(
            SlackUserConnection,
            and_(
                SlackUserConnection.workspace_id == SlackFocusSessionWorkspace.workspace_id,
                SlackUserConnection.user_id == user_id,
                SlackUserConnection.is_active.is_(True),
            ),
        )
        .where(SlackFocusSessionWorkspace.session_id == session_id)
        .order_by(SlackFocusSessionWorkspace.id.asc())
    )
    return [
        FocusSessionWorkspace(
            workspace_id=row.workspace_id,
            team_name=team_name,
            status_updated=bool(row.status_updated),
            dnd_enabled=bool(row.dnd_enabled),
            access_token_encrypted=token,
        )
        for row, team_name, token in result.all()
    ]


async def get_preferences(session: AsyncSession, *, user_id: str) -> SlackPreferencesView:
    # Missing preferences mean the defaults: integration on, both automations on.
    row = await session.get(SlackPreferences, user_id)
    if row is None:
        return SlackPreferencesView()
    return SlackPreferencesView(
        is_enabled=bool(row.is_enabled),
        auto_status_update=bool(row.auto_status_update),
        auto_dnd=bool(row.auto_dnd),
    )


async def end_focus_session(session: AsyncSession, *, session_id: str, end_time: datetime) -> bool:
    # Only an active session transitions; returns False when another worker already ended it.
    result = await session.execute(
        update(SlackFocusSession)
        .where(SlackFocusSession.session_id == session_id, SlackFocusSession.is_active.is_(True))
        .values(is_active=False, end_time=end_time)
    )
    await session.commit()
    return bool(result.rowcount)


async def record_activity(
    session: AsyncSession,
    *,
    session_id: str,
    user_id: str,
    workspace_id: str | None,
    activity_type: str,
    details: dict[str, Any] | None = None,
    success: bool = True,
    error: str | None = None,
) -> None:
    session.add(
        SlackSessionActivity(
            session_id=session_id,
            user_id=user_id,
            workspace_id=workspace_id,
            activity_type=activity_type,
            details=details,
            success=success,
            error=error,
        )
    )
    await session.commit()


async def list_activities(session: AsyncSession, *, session_id: str) -> list[SlackSessionActivity]:
    result = await session.execute(
        select(SlackSessionActivity)
        .where(SlackSessionActivity.session_id == session_id)
        .order_by(SlackSessionActivity.id.asc())
    )
    return list(result.scalars().all())
