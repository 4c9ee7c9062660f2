from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum


class CleanupOutcome(str, Enum):
    NOT_FOUND = "not_found"
    ALREADY_INACTIVE = "already_inactive"
    NOT_EXPIRED = "not_expired"
    CLEANED = "cleaned"


@dataclass(frozen=True)
class FocusSessionWorkspace:
    workspace_id: str
    team_name: str | None
    status_updated: bool
    dnd_enabled: bool
    # None when the user has no active connection to the workspace anymore.
    access_token_encrypted: str | None


@dataclass(frozen=True)
class FocusSession:
    session_id: str
    user_id: str
    start_time: datetime
    duration_minutes: int
    is_active: bool
    end_time: datetime | None = None
    workspaces: tuple[FocusSessionWorkspace, ...] = ()

    @property
    def expires_at(self) -> datetime:
        return self.start_time + timedelta(minutes=self.duration_minutes or 0)


@dataclass(frozen=True)
class SlackPreferencesView:
    is_enabled: bool = True
    auto_status_update: bool = True
    auto_dnd: bool = True


@dataclass(frozen=True)
class WorkspaceCleanupResult:
    workspace_id: str
    status_cleared: bool = False
    dnd_ended: bool = False
    error: str | None = None


@dataclass(frozen=True)
class FocusCleanupReport:
    session_id: str
    outcome: CleanupOutcome
    workspaces: list[WorkspaceCleanupResult] = field(default_factory=list)

    @property
    def failed_workspaces(self) -> int:
        return sum(1 for item in self.workspaces if item.error is not None)
