from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class JobType(str, Enum):
    CHECK_NEW_USERS = "check-new-users"
    CHECK_PAID_USERS = "check-paid-users"
    CHECK_INACTIVE_USERS = "check-inactive-users"
    CHECK_OFFLINE_USERS = "check-offline-users"
    HEARTBEAT = "heartbeat"
    SLACK_CLEANUP_DND = "slack-cleanup-dnd"


class JobPriority(IntEnum):
    LOW = 1
    NORMAL = 5
    HIGH = 10
    CRITICAL = 15


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EmptyJobData(BaseModel):
    # Monitoring checks take no input; reject stray keys so typos surface early.
    model_config = ConfigDict(extra="forbid")


class HeartbeatJobData(BaseModel):
    message: str = Field(default="heartbeat", max_length=200)


class FocusCleanupJobData(BaseModel):
    session_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)


@dataclass(frozen=True)
class JobResult:
    success: bool
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    processed_at: datetime = field(default_factory=_utc_now)

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "data": self.data,
            "processedAt": self.processed_at.isoformat(),
        }


@dataclass(frozen=True)
class JobRequest:
    queue_name: str
    job_type: str
    data: dict[str, Any]
    priority: int = JobPriority.NORMAL
    delay_ms: int | None = None
    job_id: str | None = None


@dataclass(frozen=True)
class JobHandle:
    job_id: str
    job_type: str
    queue_name: str
    # False when a job with the same id was already queued or finished.
    enqueued: bool = True


@dataclass(frozen=True)
class JobStats:
    waiting: int
    active: int
    completed: int
    failed: int

    def as_dict(self) -> dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
        }
