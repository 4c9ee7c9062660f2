from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union


class NotificationType(str, Enum):
    PAID_USER = "paid_user"
    NEW_USER = "new_user"
    INACTIVE_USER = "inactive_user"
    WEEKLY_REPORT = "weekly_report"
    PAYMENT_FAILED = "payment_failed"
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"


class NotificationChannel(str, Enum):
    DISCORD = "discord"
    EMAIL = "email"
    SLACK = "slack"
    SMS = "sms"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BaseUserRecord:
    id: str
    email: str | None


@dataclass(frozen=True)
class NewUserRecord(BaseUserRecord):
    created_at: datetime


@dataclass(frozen=True)
class PaidUserRecord(BaseUserRecord):
    paid_at: datetime
    license_id: str | None = None
    license_type: str | None = None
    stripe_customer_id: str | None = None
    stripe_payment_id: str | None = None


@dataclass(frozen=True)
class InactiveUserRecord(BaseUserRecord):
    last_check_in: datetime | None
    days_inactive: int | None = None


UserRecord = Union[BaseUserRecord, NewUserRecord, PaidUserRecord, InactiveUserRecord]


@dataclass(frozen=True)
class NotificationPayload:
    type: NotificationType | str
    user: UserRecord
    reference_id: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def type_value(self) -> str:
        return self.type.value if isinstance(self.type, NotificationType) else str(self.type)


@dataclass(frozen=True)
class NotificationResult:
    success: bool
    message: str
    user_id: str
    reference_id: str
    channel: str
    notification_id: str | None = None
    error: str | None = None
    timestamp: datetime = field(default_factory=_utc_now)

    def as_provider_result(self) -> dict[str, Any]:
        # Shape stored in the ledger's provider_result column.
        return {
            "success": self.success,
            "message": self.message,
            "notification_id": self.notification_id,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class NotificationRecord:
    user_id: str
    notification_type: str
    reference_id: str
    channel: str
    sent_at: datetime
    provider_result: dict[str, Any] | None = None
    data: dict[str, Any] | None = None
    id: int | None = None


@dataclass
class ChannelDispatchResult:
    sent: int = 0
    failed: int = 0
    already_notified: int = 0


@dataclass
class DispatchSummary:
    total_found: int = 0
    new_notifications: int = 0
    failed_notifications: int = 0
    channel_results: dict[str, ChannelDispatchResult] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "totalFound": self.total_found,
            "newNotifications": self.new_notifications,
            "failedNotifications": self.failed_notifications,
            "channelResults": {
                channel: {
                    "sent": result.sent,
                    "failed": result.failed,
                    "alreadyNotified": result.already_notified,
                }
                for channel, result in self.channel_results.items()
            },
        }


def channel_value(channel: NotificationChannel | str) -> str:
    return channel.value if isinstance(channel, NotificationChannel) else str(channel)


def type_value(notification_type: NotificationType | str) -> str:
    return notification_type.value if isinstance(notification_type, NotificationType) else str(notification_type)
