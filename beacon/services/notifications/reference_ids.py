from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

from beacon.domain.notifications import (
    NewUserRecord,
    NotificationType,
    PaidUserRecord,
    UserRecord,
    type_value,
)


ReferenceIdFn = Callable[[UserRecord], str]


def epoch_ms(value: datetime) -> int:
    # Naive datetimes are treated as UTC so the same instant always yields the same id.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def paid_reference_id(user_id: str, *, paid_at: datetime | None, license_id: str | None) -> str:
    # The license id is the stablest handle on a purchase; fall back to the payment instant.
    if license_id:
        return f"paid_license_{license_id}"
    if paid_at is None:
        raise ValueError("paid reference id requires a license id or paid_at")
    return f"paid_{user_id}_{epoch_ms(paid_at)}"


def new_user_reference_id(user_id: str, *, created_at: datetime) -> str:
    return f"new_{user_id}_{epoch_ms(created_at)}"


def inactive_reference_id(user_id: str) -> str:
    # No time component: a user gets at most one inactivity notice per channel.
    return f"inactive_{user_id}"


def weekly_reference_id(when: datetime) -> str:
    iso_year, iso_week, _ = when.isocalendar()
    return f"weekly_{iso_year}_W{iso_week:02d}"


def build_reference_id(
    notification_type: NotificationType | str,
    user: UserRecord,
    *,
    data: dict | None = None,
    now: datetime | None = None,
) -> str:
    # Derive the dedupe key from event facts so overlapping check windows collapse to one id.
    data = data or {}
    current = now or datetime.now(timezone.utc)
    kind = type_value(notification_type)
    if kind == NotificationType.PAID_USER.value:
        license_id = getattr(user, "license_id", None) or data.get("license_id")
        paid_at = getattr(user, "paid_at", None) or data.get("paid_at")
        if license_id or paid_at is not None:
            return paid_reference_id(user.id, paid_at=paid_at, license_id=license_id)
    elif kind == NotificationType.NEW_USER.value:
        created_at = getattr(user, "created_at", None) or data.get("created_at")
        if created_at is not None:
            return new_user_reference_id(user.id, created_at=created_at)
    elif kind == NotificationType.INACTIVE_USER.value:
        return inactive_reference_id(user.id)
    elif kind == NotificationType.WEEKLY_REPORT.value:
        return weekly_reference_id(current)
    return f"{kind}_{user.id}_{epoch_ms(current)}"


def reference_id_for_record(notification_type: NotificationType | str) -> ReferenceIdFn:
    # Dispatcher-friendly wrapper bound to one event type.
    def _reference_id(user: UserRecord) -> str:
        return build_reference_id(notification_type, user)

    return _reference_id


def paid_record_reference_id(user: PaidUserRecord) -> str:
    return paid_reference_id(user.id, paid_at=user.paid_at, license_id=user.license_id)


def new_record_reference_id(user: NewUserRecord) -> str:
    return new_user_reference_id(user.id, created_at=user.created_at)


def inactive_record_reference_id(user: UserRecord) -> str:
    return inactive_reference_id(user.id)
