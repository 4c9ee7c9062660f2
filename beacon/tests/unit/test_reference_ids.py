from __future__ import annotations

from datetime import datetime, timedelta, timezone

from beacon.domain.notifications import (
    BaseUserRecord,
    InactiveUserRecord,
    NewUserRecord,
    NotificationType,
    PaidUserRecord,
)
from beacon.services.notifications.reference_ids import (
    build_reference_id,
    epoch_ms,
    paid_record_reference_id,
    weekly_reference_id,
)


PAID_AT = datetime(2025, 3, 4, 12, 30, tzinfo=timezone.utc)


def test_paid_reference_prefers_license_id() -> None:
    user = PaidUserRecord(id="u1", email="a@example.com", paid_at=PAID_AT, license_id="lic_9")
    assert build_reference_id(NotificationType.PAID_USER, user) == "paid_license_lic_9"
    assert paid_record_reference_id(user) == "paid_license_lic_9"


def test_paid_reference_falls_back_to_paid_at() -> None:
    user = PaidUserRecord(id="u1", email="a@example.com", paid_at=PAID_AT)
    assert build_reference_id("paid_user", user) == f"paid_u1_{epoch_ms(PAID_AT)}"


def test_reference_ids_ignore_wall_clock() -> None:
    created = datetime(2025, 1, 1, 8, 0, tzinfo=timezone.utc)
    user = NewUserRecord(id="u2", email="b@example.com", created_at=created)
    first = build_reference_id(NotificationType.NEW_USER, user, now=created + timedelta(minutes=1))
    second = build_reference_id(NotificationType.NEW_USER, user, now=created + timedelta(minutes=9))
    assert first == second == f"new_u2_{epoch_ms(created)}"


def test_naive_timestamps_are_read_as_utc() -> None:
    aware = datetime(2025, 1, 1, 8, 0, tzinfo=timezone.utc)
    assert epoch_ms(aware.replace(tzinfo=None)) == epoch_ms(aware)


def test_inactive_reference_has_no_time_component() -> None:
    user = InactiveUserRecord(id="u3", email=None, last_check_in=PAID_AT, days_inactive=9)
    assert build_reference_id(NotificationType.INACTIVE_USER, user) == "inactive_u3"


def test_weekly_reference_collapses_within_iso_week() -> None:
    monday = datetime(2025, 1, 6, 0, 5, tzinfo=timezone.utc)
    sunday = datetime(2025, 1, 12, 23, 55, tzinfo=timezone.utc)
    assert weekly_reference_id(monday) == weekly_reference_id(sunday) == "weekly_2025_W02"
    user = BaseUserRecord(id="u4", email="c@example.com")
    other = BaseUserRecord(id="u5", email="d@example.com")
    assert build_reference_id("weekly_report", user, now=monday) == build_reference_id(
        "weekly_report", other, now=sunday
    )


def test_weekly_reference_uses_iso_year_at_year_boundary() -> None:
    # 2024-12-30 belongs to ISO week 1 of 2025.
    assert weekly_reference_id(datetime(2024, 12, 30, tzinfo=timezone.utc)) == "weekly_2025_W01"


def test_unknown_type_falls_back_to_timestamp() -> None:
    now = datetime(2025, 5, 1, tzinfo=timezone.utc)
    user = BaseUserRecord(id="u6", email="e@example.com")
    assert build_reference_id("payment_failed", user, now=now) == f"payment_failed_u6_{epoch_ms(now)}"
