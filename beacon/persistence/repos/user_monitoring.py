from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from beacon.domain.models import License, User, UserProfile
from beacon.domain.notifications import InactiveUserRecord, NewUserRecord, PaidUserRecord


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


async def list_new_users(
    session: AsyncSession,
    *,
    within_minutes: int,
    now: datetime | None = None,
) -> list[NewUserRecord]:
    cutoff = (now or _utc_now()) - timedelta(minutes=within_minutes)
    result = await session.execute(
        select(User.id, User.email, User.created_at)
        .where(User.created_at >= cutoff)
        .order_by(User.created_at.desc())
    )
    return [
        NewUserRecord(id=user_id, email=email, created_at=_as_utc(created_at))
        for user_id, email, created_at in result.all()
    ]


async def list_paid_users(
    session: AsyncSession,
    *,
    within_minutes: int,
    now: datetime | None = None,
) -> list[PaidUserRecord]:
    # Only active licenses backed by a real payment count as paid conversions.
    cutoff = (now or _utc_now()) - timedelta(minutes=within_minutes)
    result = await session.execute(
        select(License, User.email)
        .join(User, User.id == License.user_id)
        .where(
            License.purchase_date >= cutoff,
            License.stripe_payment_id.is_not(None),
            License.stripe_payment_id != "",
            License.status == "active",
        )
        .order_by(License.purchase_date.desc())
    )
    records: list[PaidUserRecord] = []
    for license_row, email in result.all():
        records.append(
            PaidUserRecord(
                id=license_row.user_id,
                email=email,
                paid_at=_as_utc(license_row.purchase_date),
                license_id=license_row.id,
                license_type=license_row.license_type or "paid",
                stripe_customer_id=license_row.stripe_customer_id,
                stripe_payment_id=license_row.stripe_payment_id,
            )
        )
    return records


async def list_inactive_users(
    session: AsyncSession,
    *,
    inactive_days: int,
    now: datetime | None = None,
) -> list[InactiveUserRecord]:
    current = now or _utc_now()
    cutoff = current - timedelta(days=inactive_days)
    result = await session.execute(
        select(UserProfile.id, User.email, UserProfile.last_check_in)
        .join(User, User.id == UserProfile.id)
        .where(UserProfile.last_check_in.is_not(None), UserProfile.last_check_in <= cutoff)
        .order_by(UserProfile.last_check_in.asc())
    )
    records: list[InactiveUserRecord] = []
    for user_id, email, last_check_in in result.all():
        last_seen = _as_utc(last_check_in)
        records.append(
            InactiveUserRecord(
                id=user_id,
                email=email,
                last_check_in=last_seen,
                days_inactive=max(0, (current - last_seen).days),
            )
        )
    return records


async def count_users(session: AsyncSession) -> int:
    result = await session.execute(select(func.count()).select_from(User))
    return int(result.scalar_one())


async def mark_offline_users(
    session: AsyncSession,
    *,
    offline_after_minutes: int,
    now: datetime | None = None,
) -> int:
    # Flip stale "online" profiles to offline; returns the number of rows changed.
    current = now or _utc_now()
    cutoff = current - timedelta(minutes=offline_after_minutes)
    result = await session.execute(
        update(UserProfile)
        .where(UserProfile.last_check_in < cutoff, UserProfile.online_status == "online")
        .values(online_status="offline", updated_at=current)
    )
    await session.commit()
    return int(result.rowcount or 0)
