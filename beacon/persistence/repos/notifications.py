from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy import and_, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from beacon.domain.models import UserNotification
from beacon.domain.notifications import NotificationRecord


_DELIVERY_KEY = ["user_id", "notification_type", "reference_id", "channel"]


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; every stored timestamp is UTC.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def to_record(row: UserNotification) -> NotificationRecord:
    return NotificationRecord(
        id=row.id,
        user_id=row.user_id,
        notification_type=row.notification_type,
        reference_id=row.reference_id,
        channel=row.channel,
        sent_at=_as_utc(row.sent_at),
        provider_result=row.provider_result,
        data=row.data,
    )


async def get_delivery(
    session: AsyncSession,
    *,
    user_id: str,
    notification_type: str,
    reference_id: str,
    channel: str,
) -> UserNotification | None:
    result = await session.execute(
        select(UserNotification).where(
            UserNotification.user_id == user_id,
            UserNotification.notification_type == notification_type,
            UserNotification.reference_id == reference_id,
            UserNotification.channel == channel,
        )
    )
    return result.scalar_one_or_none()


async def find_delivered(
    session: AsyncSession,
    *,
    candidates: Mapping[str, str],
    notification_type: str,
    channel: str,
) -> set[str]:
    # One OR-of-AND query covering every (user_id, reference_id) pair in the batch.
    if not candidates:
        return set()
    pair_match = or_(
        *(
            and_(UserNotification.user_id == user_id, UserNotification.reference_id == reference_id)
            for user_id, reference_id in candidates.items()
        )
    )
    result = await session.execute(
        select(UserNotification.user_id, UserNotification.reference_id).where(
            UserNotification.notification_type == notification_type,
            UserNotification.channel == channel,
            pair_match,
        )
    )
    delivered: set[str] = set()
    for user_id, reference_id in result.all():
        if candidates.get(user_id) == reference_id:
            delivered.add(user_id)
    return delivered


async def insert_delivery(
    session: AsyncSession,
    *,
    user_id: str,
    notification_type: str,
    reference_id: str,
    channel: str,
    provider_result: dict[str, Any] | None,
    data: dict[str, Any] | None,
    sent_at: datetime | None = None,
) -> tuple[UserNotification, bool]:
    # Insert-or-ignore on the delivery key; returns the stored row and whether this call created it.
    values = {
        "user_id": user_id,
        "notification_type": notification_type,
        "reference_id": reference_id,
        "channel": channel,
        "provider_result": provider_result,
        "data": data,
        "sent_at": sent_at or datetime.now(timezone.utc),
    }
    dialect = session.bind.dialect.name if session.bind is not None else "postgresql"
    insert_fn = sqlite_insert if dialect == "sqlite" else pg_insert
    stmt = insert_fn(UserNotification).values(**values).on_conflict_do_nothing(index_elements=_DELIVERY_KEY)
    result = await session.execute(stmt)
    await session.commit()
    row = await get_delivery(
        session,
        user_id=user_id,
        notification_type=notification_type,
        reference_id=reference_id,
        channel=channel,
    )
    if row is None:
        raise LookupError("notification delivery row missing after insert")
    return row, bool(result.rowcount)


async def list_deliveries_for_user(
    session: AsyncSession,
    *,
    user_id: str,
    notification_type: str | None = None,
) -> list[UserNotification]:
    stmt = select(UserNotification).where(UserNotification.user_id == user_id)
    if notification_type is not None:
        stmt = stmt.where(UserNotification.notification_type == notification_type)
    result = await session.execute(stmt.order_by(UserNotification.sent_at.desc()))
    return list(result.scalars().all())
