from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any, Mapping, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from beacon.core.errors import LedgerUnavailableError, RecordingFailedError
from beacon.domain.notifications import NotificationRecord
from beacon.persistence.db import is_missing_table_error
from beacon.persistence.repos import notifications as notifications_repo


logger = logging.getLogger(__name__)

FAIL_OPEN = "open"
FAIL_CLOSED = "closed"


class NotificationLedger(Protocol):
    async def has_sent(self, user_id: str, notification_type: str, reference_id: str, channel: str) -> bool:
        ...

    async def filter_unsent(
        self,
        candidates: Mapping[str, str],
        notification_type: str,
        channel: str,
    ) -> set[str]:
        ...

    async def record(
        self,
        user_id: str,
        notification_type: str,
        reference_id: str,
        channel: str,
        provider_result: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> NotificationRecord:
        ...


class SqlNotificationLedger:
    # One session per call so concurrent record() calls never share a connection.
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], *, fail_mode: str = FAIL_OPEN) -> None:
        if fail_mode not in {FAIL_OPEN, FAIL_CLOSED}:
            raise ValueError(f"unknown ledger fail mode: {fail_mode}")
        self._session_factory = session_factory
        self._fail_mode = fail_mode

    @property
    def fail_mode(self) -> str:
        return self._fail_mode

    def _check_failed(self, exc: SQLAlchemyError, *, operation: str, notification_type: str, channel: str) -> None:
        logger.warning(
            "notification_ledger_check_failed op=%s type=%s channel=%s mode=%s missing_table=%s",
            operation,
            notification_type,
            channel,
            self._fail_mode,
            is_missing_table_error(exc),
            exc_info=exc,
        )

    async def has_sent(self, user_id: str, notification_type: str, reference_id: str, channel: str) -> bool:
        try:
            async with self._session_factory() as session:
                row = await notifications_repo.get_delivery(
                    session,
                    user_id=user_id,
                    notification_type=notification_type,
                    reference_id=reference_id,
                    channel=channel,
                )
        except SQLAlchemyError as exc:
            self._check_failed(exc, operation="has_sent", notification_type=notification_type, channel=channel)
            return self._fail_mode == FAIL_CLOSED
        return row is not None

    async def filter_unsent(
        self,
        candidates: Mapping[str, str],
        notification_type: str,
        channel: str,
    ) -> set[str]:
        if not candidates:
            return set()
        try:
            async with self._session_factory() as session:
                delivered = await notifications_repo.find_delivered(
                    session,
                    candidates=candidates,
                    notification_type=notification_type,
                    channel=channel,
                )
        except SQLAlchemyError as exc:
            self._check_failed(exc, operation="filter_unsent", notification_type=notification_type, channel=channel)
            return set() if self._fail_mode == FAIL_CLOSED else set(candidates)
        return {user_id for user_id in candidates if user_id not in delivered}

    async def record(
        self,
        user_id: str,
        notification_type: str,
        reference_id: str,
        channel: str,
        provider_result: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> NotificationRecord:
        try:
            async with self._session_factory() as session:
                row, created = await notifications_repo.insert_delivery(
                    session,
                    user_id=user_id,
                    notification_type=notification_type,
                    reference_id=reference_id,
                    channel=channel,
                    provider_result=provider_result,
                    data=data,
                )
                record = notifications_repo.to_record(row)
        except (SQLAlchemyError, LookupError) as exc:
            # A lost success record lets a later run deliver again; never swallow it.
            raise RecordingFailedError(
                f"failed to record notification: {exc}",
                user_id=user_id,
                reference_id=reference_id,
                channel=channel,
            ) from exc
        if not created:
            logger.warning(
                "notification_record_conflict user_id=%s type=%s reference_id=%s channel=%s",
                user_id,
                notification_type,
                reference_id,
                channel,
            )
        return record

    async def history(self, user_id: str, notification_type: str | None = None) -> list[NotificationRecord]:
        try:
            async with self._session_factory() as session:
                rows = await notifications_repo.list_deliveries_for_user(
                    session,
                    user_id=user_id,
                    notification_type=notification_type,
                )
                return [notifications_repo.to_record(row) for row in rows]
        except SQLAlchemyError as exc:
            raise LedgerUnavailableError(f"failed to read notification history: {exc}") from exc


class InMemoryNotificationLedger:
    # Keep an in-process ledger for deterministic tests and inline runs.
    def __init__(self) -> None:
        self._records: dict[tuple[str, str, str, str], NotificationRecord] = {}
        self._lock = asyncio.Lock()
        self._next_id = 1

    async def has_sent(self, user_id: str, notification_type: str, reference_id: str, channel: str) -> bool:
        return (user_id, notification_type, reference_id, channel) in self._records

    async def filter_unsent(
        self,
        candidates: Mapping[str, str],
        notification_type: str,
        channel: str,
    ) -> set[str]:
        return {
            user_id
            for user_id, reference_id in candidates.items()
            if (user_id, notification_type, reference_id, channel) not in self._records
        }

    async def record(
        self,
        user_id: str,
        notification_type: str,
        reference_id: str,
        channel: str,
        provider_result: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> NotificationRecord:
        key = (user_id, notification_type, reference_id, channel)
        async with self._lock:
            existing = self._records.get(key)
            if existing is not None:
                return existing
            record = NotificationRecord(
                id=self._next_id,
                user_id=user_id,
                notification_type=notification_type,
                reference_id=reference_id,
                channel=channel,
                sent_at=datetime.now(timezone.utc),
                provider_result=provider_result,
                data=data,
            )
            self._next_id += 1
            self._records[key] = record
            return record

    async def history(self, user_id: str, notification_type: str | None = None) -> list[NotificationRecord]:
        records = [
            record
            for record in self._records.values()
            if record.user_id == user_id
            and (notification_type is None or record.notification_type == notification_type)
        ]
        return sorted(records, key=lambda record: record.sent_at, reverse=True)

    @property
    def records(self) -> list[NotificationRecord]:
        return list(self._records.values())
