from __future__ import annotations

import asyncio
from datetime import datetime
import logging
from typing import Any, Sequence

from beacon.domain.notifications import (
    ChannelDispatchResult,
    DispatchSummary,
    NotificationResult,
    NotificationType,
    UserRecord,
    type_value,
)
from beacon.services.notifications.engine import NotificationEngine
from beacon.services.notifications.ledger import NotificationLedger
from beacon.services.notifications.reference_ids import ReferenceIdFn, reference_id_for_record
from beacon.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _jsonable(value: Any) -> Any:
    # Ledger JSON columns take plain values only.
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


class IdempotentDispatcher:
    def __init__(
        self,
        engine: NotificationEngine,
        ledger: NotificationLedger,
        *,
        throttle_ms: int = 0,
    ) -> None:
        self._engine = engine
        self._ledger = ledger
        self._throttle_s = max(0, throttle_ms) / 1000.0

    async def dispatch(
        self,
        users: Sequence[UserRecord],
        notification_type: NotificationType | str,
        reference_id_fn: ReferenceIdFn | None = None,
        *,
        data: dict[str, Any] | None = None,
    ) -> DispatchSummary:
        if not users:
            return DispatchSummary()

        kind = type_value(notification_type)
        reference_id_fn = reference_id_fn or reference_id_for_record(notification_type)
        by_id: dict[str, UserRecord] = {}
        candidates: dict[str, str] = {}
        for user in users:
            # Duplicate rows for one user collapse to the first occurrence.
            if user.id in by_id:
                continue
            by_id[user.id] = user
            candidates[user.id] = reference_id_fn(user)

        summary = DispatchSummary(total_found=len(by_id))
        for channel in self._engine.channels_for(notification_type):
            result = await self._dispatch_channel(kind, channel, by_id, candidates, data)
            summary.channel_results[channel] = result
            summary.new_notifications += result.sent
            summary.failed_notifications += result.failed

        logger.info(
            "notification_dispatch_complete type=%s found=%s sent=%s failed=%s",
            kind,
            summary.total_found,
            summary.new_notifications,
            summary.failed_notifications,
        )
        return summary

    async def _dispatch_channel(
        self,
        kind: str,
        channel: str,
        by_id: dict[str, UserRecord],
        candidates: dict[str, str],
        data: dict[str, Any] | None,
    ) -> ChannelDispatchResult:
        # Filter, send, then record; a success is written only after the provider confirms it.
        unsent = await self._ledger.filter_unsent(candidates, kind, channel)
        already_notified = len(candidates) - len(unsent)
        increment_counter(f"notifications_already_notified_total.{channel}", already_notified)
        if not unsent:
            logger.info("notification_dispatch_channel_skipped type=%s channel=%s already=%s", kind, channel, already_notified)
            return ChannelDispatchResult(already_notified=already_notified)

        successes: list[NotificationResult] = []
        failed = 0
        pending = [user_id for user_id in candidates if user_id in unsent]
        for index, user_id in enumerate(pending):
            if index and self._throttle_s:
                await asyncio.sleep(self._throttle_s)
            results = await self._engine.send_for_event_type(
                by_id[user_id],
                kind,
                data,
                channels=[channel],
                reference_id=candidates[user_id],
            )
            for result in results:
                if result.success:
                    successes.append(result)
                else:
                    failed += 1
                    logger.warning(
                        "notification_send_failed type=%s channel=%s user_id=%s error=%s",
                        kind,
                        channel,
                        user_id,
                        result.error,
                    )

        # Recording failures propagate; a lost record would allow a duplicate delivery later.
        await asyncio.gather(
            *(
                self._ledger.record(
                    result.user_id,
                    kind,
                    candidates[result.user_id],
                    channel,
                    provider_result=result.as_provider_result(),
                    data=_jsonable(data or {}),
                )
                for result in successes
            )
        )

        increment_counter(f"notifications_sent_total.{channel}", len(successes))
        increment_counter(f"notifications_failed_total.{channel}", failed)
        logger.info(
            "notification_dispatch_channel type=%s channel=%s sent=%s failed=%s already=%s",
            kind,
            channel,
            len(successes),
            failed,
            already_notified,
        )
        return ChannelDispatchResult(sent=len(successes), failed=failed, already_notified=already_notified)
