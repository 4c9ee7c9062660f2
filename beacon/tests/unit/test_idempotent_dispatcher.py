from __future__ import annotations

from datetime import datetime, timezone

import pytest

from beacon.core.errors import RecordingFailedError
from beacon.domain.notifications import (
    NewUserRecord,
    NotificationPayload,
    NotificationResult,
    NotificationType,
)
from beacon.services.notifications.config import NotificationConfig
from beacon.services.notifications.dispatcher import IdempotentDispatcher
from beacon.services.notifications.engine import NotificationEngine
from beacon.services.notifications.ledger import InMemoryNotificationLedger
from beacon.services.telemetry import counters_snapshot


CREATED = datetime(2025, 4, 1, 9, 0, tzinfo=timezone.utc)


class _FakeProvider:
    def __init__(self, channel: str, *, failing_users: set[str] | None = None) -> None:
        self.channel = channel
        self.failing_users = failing_users or set()
        self.sent: list[NotificationPayload] = []

    async def send(self, payload: NotificationPayload) -> NotificationResult:
        self.sent.append(payload)
        ok = payload.user.id not in self.failing_users
        return NotificationResult(
            success=ok,
            message="sent" if ok else "rejected",
            user_id=payload.user.id,
            reference_id=payload.reference_id,
            channel=self.channel,
            error=None if ok else "HTTP 500",
        )


class _BrokenLedger(InMemoryNotificationLedger):
    async def record(self, user_id, notification_type, reference_id, channel, provider_result=None, data=None):
        raise RecordingFailedError("db down", user_id=user_id, reference_id=reference_id, channel=channel)


def _users(count: int) -> list[NewUserRecord]:
    return [NewUserRecord(id=f"u{index}", email=f"u{index}@example.com", created_at=CREATED) for index in range(count)]


def _dispatcher(providers: dict, ledger=None, channels=("discord", "email")) -> IdempotentDispatcher:
    engine = NotificationEngine(
        NotificationConfig(events={"new_user": list(channels)}),
        provider_builder=lambda cfg: providers,
    )
    return IdempotentDispatcher(engine, ledger or InMemoryNotificationLedger())


@pytest.mark.asyncio
async def test_second_run_sends_nothing_new() -> None:
    discord = _FakeProvider("discord")
    email = _FakeProvider("email")
    ledger = InMemoryNotificationLedger()
    dispatcher = _dispatcher({"discord": discord, "email": email}, ledger)
    users = _users(3)

    first = await dispatcher.dispatch(users, NotificationType.NEW_USER)

    assert first.as_dict() == {
        "totalFound": 3,
        "newNotifications": 6,
        "failedNotifications": 0,
        "channelResults": {
            "discord": {"sent": 3, "failed": 0, "alreadyNotified": 0},
            "email": {"sent": 3, "failed": 0, "alreadyNotified": 0},
        },
    }
    assert len(ledger.records) == 6

    second = await dispatcher.dispatch(users, NotificationType.NEW_USER)

    assert second.new_notifications == 0
    assert second.channel_results["discord"].already_notified == 3
    assert second.channel_results["email"].already_notified == 3
    assert len(discord.sent) == 3
    assert len(email.sent) == 3
    assert len(ledger.records) == 6


@pytest.mark.asyncio
async def test_channel_failure_is_retried_on_next_run_only_for_that_channel() -> None:
    discord = _FakeProvider("discord")
    email = _FakeProvider("email", failing_users={"u1"})
    ledger = InMemoryNotificationLedger()
    dispatcher = _dispatcher({"discord": discord, "email": email}, ledger)
    users = _users(2)

    first = await dispatcher.dispatch(users, "new_user")

    assert first.new_notifications == 3
    assert first.failed_notifications == 1
    assert first.channel_results["email"].failed == 1
    assert len(ledger.records) == 3

    email.failing_users.clear()
    second = await dispatcher.dispatch(users, "new_user")

    assert second.channel_results["discord"].already_notified == 2
    assert second.channel_results["email"].sent == 1
    assert second.channel_results["email"].already_notified == 1
    assert [payload.user.id for payload in email.sent] == ["u0", "u1", "u1"]


@pytest.mark.asyncio
async def test_ledger_keys_match_the_sent_reference_id() -> None:
    discord = _FakeProvider("discord")
    ledger = InMemoryNotificationLedger()
    dispatcher = _dispatcher({"discord": discord}, ledger, channels=("discord",))

    await dispatcher.dispatch(_users(1), "new_user", reference_id_fn=lambda user: f"custom_{user.id}")

    assert discord.sent[0].reference_id == "custom_u0"
    assert ledger.records[0].reference_id == "custom_u0"
    assert await ledger.has_sent("u0", "new_user", "custom_u0", "discord")


@pytest.mark.asyncio
async def test_empty_user_list_touches_nothing() -> None:
    discord = _FakeProvider("discord")
    dispatcher = _dispatcher({"discord": discord})

    summary = await dispatcher.dispatch([], "new_user")

    assert summary.as_dict() == {
        "totalFound": 0,
        "newNotifications": 0,
        "failedNotifications": 0,
        "channelResults": {},
    }
    assert discord.sent == []


@pytest.mark.asyncio
async def test_duplicate_users_are_sent_once() -> None:
    discord = _FakeProvider("discord")
    dispatcher = _dispatcher({"discord": discord}, channels=("discord",))
    user = _users(1)[0]

    summary = await dispatcher.dispatch([user, user], "new_user")

    assert summary.new_notifications == 1
    assert len(discord.sent) == 1

    rerun = await dispatcher.dispatch([user, user], "new_user")

    assert summary.total_found == 1
    assert rerun.total_found == rerun.channel_results["discord"].already_notified == 1


@pytest.mark.asyncio
async def test_unconfigured_channel_counts_as_failed() -> None:
    discord = _FakeProvider("discord")
    ledger = InMemoryNotificationLedger()
    dispatcher = _dispatcher({"discord": discord}, ledger)

    summary = await dispatcher.dispatch(_users(2), "new_user")

    assert summary.channel_results["discord"].sent == 2
    assert summary.channel_results["email"].failed == 2
    assert {record.channel for record in ledger.records} == {"discord"}


@pytest.mark.asyncio
async def test_recording_failure_propagates() -> None:
    discord = _FakeProvider("discord")
    dispatcher = _dispatcher({"discord": discord}, _BrokenLedger(), channels=("discord",))

    with pytest.raises(RecordingFailedError):
        await dispatcher.dispatch(_users(1), "new_user")

    assert len(discord.sent) == 1


@pytest.mark.asyncio
async def test_dispatch_updates_channel_counters() -> None:
    dispatcher = _dispatcher({"discord": _FakeProvider("discord")}, channels=("discord",))
    users = _users(2)

    await dispatcher.dispatch(users, "new_user")
    await dispatcher.dispatch(users, "new_user")

    counters = counters_snapshot()
    assert counters["notifications_sent_total.discord"] == 2
    assert counters["notifications_already_notified_total.discord"] == 2
