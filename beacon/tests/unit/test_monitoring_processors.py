from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from beacon.core.config import Settings
from beacon.domain.jobs import EmptyJobData, HeartbeatJobData, JobType
from beacon.domain.models import License, User, UserProfile
from beacon.domain.notifications import NotificationPayload, NotificationResult
from beacon.persistence.repos import user_monitoring as monitoring_repo
from beacon.services.jobs.backends import InProcessJobBackend
from beacon.services.jobs.processors import (
    MonitoringProcessors,
    register_default_schedules,
    register_monitoring_jobs,
)
from beacon.services.jobs.scheduler import JobScheduler
from beacon.services.notifications.config import NotificationConfig
from beacon.services.notifications.dispatcher import IdempotentDispatcher
from beacon.services.notifications.engine import NotificationEngine
from beacon.services.notifications.ledger import InMemoryNotificationLedger
from beacon.services.resilience import RetryPolicy


NOW = datetime(2025, 6, 2, 12, 0, tzinfo=timezone.utc)


class _FakeProvider:
    def __init__(self, channel: str) -> None:
        self.channel = channel
        self.sent: list[NotificationPayload] = []

    async def send(self, payload: NotificationPayload) -> NotificationResult:
        self.sent.append(payload)
        return NotificationResult(
            success=True,
            message="sent",
            user_id=payload.user.id,
            reference_id=payload.reference_id,
            channel=self.channel,
        )


class _BrokenSession:
    async def __aenter__(self):
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    async def __aexit__(self, *exc_info) -> None:
        return None


def _processors(session_factory, provider: _FakeProvider, ledger: InMemoryNotificationLedger | None = None):
    engine = NotificationEngine(
        NotificationConfig(
            events={
                "new_user": ["discord"],
                "paid_user": ["discord"],
                "inactive_user": ["discord"],
            }
        ),
        provider_builder=lambda cfg: {"discord": provider},
    )
    dispatcher = IdempotentDispatcher(engine, ledger or InMemoryNotificationLedger())
    settings = Settings(new_user_lookback_minutes=10, paid_user_lookback_minutes=10, inactive_user_threshold_days=7)
    return MonitoringProcessors(session_factory, dispatcher, settings, clock=lambda: NOW)


async def _seed(session_factory) -> None:
    async with session_factory() as session:
        session.add_all(
            [
                User(id="fresh", email="fresh@example.com", created_at=NOW - timedelta(minutes=3)),
                User(id="old", email="old@example.com", created_at=NOW - timedelta(days=30)),
                User(id="idle", email="idle@example.com", created_at=NOW - timedelta(days=60)),
            ]
        )
        await session.flush()
        session.add_all(
            [
                License(
                    id="lic_paid",
                    user_id="fresh",
                    status="active",
                    license_type="lifetime",
                    purchase_date=NOW - timedelta(minutes=2),
                    stripe_payment_id="pi_1",
                ),
                License(
                    id="lic_free",
                    user_id="old",
                    status="active",
                    purchase_date=NOW - timedelta(minutes=2),
                    stripe_payment_id="",
                ),
                License(
                    id="lic_expired",
                    user_id="idle",
                    status="expired",
                    purchase_date=NOW - timedelta(minutes=2),
                    stripe_payment_id="pi_2",
                ),
                UserProfile(id="fresh", last_check_in=NOW - timedelta(minutes=1), online_status="online"),
                UserProfile(id="old", last_check_in=NOW - timedelta(minutes=20), online_status="online"),
                UserProfile(id="idle", last_check_in=NOW - timedelta(days=9), online_status="offline"),
            ]
        )
        await session.commit()


@pytest.mark.asyncio
async def test_new_user_check_notifies_once(session_factory) -> None:
    await _seed(session_factory)
    provider = _FakeProvider("discord")
    processors = _processors(session_factory, provider)

    first = await processors.check_new_users(EmptyJobData())
    second = await processors.check_new_users(EmptyJobData())

    assert first.success is True
    assert first.data["totalFound"] == 1
    assert first.data["newNotifications"] == 1
    assert second.data["channelResults"]["discord"]["alreadyNotified"] == 1
    assert [payload.user.id for payload in provider.sent] == ["fresh"]


@pytest.mark.asyncio
async def test_paid_user_check_only_counts_real_payments(session_factory) -> None:
    await _seed(session_factory)
    provider = _FakeProvider("discord")
    processors = _processors(session_factory, provider)

    result = await processors.check_paid_users(EmptyJobData())

    assert result.data["totalFound"] == 1
    assert provider.sent[0].reference_id == "paid_license_lic_paid"
    assert provider.sent[0].data["license_type"] == "lifetime"


@pytest.mark.asyncio
async def test_inactive_user_check_reports_days(session_factory) -> None:
    await _seed(session_factory)
    provider = _FakeProvider("discord")
    processors = _processors(session_factory, provider)

    result = await processors.check_inactive_users(EmptyJobData())

    assert result.data["totalUsers"] == 3
    assert result.data["totalFound"] == 1
    assert provider.sent[0].user.id == "idle"
    assert provider.sent[0].user.days_inactive == 9
    assert provider.sent[0].reference_id == "inactive_idle"


@pytest.mark.asyncio
async def test_offline_sweep_flips_stale_profiles(session_factory) -> None:
    await _seed(session_factory)
    processors = _processors(session_factory, _FakeProvider("discord"))

    result = await processors.check_offline_users(EmptyJobData())

    assert result.success is True
    assert result.data == {"affectedRows": 1}
    async with session_factory() as session:
        assert (await session.get(UserProfile, "old")).online_status == "offline"
        assert (await session.get(UserProfile, "fresh")).online_status == "online"


@pytest.mark.asyncio
async def test_repository_uses_injected_clock(session_factory) -> None:
    await _seed(session_factory)
    async with session_factory() as session:
        later = await monitoring_repo.list_new_users(session, within_minutes=10, now=NOW + timedelta(hours=1))

    assert later == []


@pytest.mark.asyncio
async def test_database_failure_becomes_unsuccessful_result() -> None:
    processors = _processors(lambda: _BrokenSession(), _FakeProvider("discord"))

    for check in (
        processors.check_new_users,
        processors.check_paid_users,
        processors.check_inactive_users,
        processors.check_offline_users,
    ):
        result = await check(EmptyJobData())
        assert result.success is False
        assert "connection refused" in result.message


@pytest.mark.asyncio
async def test_heartbeat_echoes_message(session_factory) -> None:
    processors = _processors(session_factory, _FakeProvider("discord"))

    result = await processors.heartbeat(HeartbeatJobData(message="ping"))

    assert result.success is True
    assert result.message == "ping"


def test_default_schedules_register_once() -> None:
    scheduler = JobScheduler(InProcessJobBackend("user-monitoring"), policy=RetryPolicy())
    register_monitoring_jobs(scheduler, _processors(lambda: _BrokenSession(), _FakeProvider("discord")))
    settings = Settings()

    register_default_schedules(scheduler, settings)

    assert scheduler.registered_job_types() == sorted(
        [
            JobType.CHECK_NEW_USERS.value,
            JobType.CHECK_PAID_USERS.value,
            JobType.CHECK_INACTIVE_USERS.value,
            JobType.CHECK_OFFLINE_USERS.value,
            JobType.HEARTBEAT.value,
        ]
    )
    assert scheduler.register_recurring(
        JobType.CHECK_NEW_USERS,
        settings.new_user_check_cron,
        job_id="recurring:check-new-users",
    ) is False
