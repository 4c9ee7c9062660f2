from __future__ import annotations

from datetime import datetime, timezone
import json

import httpx
import pytest

from beacon.core.errors import ProviderConfigError
from beacon.domain.notifications import (
    BaseUserRecord,
    NotificationPayload,
    NotificationType,
    PaidUserRecord,
)
from beacon.providers.notify.discord import COLOR_GREEN, COLOR_GREY, DiscordNotificationProvider
from beacon.providers.notify.loops import LoopsNotificationProvider
from beacon.providers.notify.slack_webhook import SlackWebhookNotificationProvider


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _paid_payload() -> NotificationPayload:
    user = PaidUserRecord(
        id="u1",
        email="buyer@example.com",
        paid_at=datetime(2025, 2, 1, tzinfo=timezone.utc),
        license_id="lic_1",
        license_type="lifetime",
        stripe_payment_id="pi_123",
    )
    return NotificationPayload(type=NotificationType.PAID_USER, user=user, reference_id="paid_license_lic_1")


def test_providers_require_credentials() -> None:
    with pytest.raises(ProviderConfigError):
        DiscordNotificationProvider(None)
    with pytest.raises(ProviderConfigError):
        LoopsNotificationProvider("")
    with pytest.raises(ProviderConfigError):
        SlackWebhookNotificationProvider(None)


@pytest.mark.asyncio
async def test_discord_formats_paid_user_embed() -> None:
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = json.loads(request.content)
        return httpx.Response(204)

    provider = DiscordNotificationProvider("https://discord.test/hook", username="Beacon", client=_client(handler))
    result = await provider.send(_paid_payload())

    assert result.success is True
    assert result.channel == "discord"
    assert result.reference_id == "paid_license_lic_1"
    embed = captured["body"]["embeds"][0]
    assert embed["color"] == COLOR_GREEN
    names = [field["name"] for field in embed["fields"]]
    assert "License ID" in names and "Payment ID" in names
    assert captured["body"]["username"] == "Beacon Notifications"


@pytest.mark.asyncio
async def test_discord_unknown_type_uses_generic_embed() -> None:
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={})

    provider = DiscordNotificationProvider("https://discord.test/hook", client=_client(handler))
    payload = NotificationPayload(
        type="friend_request",
        user=BaseUserRecord(id="u2", email="x@example.com"),
        reference_id="friend_request_u2_1",
    )
    result = await provider.send(payload)

    assert result.success is True
    assert captured["body"]["embeds"][0]["color"] == COLOR_GREY
    assert "friend_request" in captured["body"]["embeds"][0]["description"]


@pytest.mark.asyncio
async def test_discord_http_error_becomes_failure_result() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, text="slow down")

    provider = DiscordNotificationProvider("https://discord.test/hook", client=_client(handler))
    result = await provider.send(_paid_payload())

    assert result.success is False
    assert "429" in (result.error or "")


@pytest.mark.asyncio
async def test_discord_network_error_never_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = DiscordNotificationProvider("https://discord.test/hook", client=_client(handler))
    result = await provider.send(_paid_payload())

    assert result.success is False
    assert "connection refused" in (result.error or "")


@pytest.mark.asyncio
async def test_loops_sends_template_with_variables() -> None:
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["auth"] = request.headers["Authorization"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"success": True})

    provider = LoopsNotificationProvider(
        "loops-key",
        templates={"paid_user": "tmpl_paid"},
        client=_client(handler),
    )
    result = await provider.send(_paid_payload())

    assert result.success is True
    assert captured["auth"] == "Bearer loops-key"
    assert captured["body"]["transactionalId"] == "tmpl_paid"
    assert captured["body"]["email"] == "buyer@example.com"
    assert captured["body"]["dataVariables"]["license_id"] == "lic_1"
    assert captured["body"]["dataVariables"]["paid_at"].startswith("2025-02-01")


@pytest.mark.asyncio
async def test_loops_without_template_fails_without_calling_api() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(200, json={"success": True})

    provider = LoopsNotificationProvider("loops-key", client=_client(handler))
    result = await provider.send(_paid_payload())

    assert result.success is False
    assert result.error == "No template configured"
    assert calls["count"] == 0


@pytest.mark.asyncio
async def test_loops_reported_failure_is_not_success() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"success": False, "message": "Invalid transactional id"})

    provider = LoopsNotificationProvider("loops-key", templates={"paid_user": "bad"}, client=_client(handler))
    result = await provider.send(_paid_payload())

    assert result.success is False
    assert result.error == "Invalid transactional id"


@pytest.mark.asyncio
async def test_slack_webhook_requires_ok_body() -> None:
    responses = iter([httpx.Response(200, text="ok"), httpx.Response(400, text="invalid_payload")])

    def handler(request: httpx.Request) -> httpx.Response:
        return next(responses)

    provider = SlackWebhookNotificationProvider("https://hooks.slack.test/x", client=_client(handler))
    first = await provider.send(_paid_payload())
    second = await provider.send(_paid_payload())

    assert first.success is True
    assert second.success is False
    assert "invalid_payload" in (second.error or "")
