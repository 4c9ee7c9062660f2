from __future__ import annotations

import httpx
import pytest

from beacon.core.errors import ProviderConfigError, SlackApiError, TokenDecryptionError
from beacon.providers.slack_workspace import (
    NETWORK_ERROR,
    PERMISSION_REVOKED,
    RATE_LIMITED,
    SlackWorkspaceClient,
    is_retryable_slack_error,
    map_slack_error,
    slack_error,
)
from beacon.services.security.tokens import TokenCipher
from beacon.services.telemetry import external_call_summary


def _client(handler) -> SlackWorkspaceClient:
    return SlackWorkspaceClient(
        base_url="https://slack.test/api/",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


@pytest.mark.parametrize(
    ("code", "error_type", "retryable"),
    [
        ("invalid_auth", PERMISSION_REVOKED, False),
        ("missing_scope", PERMISSION_REVOKED, False),
        ("ratelimited", RATE_LIMITED, False),
        ("internal_error", NETWORK_ERROR, True),
        ("something_new", NETWORK_ERROR, True),
    ],
)
def test_error_mapping(code: str, error_type: str, retryable: bool) -> None:
    details = map_slack_error(code)

    assert details.type == error_type
    assert is_retryable_slack_error(slack_error(code)) is retryable


def test_plain_exceptions_are_classified() -> None:
    assert is_retryable_slack_error(TimeoutError()) is True
    assert is_retryable_slack_error(ValueError("bad")) is False


@pytest.mark.asyncio
async def test_clear_status_sends_empty_profile() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = request.read()
        return httpx.Response(200, json={"ok": True})

    await _client(handler).clear_status("xoxp-token")

    assert seen["url"] == "https://slack.test/api/users.profile.set"
    assert seen["auth"] == "Bearer xoxp-token"
    assert b'"status_text":""' in seen["body"].replace(b" ", b"")
    assert external_call_summary()["slack.users.profile.set"]["error_rate"] == 0.0


@pytest.mark.asyncio
async def test_api_error_is_raised_with_code() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"ok": False, "error": "token_revoked"})

    with pytest.raises(SlackApiError) as exc_info:
        await _client(handler).end_dnd("xoxp-token")

    assert exc_info.value.code == "token_revoked"
    assert exc_info.value.details.action == "reconnect"
    assert external_call_summary()["slack.dnd.endSnooze"]["error_rate"] == 1.0


@pytest.mark.asyncio
async def test_http_429_maps_to_rate_limit() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"Retry-After": "30"})

    with pytest.raises(SlackApiError) as exc_info:
        await _client(handler).end_dnd("xoxp-token")

    assert exc_info.value.details.type == RATE_LIMITED


@pytest.mark.asyncio
async def test_transport_error_is_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(SlackApiError) as exc_info:
        await _client(handler).end_dnd("xoxp-token")

    assert exc_info.value.code == "request_failed"
    assert exc_info.value.retryable is True


def test_token_cipher_round_trip_and_tamper() -> None:
    cipher = TokenCipher("secret")
    encrypted = cipher.encrypt("xoxp-123")

    assert encrypted != "xoxp-123"
    assert cipher.decrypt(encrypted) == "xoxp-123"
    with pytest.raises(TokenDecryptionError):
        TokenCipher("other-secret").decrypt(encrypted)


def test_token_cipher_requires_secret() -> None:
    with pytest.raises(ProviderConfigError):
        TokenCipher("  ")
