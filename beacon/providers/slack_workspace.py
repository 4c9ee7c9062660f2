from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Any

import httpx

from beacon.core.config import get_settings
from beacon.core.errors import SlackApiError
from beacon.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

PERMISSION_REVOKED = "permission_revoked"
NETWORK_ERROR = "network_error"
RATE_LIMITED = "rate_limited"
USER_ERROR = "user_error"


@dataclass(frozen=True)
class SlackErrorDetails:
    type: str
    message: str
    # reconnect | retry | wait | none
    action: str

    @property
    def retryable(self) -> bool:
        return self.type == NETWORK_ERROR


_ERROR_MAP: dict[str, SlackErrorDetails] = {
    "invalid_auth": SlackErrorDetails(
        PERMISSION_REVOKED, "Slack connection has been revoked. Please reconnect your workspace.", "reconnect"
    ),
    "account_inactive": SlackErrorDetails(
        PERMISSION_REVOKED, "Your Slack account is inactive in this workspace.", "reconnect"
    ),
    "token_revoked": SlackErrorDetails(
        PERMISSION_REVOKED, "Slack access has been revoked. Please reconnect your workspace.", "reconnect"
    ),
    "no_permission": SlackErrorDetails(
        PERMISSION_REVOKED, "Insufficient permissions. Please reconnect with required permissions.", "reconnect"
    ),
    "missing_scope": SlackErrorDetails(
        PERMISSION_REVOKED, "Missing required Slack permissions. Please reconnect your workspace.", "reconnect"
    ),
    "user_not_found": SlackErrorDetails(
        PERMISSION_REVOKED, "User not found in this workspace. Please reconnect.", "reconnect"
    ),
    "ratelimited": SlackErrorDetails(
        RATE_LIMITED, "Slack API rate limit exceeded. Please try again in a few minutes.", "wait"
    ),
    "fatal_error": SlackErrorDetails(NETWORK_ERROR, "Slack API encountered an error. Please try again.", "retry"),
    "internal_error": SlackErrorDetails(
        NETWORK_ERROR, "Slack service temporarily unavailable. Please try again.", "retry"
    ),
    "service_unavailable": SlackErrorDetails(
        NETWORK_ERROR, "Slack service temporarily unavailable. Please try again.", "retry"
    ),
    "snooze_end_failed": SlackErrorDetails(
        NETWORK_ERROR, "Failed to disable Do Not Disturb. Please try again.", "retry"
    ),
    "snooze_not_active": SlackErrorDetails(USER_ERROR, "Do Not Disturb is not currently active.", "none"),
}

# Answers meaning the requested state already holds.
ALREADY_CLEARED_CODES = frozenset({"snooze_not_active"})


def map_slack_error(code: str) -> SlackErrorDetails:
    # Unknown codes are assumed transient.
    return _ERROR_MAP.get(code) or SlackErrorDetails(NETWORK_ERROR, f"Slack API error: {code}", "retry")


def slack_error(code: str) -> SlackApiError:
    return SlackApiError(code, map_slack_error(code))


def is_retryable_slack_error(exc: Exception) -> bool:
    if isinstance(exc, SlackApiError):
        return exc.retryable
    return isinstance(exc, (TimeoutError, httpx.TransportError))


class SlackWorkspaceClient:
    def __init__(self, *, base_url: str | None = None, client: httpx.AsyncClient | None = None) -> None:
        settings = get_settings()
        self._base_url = (base_url or settings.slack_api_base_url).rstrip("/")
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        timeout_s = get_settings().ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def _call(self, method: str, token: str, **kwargs: Any) -> dict[str, Any]:
        start = time.monotonic()
        success = False
        try:
            try:
                response = await self._get_client().post(
                    f"{self._base_url}/{method}",
                    headers={"Authorization": f"Bearer {token}"},
                    **kwargs,
                )
            except httpx.TransportError as exc:
                raise SlackApiError(
                    "request_failed",
                    SlackErrorDetails(NETWORK_ERROR, f"Slack request failed: {exc}", "retry"),
                ) from exc
            if response.status_code == 429:
                raise slack_error("ratelimited")
            try:
                body = response.json()
            except ValueError as exc:
                raise slack_error(f"http_{response.status_code}") from exc
            if not isinstance(body, dict) or not body.get("ok"):
                code = str(body.get("error") or "unknown_error") if isinstance(body, dict) else "unknown_error"
                raise slack_error(code)
            success = True
            return body
        finally:
            record_external_call(
                integration=f"slack.{method}",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=success,
            )

    async def clear_status(self, token: str) -> None:
        await self._call(
            "users.profile.set",
            token,
            json={"profile": {"status_text": "", "status_emoji": "", "status_expiration": 0}},
        )

    async def end_dnd(self, token: str) -> None:
        await self._call("dnd.endSnooze", token)
