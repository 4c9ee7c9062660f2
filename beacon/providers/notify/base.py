from __future__ import annotations

import time
from typing import Any, Protocol

import httpx

from beacon.core.config import get_settings
from beacon.domain.notifications import NotificationPayload, NotificationResult
from beacon.services.telemetry import record_external_call


class NotificationProvider(Protocol):
    channel: str

    async def send(self, payload: NotificationPayload) -> NotificationResult:
        ...


class HttpNotificationProvider:
    # Shared client handling and result shaping for webhook-style providers.
    channel = ""
    integration = ""

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        timeout_s = get_settings().ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def _post(self, url: str, **kwargs: Any) -> httpx.Response:
        start = time.monotonic()
        success = False
        try:
            response = await self._get_client().post(url, **kwargs)
            success = response.is_success
            return response
        finally:
            record_external_call(
                integration=self.integration,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=success,
            )

    def _success(self, payload: NotificationPayload, message: str, notification_id: str | None = None) -> NotificationResult:
        return NotificationResult(
            success=True,
            message=message,
            user_id=payload.user.id,
            reference_id=payload.reference_id,
            channel=self.channel,
            notification_id=notification_id,
        )

    def _failure(self, payload: NotificationPayload, message: str, error: str) -> NotificationResult:
        return NotificationResult(
            success=False,
            message=message,
            user_id=payload.user.id,
            reference_id=payload.reference_id,
            channel=self.channel,
            error=error,
        )


def http_error_text(response: httpx.Response) -> str:
    body = response.text[:500] if response.content else ""
    return f"HTTP {response.status_code}: {body}".strip()
