from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Mapping
from uuid import uuid4

import httpx

from beacon.core.errors import ProviderConfigError
from beacon.domain.notifications import NotificationChannel, NotificationPayload, NotificationResult
from beacon.providers.notify.base import HttpNotificationProvider, http_error_text


logger = logging.getLogger(__name__)

LOOPS_TRANSACTIONAL_URL = "https://app.loops.so/api/v1/transactional"


def _variable(value: Any) -> str | int | float | bool:
    # Loops data variables accept scalars only.
    if isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class LoopsNotificationProvider(HttpNotificationProvider):
    channel = NotificationChannel.EMAIL.value
    integration = "notify.loops"

    def __init__(
        self,
        api_key: str | None,
        *,
        templates: Mapping[str, str] | None = None,
        api_url: str = LOOPS_TRANSACTIONAL_URL,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ProviderConfigError("Loops API key is required")
        super().__init__(client)
        self._api_key = api_key
        self._templates = dict(templates or {})
        self._api_url = api_url

    def format_payload(self, payload: NotificationPayload) -> dict[str, Any] | None:
        # None means no template is configured for this notification type.
        template_id = self._templates.get(payload.type_value)
        if not template_id:
            return None
        variables: dict[str, Any] = {
            "user_id": payload.user.id,
            "reference_id": payload.reference_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        for name in ("created_at", "paid_at", "license_id", "license_type", "last_check_in", "days_inactive"):
            value = getattr(payload.user, name, None)
            if value is not None:
                variables[name] = value
        variables.update(payload.data or {})
        return {
            "transactionalId": template_id,
            "email": payload.user.email,
            "dataVariables": {key: _variable(value) for key, value in variables.items() if value is not None},
        }

    async def send(self, payload: NotificationPayload) -> NotificationResult:
        if not payload.user.email:
            return self._failure(payload, "Cannot send email notification without an address", "Missing email")
        body = self.format_payload(payload)
        if body is None:
            logger.warning("loops_template_missing type=%s", payload.type_value)
            return self._failure(
                payload,
                f"No email template configured for {payload.type_value}",
                "No template configured",
            )
        try:
            response = await self._post(
                self._api_url,
                json=body,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        except httpx.HTTPError as exc:
            logger.warning("loops_notification_failed type=%s user_id=%s", payload.type_value, payload.user.id, exc_info=exc)
            return self._failure(payload, f"Failed to send email notification: {exc}", str(exc) or type(exc).__name__)
        if not response.is_success:
            error = http_error_text(response)
            logger.warning("loops_notification_rejected type=%s status=%s", payload.type_value, response.status_code)
            return self._failure(payload, f"Failed to send email notification: {error}", error)
        try:
            parsed = response.json()
        except ValueError:
            parsed = None
        if isinstance(parsed, dict) and parsed.get("success") is False:
            error = str(parsed.get("message") or "Loops reported failure")
            return self._failure(payload, f"Failed to send email notification: {error}", error)
        return self._success(
            payload,
            f"Email notification sent successfully via Loops for {payload.type_value}",
            notification_id=f"loops_{uuid4().hex}",
        )
