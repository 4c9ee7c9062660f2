from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

import httpx

from beacon.core.errors import ProviderConfigError
from beacon.domain.notifications import NotificationChannel, NotificationPayload, NotificationResult, NotificationType
from beacon.providers.notify.base import HttpNotificationProvider, http_error_text


logger = logging.getLogger(__name__)

_HEADLINES = {
    NotificationType.PAID_USER.value: "New paid user",
    NotificationType.NEW_USER.value: "New user joined",
    NotificationType.INACTIVE_USER.value: "Inactive user",
    NotificationType.WEEKLY_REPORT.value: "Weekly report",
    NotificationType.PAYMENT_FAILED.value: "Payment failed",
    NotificationType.CHECKOUT_COMPLETED.value: "Checkout completed",
    NotificationType.SUBSCRIPTION_CANCELLED.value: "Subscription cancelled",
}


class SlackWebhookNotificationProvider(HttpNotificationProvider):
    channel = NotificationChannel.SLACK.value
    integration = "notify.slack_webhook"

    def __init__(self, webhook_url: str | None, *, client: httpx.AsyncClient | None = None) -> None:
        if not webhook_url:
            raise ProviderConfigError("Slack webhook URL is required")
        super().__init__(client)
        self._webhook_url = webhook_url

    def format_payload(self, payload: NotificationPayload) -> dict[str, Any]:
        kind = payload.type_value
        headline = _HEADLINES.get(kind, "Notification")
        details = [f"*User:* {payload.user.email or payload.user.id}"]
        for key, value in sorted((payload.data or {}).items()):
            if value is not None and not isinstance(value, (dict, list)):
                details.append(f"*{key}:* {value}")
        return {
            "text": f"{headline}: {payload.user.email or payload.user.id}",
            "blocks": [
                {"type": "header", "text": {"type": "plain_text", "text": headline}},
                {"type": "section", "text": {"type": "mrkdwn", "text": "\n".join(details)}},
                {"type": "context", "elements": [{"type": "mrkdwn", "text": f"`{kind}` {payload.reference_id}"}]},
            ],
        }

    async def send(self, payload: NotificationPayload) -> NotificationResult:
        try:
            response = await self._post(self._webhook_url, json=self.format_payload(payload))
        except httpx.HTTPError as exc:
            logger.warning("slack_webhook_failed type=%s user_id=%s", payload.type_value, payload.user.id, exc_info=exc)
            return self._failure(payload, f"Failed to send Slack notification: {exc}", str(exc) or type(exc).__name__)
        # Incoming webhooks answer with a plain "ok" body on success.
        if not response.is_success or response.text.strip() != "ok":
            error = http_error_text(response)
            logger.warning("slack_webhook_rejected type=%s status=%s", payload.type_value, response.status_code)
            return self._failure(payload, f"Failed to send Slack notification: {error}", error)
        return self._success(
            payload,
            f"Slack notification sent successfully for {payload.type_value}",
            notification_id=f"slack_{uuid4().hex}",
        )
