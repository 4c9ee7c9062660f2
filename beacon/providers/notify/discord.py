from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any
from uuid import uuid4

import httpx

from beacon.core.errors import ProviderConfigError
from beacon.domain.notifications import NotificationChannel, NotificationPayload, NotificationResult, NotificationType
from beacon.providers.notify.base import HttpNotificationProvider, http_error_text


logger = logging.getLogger(__name__)

COLOR_GREEN = 0x00FF00
COLOR_BLUE = 0x0099FF
COLOR_ORANGE = 0xFF9900
COLOR_PURPLE = 0x9932CC
COLOR_RED = 0xFF0000
COLOR_GREY = 0x808080


def _relative_time(value: Any) -> str | None:
    # Discord renders <t:epoch:R> as "5 minutes ago" in the reader's locale.
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return f"<t:{int(value.timestamp())}:R>"
    return None


def _field(name: str, value: Any, inline: bool = True) -> dict[str, Any]:
    text = str(value) if value not in (None, "") else "Unknown"
    # Discord rejects field values over 1024 characters.
    return {"name": name, "value": text[:1024], "inline": inline}


class DiscordNotificationProvider(HttpNotificationProvider):
    channel = NotificationChannel.DISCORD.value
    integration = "notify.discord"

    def __init__(
        self,
        webhook_url: str | None,
        *,
        username: str = "Beacon",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not webhook_url:
            raise ProviderConfigError("Discord webhook URL is required")
        super().__init__(client)
        self._webhook_url = webhook_url
        self._username = username

    def _embed(self, title: str, description: str, color: int, fields: list[dict[str, Any]] | None = None) -> dict[str, Any]:
        embed: dict[str, Any] = {
            "title": title,
            "description": description,
            "color": color,
            "footer": {"text": f"{self._username} Notifications"},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if fields:
            embed["fields"] = fields
        return embed

    def format_payload(self, payload: NotificationPayload) -> dict[str, Any]:
        user = payload.user
        data = payload.data or {}
        kind = payload.type_value
        if kind == NotificationType.PAID_USER.value:
            fields = [
                _field("User", user.email),
                _field("Subscription", getattr(user, "license_type", None) or data.get("license_type") or "Premium"),
                _field("Paid At", _relative_time(getattr(user, "paid_at", None)) or "Just now"),
            ]
            license_id = getattr(user, "license_id", None)
            if license_id:
                fields.append(_field("License ID", license_id))
            payment_id = getattr(user, "stripe_payment_id", None)
            if payment_id:
                fields.append(_field("Payment ID", payment_id))
            embed = self._embed("New Paid User!", "A new user has upgraded to a paid plan", COLOR_GREEN, fields)
        elif kind == NotificationType.NEW_USER.value:
            joined = _relative_time(getattr(user, "created_at", None)) or _relative_time(datetime.now(timezone.utc))
            embed = self._embed(
                "New User Joined!",
                "A new user has signed up",
                COLOR_BLUE,
                [_field("User", user.email), _field("Joined", joined)],
            )
        elif kind == NotificationType.INACTIVE_USER.value:
            fields = [_field("User", user.email)]
            days = getattr(user, "days_inactive", None)
            if days is not None:
                fields.append(_field("Days Inactive", days))
            last_seen = _relative_time(getattr(user, "last_check_in", None))
            if last_seen:
                fields.append(_field("Last Check-in", last_seen))
            embed = self._embed(
                "Inactive User Alert",
                "User has been inactive for an extended period",
                COLOR_ORANGE,
                fields,
            )
        elif kind == NotificationType.WEEKLY_REPORT.value:
            embed = self._embed(
                "Weekly Report",
                "Weekly user activity summary",
                COLOR_PURPLE,
                [_field("Report", data.get("summary") or "Weekly metrics are ready", inline=False)],
            )
        elif kind == NotificationType.PAYMENT_FAILED.value:
            fields = [
                _field("Customer", user.email),
                _field("Amount Due", data.get("formatted_amount")),
                _field("Invoice", data.get("invoice_id")),
            ]
            if data.get("customer_name"):
                fields.append(_field("Customer Name", data["customer_name"]))
            embed = self._embed("Payment Failed", "Payment failed for customer", COLOR_RED, fields)
        elif kind == NotificationType.CHECKOUT_COMPLETED.value:
            fields = [_field("Customer", user.email), _field("Amount", data.get("formatted_amount"))]
            if data.get("license_type"):
                fields.append(_field("License", data["license_type"]))
            embed = self._embed("Checkout Completed", "A checkout session completed", COLOR_GREEN, fields)
        elif kind == NotificationType.SUBSCRIPTION_CANCELLED.value:
            fields = [_field("Customer", user.email)]
            if data.get("subscription_id"):
                fields.append(_field("Subscription", data["subscription_id"]))
            embed = self._embed("Subscription Cancelled", "A subscription was cancelled", COLOR_ORANGE, fields)
        else:
            embed = self._embed("Notification", f"{kind} event for user {user.email}", COLOR_GREY)
        return {"embeds": [embed], "username": f"{self._username} Notifications"}

    async def send(self, payload: NotificationPayload) -> NotificationResult:
        try:
            response = await self._post(self._webhook_url, json=self.format_payload(payload))
        except httpx.HTTPError as exc:
            logger.warning("discord_notification_failed type=%s user_id=%s", payload.type_value, payload.user.id, exc_info=exc)
            return self._failure(payload, f"Failed to send Discord notification: {exc}", str(exc) or type(exc).__name__)
        if not response.is_success:
            error = http_error_text(response)
            logger.warning("discord_notification_rejected type=%s status=%s", payload.type_value, response.status_code)
            return self._failure(payload, f"Failed to send Discord notification: {error}", error)
        return self._success(
            payload,
            f"Discord notification sent successfully for {payload.type_value}",
            notification_id=f"discord_{uuid4().hex}",
        )
