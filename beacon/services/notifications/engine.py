from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable

import httpx

from beacon.domain.notifications import (
    NotificationChannel,
    NotificationPayload,
    NotificationResult,
    NotificationType,
    UserRecord,
    channel_value,
    type_value,
)
from beacon.providers.notify.base import NotificationProvider
from beacon.providers.notify.factory import build_providers
from beacon.services.notifications.config import NotificationConfig
from beacon.services.notifications.reference_ids import build_reference_id


logger = logging.getLogger(__name__)

PROVIDER_NOT_CONFIGURED = "Provider not configured"

ProviderBuilder = Callable[[NotificationConfig], dict[str, NotificationProvider]]


def _user_fields(user: UserRecord) -> dict[str, Any]:
    # Type-specific record fields travel with the payload so providers can render them.
    fields: dict[str, Any] = {}
    for name in ("created_at", "paid_at", "license_id", "license_type", "stripe_payment_id",
                 "stripe_customer_id", "last_check_in", "days_inactive"):
        value = getattr(user, name, None)
        if value is not None:
            fields[name] = value
    return fields


class NotificationEngine:
    def __init__(
        self,
        config: NotificationConfig,
        *,
        client: httpx.AsyncClient | None = None,
        provider_builder: ProviderBuilder | None = None,
    ) -> None:
        self._client = client
        self._provider_builder = provider_builder or (lambda cfg: build_providers(cfg, client=self._client))
        self._config = config
        self._providers: dict[str, NotificationProvider] = {}
        self._initialize_providers()

    def _initialize_providers(self) -> None:
        self._providers = dict(self._provider_builder(self._config))
        logger.info("notification_engine_initialized channels=%s", ",".join(sorted(self._providers)) or "none")

    def get_config(self) -> NotificationConfig:
        return self._config.model_copy(deep=True)

    def update_config(self, config: NotificationConfig) -> None:
        # Full rebuild; providers from the previous config are discarded.
        self._config = config
        self._providers = {}
        self._initialize_providers()

    def available_channels(self) -> list[str]:
        return sorted(self._providers)

    def is_channel_enabled(self, channel: NotificationChannel | str) -> bool:
        return channel_value(channel) in self._providers

    def channels_for(self, notification_type: NotificationType | str) -> list[str]:
        return [channel_value(channel) for channel in self._config.channels_for(notification_type)]

    async def _send_one(self, payload: NotificationPayload, channel: str) -> NotificationResult:
        provider = self._providers.get(channel)
        if provider is None:
            return NotificationResult(
                success=False,
                message=f"No provider configured for channel: {channel}",
                user_id=payload.user.id,
                reference_id=payload.reference_id,
                channel=channel,
                error=PROVIDER_NOT_CONFIGURED,
            )
        try:
            return await provider.send(payload)
        except Exception as exc:  # noqa: BLE001 - one channel's crash must not abort siblings
            logger.exception(
                "notification_provider_crashed channel=%s type=%s user_id=%s",
                channel,
                payload.type_value,
                payload.user.id,
            )
            return NotificationResult(
                success=False,
                message=f"Provider error on channel {channel}",
                user_id=payload.user.id,
                reference_id=payload.reference_id,
                channel=channel,
                error=str(exc) or type(exc).__name__,
            )

    async def send_notification(
        self,
        payload: NotificationPayload,
        channels: Iterable[NotificationChannel | str],
    ) -> list[NotificationResult]:
        # Channels are independent; results come back in the requested order.
        requested = [channel_value(channel) for channel in channels]
        if not requested:
            return []
        return list(await asyncio.gather(*(self._send_one(payload, channel) for channel in requested)))

    async def send_for_event_type(
        self,
        user: UserRecord,
        notification_type: NotificationType | str,
        data: dict[str, Any] | None = None,
        channels: Iterable[NotificationChannel | str] | None = None,
        *,
        reference_id: str | None = None,
    ) -> list[NotificationResult]:
        target = list(channels) if channels is not None else self.channels_for(notification_type)
        if not target:
            logger.info("notification_no_channels type=%s", type_value(notification_type))
            return []
        payload_data = {**_user_fields(user), **(data or {})}
        payload = NotificationPayload(
            type=notification_type,
            user=user,
            reference_id=reference_id or build_reference_id(notification_type, user, data=payload_data),
            data=payload_data,
        )
        return await self.send_notification(payload, target)
