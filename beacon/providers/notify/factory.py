from __future__ import annotations

import logging

import httpx

from beacon.core.errors import ProviderConfigError
from beacon.domain.notifications import NotificationChannel
from beacon.providers.notify.base import NotificationProvider
from beacon.providers.notify.discord import DiscordNotificationProvider
from beacon.providers.notify.loops import LoopsNotificationProvider
from beacon.providers.notify.slack_webhook import SlackWebhookNotificationProvider
from beacon.services.notifications.config import NotificationConfig


logger = logging.getLogger(__name__)


def build_providers(
    config: NotificationConfig,
    *,
    client: httpx.AsyncClient | None = None,
) -> dict[str, NotificationProvider]:
    # Enabled channels with missing credentials are left out instead of failing startup.
    providers: dict[str, NotificationProvider] = {}
    channels = config.channels
    if channels.discord.enabled:
        try:
            providers[NotificationChannel.DISCORD.value] = DiscordNotificationProvider(
                channels.discord.webhook_url,
                username=channels.discord.username,
                client=client,
            )
        except ProviderConfigError as exc:
            logger.warning("notification_provider_unavailable channel=discord reason=%s", exc)
    if channels.email.enabled:
        try:
            providers[NotificationChannel.EMAIL.value] = LoopsNotificationProvider(
                channels.email.api_key,
                templates=channels.email.templates,
                api_url=channels.email.api_url,
                client=client,
            )
        except ProviderConfigError as exc:
            logger.warning("notification_provider_unavailable channel=email reason=%s", exc)
    if channels.slack.enabled:
        try:
            providers[NotificationChannel.SLACK.value] = SlackWebhookNotificationProvider(
                channels.slack.webhook_url,
                client=client,
            )
        except ProviderConfigError as exc:
            logger.warning("notification_provider_unavailable channel=slack reason=%s", exc)
    if channels.sms.enabled:
        logger.warning("notification_provider_unavailable channel=sms reason=no provider implementation")
    return providers
