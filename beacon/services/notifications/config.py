from __future__ import annotations

import json

from pydantic import BaseModel, Field

from beacon.core.config import Settings, get_settings
from beacon.domain.notifications import NotificationChannel, NotificationType


class DiscordChannelConfig(BaseModel):
    enabled: bool = False
    webhook_url: str | None = None
    username: str = "Beacon"


class EmailChannelConfig(BaseModel):
    enabled: bool = False
    api_key: str | None = None
    api_url: str = "https://app.loops.so/api/v1/transactional"
    # Notification type -> Loops transactional template id.
    templates: dict[str, str] = Field(default_factory=dict)


class SlackChannelConfig(BaseModel):
    enabled: bool = False
    webhook_url: str | None = None


class SmsChannelConfig(BaseModel):
    enabled: bool = False


class ChannelsConfig(BaseModel):
    discord: DiscordChannelConfig = Field(default_factory=DiscordChannelConfig)
    email: EmailChannelConfig = Field(default_factory=EmailChannelConfig)
    slack: SlackChannelConfig = Field(default_factory=SlackChannelConfig)
    sms: SmsChannelConfig = Field(default_factory=SmsChannelConfig)


class NotificationConfig(BaseModel):
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    # Notification type -> ordered default channel list.
    events: dict[str, list[NotificationChannel]] = Field(default_factory=dict)

    def channels_for(self, notification_type: NotificationType | str) -> list[NotificationChannel]:
        key = notification_type.value if isinstance(notification_type, NotificationType) else str(notification_type)
        return list(self.events.get(key, []))


def _parse_event_channels(raw: str) -> dict[str, list[NotificationChannel]]:
    # Invalid JSON is a startup error; unknown channel names fail pydantic validation later.
    parsed = json.loads(raw or "{}")
    if not isinstance(parsed, dict):
        raise ValueError("notify_event_channels_json must be a JSON object")
    return {str(key): [NotificationChannel(item) for item in value] for key, value in parsed.items()}


def notification_config_from_settings(settings: Settings | None = None) -> NotificationConfig:
    settings = settings or get_settings()
    templates = {
        NotificationType.PAID_USER.value: settings.loops_template_paid_user,
        NotificationType.NEW_USER.value: settings.loops_template_new_user,
        NotificationType.INACTIVE_USER.value: settings.loops_template_inactive_user,
        NotificationType.WEEKLY_REPORT.value: settings.loops_template_weekly_report,
    }
    return NotificationConfig(
        channels=ChannelsConfig(
            discord=DiscordChannelConfig(
                enabled=settings.discord_enabled,
                webhook_url=settings.discord_webhook_url,
                username=settings.discord_username,
            ),
            email=EmailChannelConfig(
                enabled=settings.email_enabled,
                api_key=settings.loops_api_key,
                api_url=settings.loops_api_url,
                templates={key: value for key, value in templates.items() if value},
            ),
            slack=SlackChannelConfig(
                enabled=settings.slack_webhook_enabled,
                webhook_url=settings.slack_webhook_url,
            ),
            sms=SmsChannelConfig(enabled=settings.sms_enabled),
        ),
        events=_parse_event_channels(settings.notify_event_channels_json),
    )
