from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from beacon.providers.slack_workspace import SlackErrorDetails


class BeaconError(Exception):
    """Base error for Beacon."""


class ProviderConfigError(BeaconError):
    """Missing or invalid notification provider configuration."""


class DatabaseError(BeaconError):
    """Data store failure."""


class LedgerUnavailableError(DatabaseError):
    """Notification ledger could not be queried."""


class RecordingFailedError(DatabaseError):
    """A delivered notification could not be written to the ledger."""

    def __init__(self, message: str, *, user_id: str, reference_id: str, channel: str) -> None:
        super().__init__(message)
        self.user_id = user_id
        self.reference_id = reference_id
        self.channel = channel


class JobProcessorNotFoundError(BeaconError):
    """No processor is registered for a job type."""


class JobPayloadError(BeaconError):
    """Job data failed validation against the processor payload model."""


class JobFailedError(BeaconError):
    """A job processor reported failure."""


class SchedulerClosedError(BeaconError):
    """Job scheduler was used after shutdown."""


class TokenDecryptionError(BeaconError):
    """Stored integration token could not be decrypted."""


class SlackApiError(BeaconError):
    """Slack Web API call failed."""

    def __init__(self, code: str, details: "SlackErrorDetails") -> None:
        super().__init__(f"{code}: {details.message}")
        self.code = code
        self.details = details

    @property
    def retryable(self) -> bool:
        return self.details.retryable
