from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
import logging
from typing import Any, Awaitable, Callable

from beacon.core.config import Settings, get_settings
from beacon.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

BACKOFF_EXPONENTIAL = "exponential"
BACKOFF_LINEAR = "linear"
BACKOFF_FIXED = "fixed"


@dataclass(frozen=True)
class RetryPolicy:
    # Attempts count the first try; max_attempts=3 means two retries.
    max_attempts: int = 3
    base_delay_ms: int = 2000
    strategy: str = BACKOFF_EXPONENTIAL
    max_delay_ms: int | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must be non-negative")
        if self.strategy not in {BACKOFF_EXPONENTIAL, BACKOFF_LINEAR, BACKOFF_FIXED}:
            raise ValueError(f"unknown backoff strategy: {self.strategy}")

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    def delay_ms(self, attempt: int) -> int:
        # Delay before the retry that follows the given failed attempt (1-based).
        step = max(1, int(attempt))
        if self.strategy == BACKOFF_EXPONENTIAL:
            delay = self.base_delay_ms * (2 ** (step - 1))
        elif self.strategy == BACKOFF_LINEAR:
            delay = self.base_delay_ms * step
        else:
            delay = self.base_delay_ms
        if self.max_delay_ms is not None:
            delay = min(delay, self.max_delay_ms)
        return int(delay)

    def delay_for(self, attempt: int) -> timedelta:
        return timedelta(milliseconds=self.delay_ms(attempt))


def job_retry_policy(settings: Settings | None = None) -> RetryPolicy:
    settings = settings or get_settings()
    return RetryPolicy(
        max_attempts=max(1, int(settings.job_max_attempts)),
        base_delay_ms=max(0, int(settings.job_backoff_base_ms)),
        strategy=BACKOFF_EXPONENTIAL,
        max_delay_ms=max(int(settings.job_backoff_base_ms), int(settings.job_backoff_max_ms)),
    )


def slack_retry_policy(settings: Settings | None = None) -> RetryPolicy:
    settings = settings or get_settings()
    return RetryPolicy(
        max_attempts=max(1, int(settings.slack_retry_attempts)),
        base_delay_ms=max(0, int(settings.slack_retry_backoff_ms)),
        strategy=BACKOFF_LINEAR,
        max_delay_ms=max(0, int(settings.slack_retry_backoff_max_ms)),
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool],
    timeout_ms: int | None = None,
    name: str = "external",
) -> Any:
    # Retry only failures the caller classifies as transient; everything else surfaces at once.
    attempt = 1
    while True:
        try:
            if timeout_ms:
                return await asyncio.wait_for(func(), timeout=timeout_ms / 1000.0)
            return await func()
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if not policy.should_retry(attempt) or not retryable(exc):
                raise
            delay_ms = policy.delay_ms(attempt)
            increment_counter(f"external_retries_total.{name}")
            logger.warning(
                "external_call_retry name=%s attempt=%s delay_ms=%s error=%s",
                name,
                attempt,
                delay_ms,
                exc,
            )
            await asyncio.sleep(delay_ms / 1000.0)
            attempt += 1
