from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
import logging
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ValidationError

from beacon.core.errors import (
    JobFailedError,
    JobPayloadError,
    JobProcessorNotFoundError,
    SchedulerClosedError,
)
from beacon.domain.jobs import EmptyJobData, JobHandle, JobPriority, JobRequest, JobResult, JobStats, JobType
from beacon.services.jobs.backends import JobBackend, RecurringJob, RetryJob
from beacon.services.jobs.schedule import CronSchedule
from beacon.services.resilience import RetryPolicy
from beacon.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

JobHandler = Callable[[Any], Awaitable[JobResult]]


@dataclass(frozen=True)
class JobProcessor:
    job_type: str
    handler: JobHandler
    payload_model: type[BaseModel] = EmptyJobData


def _job_type_value(job_type: JobType | str) -> str:
    return job_type.value if isinstance(job_type, JobType) else str(job_type)


class JobScheduler:
    def __init__(self, backend: JobBackend, *, policy: RetryPolicy) -> None:
        self._backend = backend
        self._policy = policy
        self._processors: dict[str, JobProcessor] = {}
        self._started = False
        self._closed = False

    @property
    def queue_name(self) -> str:
        return self._backend.queue_name

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def register_processor(
        self,
        job_type: JobType | str,
        handler: JobHandler,
        payload_model: type[BaseModel] = EmptyJobData,
    ) -> None:
        key = _job_type_value(job_type)
        self._processors[key] = JobProcessor(job_type=key, handler=handler, payload_model=payload_model)

    def registered_job_types(self) -> list[str]:
        return sorted(self._processors)

    def _validate(self, job_type: str, data: dict[str, Any] | None) -> BaseModel:
        processor = self._processors.get(job_type)
        if processor is None:
            raise JobProcessorNotFoundError(f"no processor registered for job type: {job_type}")
        try:
            return processor.payload_model.model_validate(data or {})
        except ValidationError as exc:
            raise JobPayloadError(f"invalid payload for {job_type}: {exc}") from exc

    def register_recurring(
        self,
        job_type: JobType | str,
        schedule: CronSchedule | str,
        priority: int = JobPriority.NORMAL,
        job_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> bool:
        # Idempotent per stable job id; returns False when nothing changed.
        key = _job_type_value(job_type)
        self._validate(key, data)
        parsed = schedule if isinstance(schedule, CronSchedule) else CronSchedule.parse(schedule)
        recurring = RecurringJob(
            job_id=job_id or f"recurring:{key}",
            job_type=key,
            schedule=parsed,
            priority=int(priority),
            data=dict(data or {}),
        )
        added = self._backend.add_recurring(recurring)
        logger.info(
            "recurring_job_registered queue=%s job_id=%s schedule=%s added=%s",
            self.queue_name,
            recurring.job_id,
            parsed.expression,
            added,
        )
        return added

    async def trigger_once(
        self,
        job_type: JobType | str,
        data: dict[str, Any] | None = None,
        *,
        priority: int = JobPriority.HIGH,
        delay: timedelta | None = None,
        job_id: str | None = None,
    ) -> JobHandle:
        if self._closed:
            raise SchedulerClosedError(f"scheduler for {self.queue_name} is shut down")
        key = _job_type_value(job_type)
        payload = self._validate(key, data)
        delay_ms = int(delay.total_seconds() * 1000) if delay else None
        handle = await self._backend.enqueue(
            JobRequest(
                queue_name=self.queue_name,
                job_type=key,
                data=payload.model_dump(mode="json"),
                priority=int(priority),
                delay_ms=delay_ms,
                job_id=job_id,
            )
        )
        logger.info(
            "job_enqueued queue=%s job_type=%s job_id=%s priority=%s delay_ms=%s enqueued=%s",
            self.queue_name,
            key,
            handle.job_id,
            int(priority),
            delay_ms,
            handle.enqueued,
        )
        return handle

    async def run_job(self, job_type: str, data: dict[str, Any], attempt: int) -> JobResult:
        # Unknown types and bad payloads fail at once; handler failures follow the retry policy.
        payload = self._validate(job_type, data)
        processor = self._processors[job_type]
        try:
            result = await processor.handler(payload)
        except Exception as exc:  # noqa: BLE001 - converted into a retry or a terminal failure below
            logger.exception("job_crashed queue=%s job_type=%s attempt=%s", self.queue_name, job_type, attempt)
            reason = str(exc) or type(exc).__name__
        else:
            if result.success:
                increment_counter(f"jobs_completed_total.{job_type}")
                logger.info("job_completed queue=%s job_type=%s attempt=%s", self.queue_name, job_type, attempt)
                return result
            reason = result.message

        if self._policy.should_retry(attempt):
            delay = self._policy.delay_for(attempt)
            increment_counter(f"jobs_retried_total.{job_type}")
            logger.warning(
                "job_retry_scheduled queue=%s job_type=%s attempt=%s delay_ms=%s reason=%s",
                self.queue_name,
                job_type,
                attempt,
                int(delay.total_seconds() * 1000),
                reason,
            )
            raise RetryJob(delay, reason)
        increment_counter(f"jobs_failed_total.{job_type}")
        logger.error("job_failed queue=%s job_type=%s attempts=%s reason=%s", self.queue_name, job_type, attempt, reason)
        raise JobFailedError(reason)

    async def get_stats(self) -> JobStats:
        return await self._backend.stats()

    async def start(self) -> None:
        if self._closed:
            raise SchedulerClosedError(f"scheduler for {self.queue_name} is shut down")
        if self._started:
            return
        await self._backend.start(self.run_job, self.registered_job_types())
        self._started = True
        logger.info("job_scheduler_started queue=%s job_types=%s", self.queue_name, ",".join(self.registered_job_types()))

    async def shutdown(self) -> None:
        # Safe to call repeatedly and before start().
        if self._closed:
            return
        self._closed = True
        await self._backend.close()
        logger.info("job_scheduler_stopped queue=%s", self.queue_name)
