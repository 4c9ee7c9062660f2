from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Iterable

from arq import Retry, create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.constants import in_progress_key_prefix
from arq.cron import CronJob, cron
from arq.worker import Function, Worker, func

from beacon.core.errors import SchedulerClosedError
from beacon.domain.jobs import JobHandle, JobRequest, JobStats
from beacon.services.jobs.backends import JobRunner, RecurringJob, RetryJob


logger = logging.getLogger(__name__)


def priority_defer_until(priority: int, *, lead_ms: int, now: datetime | None = None) -> datetime:
    # arq pops the lowest score first; backdating by priority moves urgent jobs ahead.
    current = now or datetime.now(timezone.utc)
    return current - timedelta(milliseconds=max(0, int(priority)) * max(0, int(lead_ms)))


class ArqJobBackend:
    def __init__(
        self,
        queue_name: str,
        *,
        redis_settings: RedisSettings,
        concurrency: int = 5,
        max_tries: int = 3,
        keep_result_s: int = 3600,
        job_timeout_s: int = 300,
        priority_lead_ms: int = 1000,
        pool: ArqRedis | None = None,
    ) -> None:
        self.queue_name = queue_name
        self._redis_settings = redis_settings
        self._concurrency = max(1, int(concurrency))
        self._max_tries = max(1, int(max_tries))
        self._keep_result_s = max(0, int(keep_result_s))
        self._job_timeout_s = max(1, int(job_timeout_s))
        self._priority_lead_ms = max(0, int(priority_lead_ms))
        self._pool = pool
        self._pool_lock = asyncio.Lock()
        self._recurring: dict[str, RecurringJob] = {}
        self._runner: JobRunner | None = None
        self._worker: Worker | None = None
        self._worker_task: asyncio.Task[None] | None = None
        self._closed = False

    async def _get_pool(self) -> ArqRedis:
        if self._pool is not None:
            return self._pool
        async with self._pool_lock:
            if self._pool is None:
                self._pool = await create_pool(self._redis_settings, default_queue_name=self.queue_name)
        return self._pool

    def enqueue_options(self, request: JobRequest, job_id: str, *, now: datetime | None = None) -> dict[str, Any]:
        options: dict[str, Any] = {"_job_id": job_id, "_queue_name": self.queue_name}
        if request.delay_ms:
            # Delayed jobs keep their eligibility time; priority only orders ready work.
            options["_defer_by"] = timedelta(milliseconds=request.delay_ms)
        elif request.priority and self._priority_lead_ms:
            options["_defer_until"] = priority_defer_until(request.priority, lead_ms=self._priority_lead_ms, now=now)
        return options

    async def enqueue(self, request: JobRequest) -> JobHandle:
        if self._closed:
            raise SchedulerClosedError(f"queue {self.queue_name} is closed")
        job_id = request.job_id or f"{request.job_type}:{datetime.now(timezone.utc).timestamp():.6f}"
        pool = await self._get_pool()
        job = await pool.enqueue_job(request.job_type, request.data, **self.enqueue_options(request, job_id))
        # When a job id already exists, arq returns None; keep tracing with the same id.
        return JobHandle(
            job_id=job.job_id if job else job_id,
            job_type=request.job_type,
            queue_name=self.queue_name,
            enqueued=job is not None,
        )

    def add_recurring(self, recurring: RecurringJob) -> bool:
        if self._recurring.get(recurring.job_id) == recurring:
            return False
        self._recurring[recurring.job_id] = recurring
        if self._worker is not None:
            logger.warning("recurring_job_registered_after_start queue=%s job_id=%s", self.queue_name, recurring.job_id)
        return True

    def _job_function(self, job_type: str) -> Function:
        async def _run(ctx: dict[str, Any], data: dict[str, Any] | None = None) -> dict[str, Any]:
            runner = self._runner
            if runner is None:
                raise RuntimeError("job backend started without a runner")
            attempt = int(ctx.get("job_try") or 1)
            try:
                result = await runner(job_type, data or {}, attempt)
            except RetryJob as retry:
                raise Retry(defer=retry.delay) from retry
            return result.as_dict()

        return func(_run, name=job_type, max_tries=self._max_tries)

    def _cron_job(self, recurring: RecurringJob) -> CronJob:
        handler = self._job_function(recurring.job_type).coroutine

        async def _tick(ctx: dict[str, Any]) -> dict[str, Any]:
            return await handler(ctx, dict(recurring.data))

        # arq derives "<name>:<run ms>" per tick, so each tick is enqueued once across workers.
        return cron(
            _tick,
            name=recurring.job_id,
            unique=True,
            max_tries=self._max_tries,
            keep_result=self._keep_result_s,
            **recurring.schedule.arq_kwargs(),
        )

    def build_worker(self, job_types: Iterable[str]) -> Worker:
        return Worker(
            functions=[self._job_function(job_type) for job_type in job_types],
            cron_jobs=[self._cron_job(recurring) for recurring in self._recurring.values()],
            redis_settings=self._redis_settings,
            queue_name=self.queue_name,
            max_jobs=self._concurrency,
            job_timeout=self._job_timeout_s,
            keep_result=self._keep_result_s,
            max_tries=self._max_tries,
            handle_signals=False,
            timezone=timezone.utc,
        )

    async def start(self, runner: JobRunner, job_types: Iterable[str] = ()) -> None:
        if self._closed:
            raise SchedulerClosedError(f"queue {self.queue_name} is closed")
        if self._worker is not None:
            return
        self._runner = runner
        self._worker = self.build_worker(job_types)
        self._worker_task = asyncio.create_task(self._worker.async_run())
        logger.info("job_worker_started queue=%s max_jobs=%s", self.queue_name, self._concurrency)

    async def stats(self) -> JobStats:
        pool = await self._get_pool()
        job_ids = await pool.zrange(self.queue_name, 0, -1)
        active = 0
        for raw in job_ids:
            job_id = raw.decode() if isinstance(raw, (bytes, bytearray)) else str(raw)
            # In-progress jobs stay in the queue set until they finish.
            if await pool.exists(in_progress_key_prefix + job_id):
                active += 1
        completed = 0
        failed = 0
        for result in await pool.all_job_results():
            if getattr(result, "queue_name", self.queue_name) != self.queue_name:
                continue
            if result.success:
                completed += 1
            else:
                failed += 1
        return JobStats(waiting=len(job_ids) - active, active=active, completed=completed, failed=failed)

    async def close(self) -> None:
        # Safe when never started; in-flight jobs finish inside Worker.close().
        if self._closed:
            return
        self._closed = True
        if self._worker_task is not None:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
        if self._worker is not None:
            await self._worker.close()
        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None
