from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import heapq
import itertools
import logging
from typing import Any, Awaitable, Callable, Deque, Iterable, Protocol
from uuid import uuid4

from beacon.core.errors import SchedulerClosedError
from beacon.domain.jobs import JobHandle, JobRequest, JobResult, JobState, JobStats
from beacon.services.jobs.schedule import CronSchedule


logger = logging.getLogger(__name__)

# (job_type, data, attempt) -> result; raises RetryJob to ask for a delayed retry.
JobRunner = Callable[[str, dict[str, Any], int], Awaitable[JobResult]]


class RetryJob(Exception):
    def __init__(self, delay: timedelta, reason: str) -> None:
        super().__init__(reason)
        self.delay = delay
        self.reason = reason


@dataclass(frozen=True)
class RecurringJob:
    job_id: str
    job_type: str
    schedule: CronSchedule
    priority: int
    data: dict[str, Any] = field(default_factory=dict)


class JobBackend(Protocol):
    queue_name: str

    async def enqueue(self, request: JobRequest) -> JobHandle:
        ...

    def add_recurring(self, recurring: RecurringJob) -> bool:
        ...

    async def start(self, runner: JobRunner, job_types: Iterable[str]) -> None:
        ...

    async def stats(self) -> JobStats:
        ...

    async def close(self) -> None:
        ...


@dataclass
class _QueuedJob:
    job_id: str
    job_type: str
    data: dict[str, Any]
    priority: int
    attempt: int = 1


@dataclass(frozen=True)
class FinishedJob:
    job_id: str
    job_type: str
    state: JobState
    attempts: int
    finished_at: datetime
    result: dict[str, Any] | None = None
    error: str | None = None


class InProcessJobBackend:
    # asyncio rendition of the queue contract: priority order, delayed visibility,
    # bounded concurrency, cron tickers and retention limits, all in one process.
    def __init__(
        self,
        queue_name: str,
        *,
        concurrency: int = 5,
        keep_completed: int = 50,
        keep_failed: int = 100,
    ) -> None:
        self.queue_name = queue_name
        self._concurrency = max(1, int(concurrency))
        self._ready: list[tuple[int, int, _QueuedJob]] = []
        self._delayed: list[tuple[float, int, _QueuedJob]] = []
        self._pending_ids: set[str] = set()
        self._active: dict[str, asyncio.Task[None]] = {}
        self._completed: Deque[FinishedJob] = deque(maxlen=max(0, keep_completed))
        self._failed: Deque[FinishedJob] = deque(maxlen=max(0, keep_failed))
        self._recurring: dict[str, RecurringJob] = {}
        self._tickers: dict[str, asyncio.Task[None]] = {}
        self._seq = itertools.count()
        self._wakeup = asyncio.Event()
        self._runner: JobRunner | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def started(self) -> bool:
        return self._loop_task is not None

    def _is_known(self, job_id: str) -> bool:
        if job_id in self._pending_ids:
            return True
        # Finished jobs keep their id reserved while retained, mirroring arq's result keys.
        return any(job.job_id == job_id for job in itertools.chain(self._completed, self._failed))

    def _push(self, job: _QueuedJob, delay_s: float) -> None:
        if delay_s > 0:
            ready_at = asyncio.get_running_loop().time() + delay_s
            heapq.heappush(self._delayed, (ready_at, next(self._seq), job))
        else:
            # Higher priority first, FIFO within a priority.
            heapq.heappush(self._ready, (-int(job.priority), next(self._seq), job))
        self._wakeup.set()

    async def enqueue(self, request: JobRequest) -> JobHandle:
        if self._closed:
            raise SchedulerClosedError(f"queue {self.queue_name} is closed")
        job_id = request.job_id or uuid4().hex
        if self._is_known(job_id):
            return JobHandle(job_id=job_id, job_type=request.job_type, queue_name=self.queue_name, enqueued=False)
        job = _QueuedJob(job_id=job_id, job_type=request.job_type, data=dict(request.data), priority=request.priority)
        self._pending_ids.add(job_id)
        self._push(job, (request.delay_ms or 0) / 1000.0)
        return JobHandle(job_id=job_id, job_type=request.job_type, queue_name=self.queue_name)

    def add_recurring(self, recurring: RecurringJob) -> bool:
        existing = self._recurring.get(recurring.job_id)
        if existing == recurring:
            return False
        self._recurring[recurring.job_id] = recurring
        if self.started and not self._closed:
            self._start_ticker(recurring)
        return True

    def _start_ticker(self, recurring: RecurringJob) -> None:
        previous = self._tickers.pop(recurring.job_id, None)
        if previous is not None:
            previous.cancel()
        self._tickers[recurring.job_id] = asyncio.create_task(self._tick(recurring))

    async def _tick(self, recurring: RecurringJob) -> None:
        while not self._closed:
            now = datetime.now(timezone.utc)
            next_run = recurring.schedule.next_after(now)
            await asyncio.sleep(max(0.0, (next_run - now).total_seconds()))
            # One id per tick, so overlapping fires of the same schedule collapse.
            tick_id = f"{recurring.job_id}:{int(next_run.timestamp() * 1000)}"
            if self._closed:
                return
            try:
                await self.enqueue(
                    JobRequest(
                        queue_name=self.queue_name,
                        job_type=recurring.job_type,
                        data=recurring.data,
                        priority=recurring.priority,
                        job_id=tick_id,
                    )
                )
            except Exception:  # noqa: BLE001 - keep the schedule alive while surfacing failures in worker logs.
                logger.exception("recurring_job_enqueue_failed queue=%s job_id=%s", self.queue_name, tick_id)

    async def start(self, runner: JobRunner, job_types: Iterable[str] = ()) -> None:
        if self._closed:
            raise SchedulerClosedError(f"queue {self.queue_name} is closed")
        if self.started:
            return
        self._runner = runner
        self._loop_task = asyncio.create_task(self._dispatch_loop())
        for recurring in self._recurring.values():
            self._start_ticker(recurring)

    def _promote_due(self, now: float) -> None:
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job = heapq.heappop(self._delayed)
            heapq.heappush(self._ready, (-int(job.priority), next(self._seq), job))

    async def _dispatch_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._closed:
            self._promote_due(loop.time())
            while self._ready and len(self._active) < self._concurrency:
                _, _, job = heapq.heappop(self._ready)
                self._active[job.job_id] = asyncio.create_task(self._run(job))
            timeout = None
            if self._delayed:
                timeout = max(0.0, self._delayed[0][0] - loop.time())
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout)
            except asyncio.TimeoutError:
                continue

    async def _run(self, job: _QueuedJob) -> None:
        runner = self._runner
        if runner is None:
            raise RuntimeError("job backend started without a runner")
        try:
            result = await runner(job.job_type, job.data, job.attempt)
        except RetryJob as retry:
            job.attempt += 1
            self._push(job, retry.delay.total_seconds())
            return
        except Exception as exc:  # noqa: BLE001 - route any crash to the failed state
            self._pending_ids.discard(job.job_id)
            self._failed.append(
                FinishedJob(
                    job_id=job.job_id,
                    job_type=job.job_type,
                    state=JobState.FAILED,
                    attempts=job.attempt,
                    finished_at=datetime.now(timezone.utc),
                    error=str(exc) or type(exc).__name__,
                )
            )
        else:
            self._pending_ids.discard(job.job_id)
            self._completed.append(
                FinishedJob(
                    job_id=job.job_id,
                    job_type=job.job_type,
                    state=JobState.COMPLETED,
                    attempts=job.attempt,
                    finished_at=datetime.now(timezone.utc),
                    result=result.as_dict(),
                )
            )
        finally:
            self._active.pop(job.job_id, None)
            self._wakeup.set()

    async def stats(self) -> JobStats:
        return JobStats(
            waiting=len(self._ready) + len(self._delayed),
            active=len(self._active),
            completed=len(self._completed),
            failed=len(self._failed),
        )

    def finished_jobs(self, state: JobState | None = None) -> list[FinishedJob]:
        jobs = list(itertools.chain(self._completed, self._failed))
        if state is not None:
            jobs = [job for job in jobs if job.state == state]
        return sorted(jobs, key=lambda job: job.finished_at)

    async def join(self, *, include_delayed: bool = False, timeout_s: float = 10.0) -> None:
        # Wait until no ready or running work is left; inline callers and tests use this.
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s
        while self._ready or self._active or (include_delayed and self._delayed):
            if loop.time() >= deadline:
                raise TimeoutError(f"queue {self.queue_name} did not drain within {timeout_s}s")
            await asyncio.sleep(0.005)

    async def close(self) -> None:
        # Safe on a backend that never started; in-flight jobs finish before returning.
        if self._closed:
            return
        self._closed = True
        self._wakeup.set()
        for ticker in self._tickers.values():
            ticker.cancel()
        await asyncio.gather(*self._tickers.values(), return_exceptions=True)
        self._tickers.clear()
        if self._loop_task is not None:
            await self._loop_task
        if self._active:
            await asyncio.gather(*self._active.values(), return_exceptions=True)
        dropped = len(self._ready) + len(self._delayed)
        if dropped:
            logger.warning("job_queue_closed_with_pending queue=%s dropped=%s", self.queue_name, dropped)
