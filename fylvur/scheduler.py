from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass, field
from typing import Any

from fylvur.errors import Overloaded, PreviewCancelled, PreviewError, PreviewTimeout
from fylvur.models import CancelToken, JobState

logger = logging.getLogger(__name__)

Producer = Callable[[CancelToken], Awaitable[Any]]
SuccessHook = Callable[[Any], None]


@dataclass(eq=False)
class Job:
    key: Hashable
    producer: Producer
    on_success: SuccessHook | None = None
    timeout: float | None = None
    token: CancelToken = field(default_factory=CancelToken)
    state: JobState = JobState.QUEUED
    waiters: list[asyncio.Future] = field(default_factory=list)
    task: asyncio.Task | None = None
    created_at: float = field(default_factory=time.monotonic)


class JobHandle:
    """One requester's attachment to a (possibly shared) job."""

    def __init__(self, scheduler: JobScheduler, job: Job, future: asyncio.Future) -> None:
        self._scheduler = scheduler
        self.job = job
        self.future = future

    @property
    def key(self) -> Hashable:
        return self.job.key

    @property
    def state(self) -> JobState:
        return self.job.state

    def done(self) -> bool:
        return self.future.done()

    async def result(self) -> Any:
        return await self.future

    def cancel(self) -> None:
        self._scheduler.detach(self)


class JobScheduler:
    """Single-flight job table with a global concurrency bound.

    Requests for a key that already has a job attach to it. Jobs beyond
    `max_concurrent` wait in a FIFO queue of at most `max_queue_depth`
    distinct keys; past that, `request` raises `Overloaded`.
    """

    def __init__(self, max_concurrent: int = 4, max_queue_depth: int = 64, job_timeout: float | None = 30.0) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self.max_queue_depth = max_queue_depth
        self.job_timeout = job_timeout
        self._jobs: dict[Hashable, Job] = {}
        self._queue: deque[Job] = deque()
        self._running: set[Job] = set()
        self._closed = False

    @property
    def active_count(self) -> int:
        return len(self._running)

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    def in_flight(self, key: Hashable) -> bool:
        return key in self._jobs

    def request(
        self,
        key: Hashable,
        producer: Producer,
        on_success: SuccessHook | None = None,
        timeout: float | None = None,
    ) -> JobHandle:
        """Attach to the job for `key`, starting or queueing one if needed.

        `timeout` overrides `job_timeout` for a newly created job; requests that
        attach to an existing job keep that job's limit.
        """

        if self._closed:
            raise PreviewCancelled("scheduler is shut down")

        loop = asyncio.get_running_loop()
        job = self._jobs.get(key)
        if job is None:
            if len(self._running) >= self.max_concurrent and len(self._queue) >= self.max_queue_depth:
                raise Overloaded(f"{len(self._queue)} previews already queued")
            job = Job(key=key, producer=producer, on_success=on_success, timeout=timeout or self.job_timeout)
            self._jobs[key] = job
            if len(self._running) < self.max_concurrent:
                self._start(job)
            else:
                self._queue.append(job)
        else:
            logger.debug("Attaching to in-flight job for %s", key)

        future = loop.create_future()
        job.waiters.append(future)
        return JobHandle(self, job, future)

    def detach(self, handle: JobHandle) -> None:
        job = handle.job
        if handle.future.done():
            return

        job.waiters.remove(handle.future)
        handle.future.set_exception(PreviewCancelled("preview request was cancelled"))
        # Mark retrieved; the canceller already knows the outcome.
        handle.future.exception()
        if job.waiters:
            return

        logger.debug("Last waiter left job for %s; cancelling", job.key)
        self._cancel_job(job)

    async def shutdown(self, grace: float = 2.0) -> None:
        self._closed = True
        jobs = list(self._jobs.values())
        for job in jobs:
            self._cancel_job(job, notify=True)

        tasks = [job.task for job in jobs if job.task is not None and not job.task.done()]
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=grace)
            if pending:
                logger.warning("%d preview job(s) did not stop within %.1fs", len(pending), grace)

    def _cancel_job(self, job: Job, notify: bool = False) -> None:
        job.token.cancel()
        if self._jobs.get(job.key) is job:
            del self._jobs[job.key]

        if job.state is JobState.QUEUED:
            self._queue.remove(job)
            job.state = JobState.CANCELLED
            self._notify(job, error=PreviewCancelled("preview job was cancelled"))
            return

        job.state = JobState.CANCELLED
        if notify:
            self._notify(job, error=PreviewCancelled("preview job was cancelled"))
        if job.task is not None:
            job.task.cancel()

    def _start(self, job: Job) -> None:
        job.state = JobState.RUNNING
        self._running.add(job)
        job.task = asyncio.ensure_future(self._run(job))

    async def _run(self, job: Job) -> None:
        started_at = time.monotonic()
        try:
            result = await asyncio.wait_for(job.producer(job.token), timeout=job.timeout)
        except asyncio.CancelledError:
            self._finish(job, error=PreviewCancelled("preview job was cancelled"))
            raise
        except asyncio.TimeoutError:
            job.token.cancel()
            self._finish(job, error=PreviewTimeout(f"preview did not finish within {job.timeout:.1f}s"))
        except PreviewError as exc:
            self._finish(job, error=exc)
        except Exception as exc:
            logger.exception("Preview job for %s failed unexpectedly", job.key)
            self._finish(job, error=exc)
        else:
            logger.info("Preview job for %s done in %.2fs", job.key, time.monotonic() - started_at)
            self._finish(job, result=result)

    def _finish(self, job: Job, result: Any = None, error: BaseException | None = None) -> None:
        # Cache insert, table removal and waiter notification happen without
        # yielding to the loop, so no request observes a key with neither.
        if error is None and job.on_success is not None and job.state is not JobState.CANCELLED:
            try:
                job.on_success(result)
            except Exception:
                # Waiters are still notified below.
                logger.exception("Completion hook for %s failed", job.key)
        if self._jobs.get(job.key) is job:
            del self._jobs[job.key]
        if job.state is not JobState.CANCELLED:
            job.state = JobState.DONE if error is None else JobState.FAILED
        self._notify(job, result=result, error=error)
        self._running.discard(job)
        self._start_next()

    def _notify(self, job: Job, result: Any = None, error: BaseException | None = None) -> None:
        waiters, job.waiters = job.waiters, []
        for waiter in waiters:
            if waiter.done():
                continue
            if error is None:
                waiter.set_result(result)
            else:
                waiter.set_exception(error)

    def _start_next(self) -> None:
        while self._queue and len(self._running) < self.max_concurrent and not self._closed:
            self._start(self._queue.popleft())
