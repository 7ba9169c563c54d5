"""
durable_sdk.tier0_core.tasks
─────────────────────────────
Job queue abstraction. The engine schedules three kinds of jobs:

  workflow.run   one replay pass of a workflow definition
  activity.run   one activity invocation
  timer.fire     a delayed resume for a durable timer

Delivery is at-least-once. Handlers may release a job back to the queue
(requeue without counting a failure), and workers announce shutdown to
registered stopping callbacks.

Backends: inprocess (tests/local; runs jobs one at a time on demand)
Select via: DURABLE_QUEUE_BACKEND=inprocess
"""
from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from durable_sdk.tier0_core.errors import ConfigurationError
from durable_sdk.tier0_core.ids import new_uuid4
from durable_sdk.tier0_core.logging import get_logger
from durable_sdk.tier1_runtime import clock

log = get_logger(__name__)


# ── Data models ────────────────────────────────────────────────────────────

@dataclass
class Job:
    name: str
    payload: dict[str, Any]
    queue: str = "default"
    max_attempts: int | None = None
    # at most one job per key is queued or in flight at a time
    unique_key: str | None = None
    available_at: datetime | None = None
    job_id: str = field(default_factory=new_uuid4)
    attempts: int = 0
    released: bool = False
    release_delay: float = 0.0

    def release(self, delay_seconds: float = 0.0) -> None:
        """Ask the queue to redeliver this job later instead of completing it."""
        self.released = True
        self.release_delay = delay_seconds


@dataclass
class TaskResult:
    job_id: str
    status: str  # queued | duplicate | released | completed | failed | unknown
    result: Any = None
    error: str | None = None


JobHandler = Callable[[Job], Awaitable[Any]]
FailureHook = Callable[[Job, BaseException], Awaitable[None]]
StoppingCallback = Callable[[], Awaitable[None]]


# ── Protocol ───────────────────────────────────────────────────────────────

@runtime_checkable
class TaskQueueProvider(Protocol):
    """Abstract job queue: swap backends without changing engine code."""

    def register(
        self, name: str, handler: JobHandler, on_failure: FailureHook | None = None
    ) -> None: ...

    async def enqueue(self, job: Job, *, delay_seconds: float = 0) -> TaskResult: ...

    async def get_status(self, job_id: str) -> TaskResult: ...

    def on_stopping(self, callback: StoppingCallback) -> None: ...

    def remove_stopping(self, callback: StoppingCallback) -> None: ...

    async def stop(self) -> None: ...


# ── In-process provider (dev/test) ─────────────────────────────────────────

class InProcessTaskProvider:
    """
    Single-worker FIFO queue living in the current event loop.

    Jobs run only when a caller drives the queue with run_until_idle() or
    work(). Delayed jobs become runnable once the global clock passes their
    available_at, which lets tests advance time deterministically.
    NOT suitable for production.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, tuple[JobHandler, FailureHook | None]] = {}
        self._pending: deque[Job] = deque()
        self._unique: set[str] = set()
        self._results: dict[str, TaskResult] = {}
        self._stopping: list[StoppingCallback] = []
        self._stopped = False

    def register(
        self, name: str, handler: JobHandler, on_failure: FailureHook | None = None
    ) -> None:
        self._handlers[name] = (handler, on_failure)

    async def enqueue(self, job: Job, *, delay_seconds: float = 0) -> TaskResult:
        if job.unique_key is not None:
            if job.unique_key in self._unique:
                log.debug("job.duplicate", job=job.name, unique_key=job.unique_key)
                return TaskResult(job_id=job.job_id, status="duplicate")
            self._unique.add(job.unique_key)

        job.available_at = clock.now() + timedelta(seconds=delay_seconds)
        self._pending.append(job)
        result = TaskResult(job_id=job.job_id, status="queued")
        self._results[job.job_id] = result
        return result

    async def get_status(self, job_id: str) -> TaskResult:
        if job_id in self._results:
            return self._results[job_id]
        return TaskResult(job_id=job_id, status="unknown")

    @property
    def pending(self) -> list[Job]:
        return list(self._pending)

    def _take_available(self) -> Job | None:
        current = clock.now()
        for job in self._pending:
            if job.available_at is None or job.available_at <= current:
                self._pending.remove(job)
                return job
        return None

    async def run_next(self) -> bool:
        """Run the first available job. Returns False when nothing is runnable."""
        job = self._take_available()
        if job is None:
            return False
        await self._process(job)
        return True

    async def run_until_idle(self, max_jobs: int = 10_000) -> int:
        """Drain every runnable job, including jobs enqueued while draining."""
        processed = 0
        while processed < max_jobs and await self.run_next():
            processed += 1
        return processed

    async def work(self, poll_interval: float = 0.1) -> None:
        """Run jobs until stop() is called."""
        self._stopped = False
        while not self._stopped:
            if not await self.run_next():
                await asyncio.sleep(poll_interval)

    async def _process(self, job: Job) -> None:
        from durable_sdk.tier1_runtime.retry import job_retrying

        entry = self._handlers.get(job.name)
        if entry is None:
            self._finish(job, TaskResult(job.job_id, "failed", error=f"No handler for {job.name!r}"))
            log.error("job.unhandled", job=job.name, job_id=job.job_id)
            return
        handler, on_failure = entry

        job.released = False
        try:
            async for attempt in job_retrying(job.max_attempts):
                with attempt:
                    job.attempts += 1
                    out = await handler(job)
        except Exception as exc:
            self._finish(job, TaskResult(job.job_id, "failed", error=str(exc)))
            log.warning("job.failed", job=job.name, job_id=job.job_id, attempts=job.attempts, error=str(exc))
            if on_failure is not None:
                try:
                    await on_failure(job, exc)
                except Exception:
                    log.exception("job.failure_hook_error", job=job.name, job_id=job.job_id)
            return

        if job.released:
            job.released = False
            job.available_at = clock.now() + timedelta(seconds=job.release_delay)
            self._pending.append(job)
            self._results[job.job_id] = TaskResult(job.job_id, "released")
            log.info("job.released", job=job.name, job_id=job.job_id, delay=job.release_delay)
            return

        self._finish(job, TaskResult(job.job_id, "completed", result=out))

    def _finish(self, job: Job, result: TaskResult) -> None:
        if job.unique_key is not None:
            self._unique.discard(job.unique_key)
        self._results[job.job_id] = result

    def on_stopping(self, callback: StoppingCallback) -> None:
        self._stopping.append(callback)

    def remove_stopping(self, callback: StoppingCallback) -> None:
        if callback in self._stopping:
            self._stopping.remove(callback)

    async def stop(self) -> None:
        """Announce worker shutdown, then stop work()."""
        self._stopped = True
        for callback in list(self._stopping):
            await callback()


# ── Provider factory ───────────────────────────────────────────────────────

_provider: TaskQueueProvider | None = None


def get_provider() -> TaskQueueProvider:
    global _provider
    if _provider is not None:
        return _provider

    from durable_sdk.tier0_core.config import get_config

    backend = get_config().queue_backend
    if backend in ("inprocess", "local"):
        _provider = InProcessTaskProvider()
    else:
        raise ConfigurationError(
            f"Unknown DURABLE_QUEUE_BACKEND: {backend!r}. Supported: inprocess, local"
        )
    return _provider


def _reset_provider() -> None:
    global _provider
    _provider = None


__all__ = [
    "Job",
    "TaskResult",
    "TaskQueueProvider",
    "InProcessTaskProvider",
    "get_provider",
]
