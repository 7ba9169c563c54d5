"""
durable_sdk.tier1_runtime.middleware
─────────────────────────────────────
Activity execution middleware. Wraps every activity invocation with a
correlation id, a worker-shutdown guard, lifecycle events, structured
failure capture and conflict-driven release.

The middleware never retries by itself: a failing body is reported and
re-raised so the job queue's redelivery policy decides what happens next.

Usage::

    middleware = ActivityMiddleware(orchestrator)
    result = await middleware(job, invoke)
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Awaitable, Callable, TYPE_CHECKING

from durable_sdk.tier0_core.errors import ActivityTimedOut, TransitionConflict
from durable_sdk.tier0_core.ids import new_correlation_id
from durable_sdk.tier0_core.logging import bind_context, get_logger, unbind_context
from durable_sdk.tier0_core.metrics import activity_outcomes
from durable_sdk.tier0_core.tasks import Job
from durable_sdk.tier0_core.tracing import span
from durable_sdk.tier1_runtime.serialize import deserialize, describe_exception, encode_json
from durable_sdk.tier3_platform.notifications import LifecycleEvent

if TYPE_CHECKING:
    from durable_sdk.tier4_advanced.orchestrator import Orchestrator

log = get_logger(__name__)

Invoke = Callable[[Job], Awaitable[Any]]


class ActivityMiddleware:
    """Lifecycle wrapper for one ``activity.run`` job attempt."""

    def __init__(self, orchestrator: "Orchestrator") -> None:
        self._orc = orchestrator

    async def __call__(self, job: Job, call_next: Invoke) -> Any:
        payload = job.payload
        execution_id: str = payload["execution_id"]
        index: int = payload["index"]
        activity: str = payload["activity"]
        correlation_id = new_correlation_id()
        active = True

        async def on_stopping() -> None:
            if not active:
                return
            timed_out = ActivityTimedOut("Activity timed out.", execution_id=execution_id, index=index)
            await self._orc.store.add_exception(
                execution_id, activity, describe_exception(timed_out).model_dump_json()
            )
            log.warning("activity.timed_out", job_id=job.job_id)

        self._orc.queue.on_stopping(on_stopping)
        bind_context(correlation_id=correlation_id, activity=activity, execution_id=execution_id)
        try:
            arguments = deserialize(payload["arguments"]) or ()
            await self._emit("activity.started", execution_id, {
                "correlation_id": correlation_id,
                "activity": activity,
                "index": index,
                "arguments": encode_json(arguments),
            })

            try:
                with span("activity.invoke", activity=activity, execution_id=execution_id, index=index):
                    result = await call_next(job)
            except Exception as exc:
                detail = describe_exception(exc)
                activity_outcomes(activity=activity, outcome="failed").inc()
                log.warning("activity.failed", attempt=job.attempts, kind=detail.kind, error=detail.message)
                await self._emit("activity.failed", execution_id, {
                    "correlation_id": correlation_id,
                    "activity": activity,
                    "index": index,
                    "exception": detail.model_dump(mode="json"),
                })
                raise

            encoded = encode_json(result)
            try:
                await self._orc.dispatch_next(
                    execution_id, index, datetime.fromisoformat(payload["now"]), activity, result
                )
            except TransitionConflict as conflict:
                await self._recover(job, conflict)
                return result

            activity_outcomes(activity=activity, outcome="completed").inc()
            await self._emit("activity.completed", execution_id, {
                "correlation_id": correlation_id,
                "activity": activity,
                "index": index,
                "result": encoded,
            })
            return result
        finally:
            active = False
            self._orc.queue.remove_stopping(on_stopping)
            unbind_context("correlation_id", "activity", "execution_id")

    async def _recover(self, job: Job, conflict: TransitionConflict) -> None:
        from durable_sdk.tier0_core.config import get_config

        execution = await self._orc.store.get_execution(conflict.execution_id)
        if execution.running:
            delay = get_config().activity_release_delay
            job.release(delay)
            activity_outcomes(activity=job.payload["activity"], outcome="released").inc()
            log.info("activity.released", status=execution.status.value, delay=delay)
        else:
            activity_outcomes(activity=job.payload["activity"], outcome="dropped").inc()
            log.info("activity.result_dropped", status=execution.status.value)

    async def _emit(self, name: str, execution_id: str, data: dict[str, Any]) -> None:
        await self._orc.events.emit(LifecycleEvent(name=name, execution_id=execution_id, data=data))


__all__ = ["ActivityMiddleware"]
