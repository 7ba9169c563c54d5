"""
durable_sdk.tier4_advanced.activity
────────────────────────────────────
Activity jobs: building the ``activity.run`` job for a log index, running
the body through ActivityMiddleware, and the failure hook the queue calls
once every attempt is used up.

An exhausted activity is recorded at its log index as a failure marker and
the workflow is resumed; the replay raises the activity's exception at the
``yield`` so the definition can compensate. Uncaught, it fails the workflow.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, TYPE_CHECKING

from durable_sdk.tier0_core.errors import EncodingError, TransitionConflict
from durable_sdk.tier0_core.logging import get_logger
from durable_sdk.tier0_core.tasks import Job
from durable_sdk.tier1_runtime.middleware import ActivityMiddleware
from durable_sdk.tier1_runtime.serialize import describe_exception, deserialize, serialize
from durable_sdk.tier4_advanced.replay import failure_marker
from durable_sdk.tier4_advanced.workflow import ActivityDefinition, resolve_activity

if TYPE_CHECKING:
    from durable_sdk.tier2_reliability.storage import ExecutionRecord
    from durable_sdk.tier4_advanced.orchestrator import Orchestrator

log = get_logger(__name__)

ACTIVITY_JOB = "activity.run"


def activity_job(
    execution: "ExecutionRecord",
    index: int,
    now: datetime,
    definition: ActivityDefinition,
    args: tuple,
) -> Job:
    """One job per (execution, index); the queue drops duplicates while it is in flight."""
    return Job(
        name=ACTIVITY_JOB,
        payload={
            "execution_id": execution.id,
            "index": index,
            "now": now.isoformat(),
            "activity": definition.name,
            "arguments": serialize(tuple(args)),
        },
        queue=definition.queue,
        max_attempts=definition.tries,
        unique_key=f"activity:{execution.id}:{index}",
    )


async def invoke(job: Job) -> Any:
    definition = resolve_activity(job.payload["activity"])
    args = deserialize(job.payload["arguments"]) or ()
    if definition.is_async:
        return await definition(*args)
    return definition(*args)


def _portable(exc: BaseException) -> bytes | None:
    from durable_sdk.tier0_core.config import get_config

    if get_config().serialize_format != "pickle":
        return None
    try:
        return serialize(exc, "pickle")
    except EncodingError:
        return None


class ActivityRunner:
    """Queue handlers for ``activity.run``."""

    def __init__(self, orchestrator: "Orchestrator") -> None:
        self._orc = orchestrator
        self._middleware = ActivityMiddleware(orchestrator)

    async def run(self, job: Job) -> Any:
        return await self._middleware(job, invoke)

    async def on_failure(self, job: Job, exc: BaseException) -> None:
        payload = job.payload
        execution_id = payload["execution_id"]
        index = payload["index"]
        detail = describe_exception(exc)

        await self._orc.store.add_exception(
            execution_id, payload["activity"], detail.model_dump_json(), key=f"activity:{index}"
        )
        marker = failure_marker(detail.model_dump(mode="json"), _portable(exc))
        try:
            await self._orc.dispatch_next(
                execution_id, index, datetime.fromisoformat(payload["now"]), payload["activity"], marker
            )
        except TransitionConflict as conflict:
            log.info("activity.failure_dropped", execution_id=execution_id, status=conflict.current)


__all__ = ["ACTIVITY_JOB", "ActivityRunner", "activity_job", "invoke"]
