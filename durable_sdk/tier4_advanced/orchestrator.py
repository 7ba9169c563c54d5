"""
durable_sdk.tier4_advanced.orchestrator
────────────────────────────────────────
Workflow orchestrator: the execution state machine and everything that
moves an execution through it.

  created ──start──▶ pending ──pass returns──▶ completed
                       │  ▲
                       │  └── resume (activity result, signal, timer, child)
                       └────pass raises / activity exhausted──▶ failed

Every transition is a compare-and-set on the store, so duplicated or late
jobs cannot move an execution out of a terminal state. Each ``workflow.run``
job performs one ReplayPass; a pass that cannot make progress suspends and
waits for the next resume.

Usage::

    orchestrator = get_orchestrator()
    handle = await orchestrator.create(Checkout)
    await handle.start("order-1", 4200)
    await handle.approve()
    ...
    total = await handle.result()
"""
from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Union

from durable_sdk.tier0_core.errors import (
    DefinitionError,
    DurableError,
    TransitionConflict,
    WorkflowExecutionError,
)
from durable_sdk.tier0_core.ledger import Conflict, LedgerProvider, LogEntry
from durable_sdk.tier0_core.logging import get_logger
from durable_sdk.tier0_core.metrics import replay_pass_duration, replay_passes, workflow_transitions
from durable_sdk.tier0_core.tasks import Job, TaskQueueProvider
from durable_sdk.tier0_core.tracing import span
from durable_sdk.tier1_runtime.serialize import (
    ExceptionDetail,
    describe_exception,
    deserialize,
    encode_json,
    load_exception_detail,
    serialize,
)
from durable_sdk.tier2_reliability.storage import (
    ExceptionRecord,
    ExecutionRecord,
    ExecutionStore,
    WorkflowStatus,
)
from durable_sdk.tier3_platform.notifications import EventSink, LifecycleEvent
from durable_sdk.tier4_advanced.activity import ACTIVITY_JOB, ActivityRunner, activity_job
from durable_sdk.tier4_advanced.replay import Completed, ReplayPass
from durable_sdk.tier4_advanced.workflow import (
    ActivityDefinition,
    Capability,
    Workflow,
    resolve_workflow,
    workflow_name,
)

log = get_logger(__name__)

WORKFLOW_JOB = "workflow.run"
TIMER_JOB = "timer.fire"

Target = Union["WorkflowHandle", ExecutionRecord, str]


def _id(target: Target) -> str:
    if isinstance(target, str):
        return target
    return target.id


class Orchestrator:
    """Drives executions over a store, a log, a job queue and an event sink."""

    def __init__(
        self,
        store: ExecutionStore,
        ledger: LedgerProvider,
        queue: TaskQueueProvider,
        events: EventSink,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.queue = queue
        self.events = events
        self._activities = ActivityRunner(self)
        queue.register(WORKFLOW_JOB, self._run_pass)
        queue.register(ACTIVITY_JOB, self._activities.run, on_failure=self._activities.on_failure)
        queue.register(TIMER_JOB, self._fire_timer)

    # ── lifecycle ─────────────────────────────────────────────────────────────

    async def create(self, definition: type[Workflow] | str) -> "WorkflowHandle":
        name = workflow_name(definition)
        resolve_workflow(name)
        record = await self.store.create_execution(name)
        workflow_transitions(status=WorkflowStatus.CREATED.value).inc()
        log.info("workflow.created", execution_id=record.id, workflow=name)
        return WorkflowHandle(self, record)

    async def load(self, execution_id: str) -> "WorkflowHandle":
        return WorkflowHandle(self, await self.store.get_execution(execution_id))

    async def start(self, target: Target, *args: Any) -> None:
        """
        Bind arguments, move created → pending and enqueue the first pass.

        ``workflow.started`` is emitted only by the call that performs the
        created → pending transition. Starting a pending execution re-enqueues
        it; starting a terminal one enqueues a pass that is skipped.
        """
        execution_id = _id(target)
        record = await self.store.get_execution(execution_id)
        arguments = encode_json(args)
        if record.running:
            await self.store.bind_arguments(execution_id, serialize(tuple(args)))

        try:
            await self.store.transition(
                execution_id, WorkflowStatus.PENDING, from_={WorkflowStatus.CREATED}
            )
        except TransitionConflict:
            try:
                await self.store.transition(execution_id, WorkflowStatus.PENDING)
            except TransitionConflict as conflict:
                log.info("workflow.start_conflict", execution_id=execution_id, status=conflict.current)
        else:
            workflow_transitions(status=WorkflowStatus.PENDING.value).inc()
            log.info("workflow.started", execution_id=execution_id, workflow=record.definition)
            await self.events.emit(LifecycleEvent(
                name="workflow.started",
                execution_id=execution_id,
                data={"workflow": record.definition, "arguments": arguments},
            ))

        await self._enqueue_pass(record)

    async def start_as_child(
        self, target: Target, parent_id: str, parent_index: int, parent_now: datetime, *args: Any
    ) -> None:
        await self.store.attach_parent(_id(target), parent_id, parent_index, parent_now)
        await self.start(target, *args)

    async def resume(self, target: Target) -> None:
        """Redispatch a running execution. Raises TransitionConflict when it is terminal."""
        record = await self.store.transition(_id(target), WorkflowStatus.PENDING)
        await self._enqueue_pass(record)

    async def append_and_resume(
        self, target: Target, index: int, now: datetime, producer: str, result: Any
    ) -> None:
        execution_id = _id(target)
        outcome = await self.ledger.append(LogEntry(
            execution_id=execution_id,
            index=index,
            now=now,
            producer=producer,
            result=serialize(result),
        ))
        if isinstance(outcome, Conflict):
            log.info("workflow.append_conflict", execution_id=execution_id, index=index)
        await self.resume(execution_id)

    async def dispatch_next(
        self, target: Target, index: int, now: datetime, producer: str, result: Any
    ) -> None:
        """Record the result awaited at ``index`` and continue the workflow."""
        await self.append_and_resume(target, index, now, producer, result)

    async def fail(self, target: Target, exc: BaseException) -> None:
        """Record ``exc``, move to failed and fail every linked parent."""
        execution_id = _id(target)
        record = await self.store.get_execution(execution_id)
        detail = _detail(exc)

        await self.store.add_exception(
            execution_id, record.definition, detail.model_dump_json(), key="fail"
        )
        try:
            await self.store.transition(execution_id, WorkflowStatus.FAILED)
        except TransitionConflict as conflict:
            log.info("workflow.fail_conflict", execution_id=execution_id, status=conflict.current)
            return

        workflow_transitions(status=WorkflowStatus.FAILED.value).inc()
        log.warning(
            "workflow.failed",
            execution_id=execution_id,
            workflow=record.definition,
            kind=detail.kind,
            error=detail.message,
        )
        await self.events.emit(LifecycleEvent(
            name="workflow.failed",
            execution_id=execution_id,
            data={"workflow": record.definition, "exception": detail.model_dump(mode="json")},
        ))

        for link in await self.store.list_parents(execution_id):
            await self.fail(link.parent_id, exc)

    # ── signals and queries ───────────────────────────────────────────────────

    async def signal(self, target: Target, method: str, *args: Any) -> None:
        execution_id = _id(target)
        record = await self.store.get_execution(execution_id)
        definition = resolve_workflow(record.definition)
        if not definition.has_capability(method, Capability.SIGNAL):
            raise DefinitionError(
                f"{definition.__name__}.{method} is not a signal method.", method=method
            )

        await self.store.add_signal(execution_id, method, serialize(tuple(args)))
        log.info("workflow.signalled", execution_id=execution_id, method=method)
        # created executions apply their signals once started
        if record.status is WorkflowStatus.PENDING:
            try:
                await self.resume(execution_id)
            except TransitionConflict as conflict:
                log.info("workflow.signal_after_exit", execution_id=execution_id, status=conflict.current)

    async def query(self, target: Target, method: str, *args: Any) -> Any:
        """Replay without side effects, then call the query method on the rebuilt instance."""
        record = await self.store.get_execution(_id(target))
        definition = resolve_workflow(record.definition)
        if not definition.has_capability(method, Capability.QUERY):
            raise DefinitionError(
                f"{definition.__name__}.{method} is not a query method.", method=method
            )

        replay = ReplayPass(self, record, definition, read_only=True)
        try:
            await replay.run()
        except Exception as exc:
            # state built up to the failure is still queryable
            log.debug("workflow.query_replay_raised", execution_id=record.id, error=str(exc))
        await replay.apply_remaining_signals()
        return getattr(replay.instance, method)(*args)

    # ── job handlers ──────────────────────────────────────────────────────────

    async def _enqueue_pass(self, record: ExecutionRecord) -> None:
        definition = resolve_workflow(record.definition)
        await self.queue.enqueue(Job(
            name=WORKFLOW_JOB,
            payload={"execution_id": record.id},
            queue=definition.queue,
            max_attempts=definition.tries,
        ))

    async def dispatch_activity(
        self,
        execution: ExecutionRecord,
        index: int,
        now: datetime,
        definition: ActivityDefinition,
        args: tuple,
    ) -> None:
        result = await self.queue.enqueue(activity_job(execution, index, now, definition, args))
        log.debug("activity.dispatched", activity=definition.name, index=index, status=result.status)

    async def schedule_timer(self, execution_id: str, index: int, delay_seconds: float) -> None:
        await self.queue.enqueue(
            Job(
                name=TIMER_JOB,
                payload={"execution_id": execution_id, "index": index},
                unique_key=f"timer:{execution_id}:{index}",
            ),
            delay_seconds=delay_seconds,
        )

    async def _fire_timer(self, job: Job) -> None:
        execution_id = job.payload["execution_id"]
        try:
            await self.resume(execution_id)
        except TransitionConflict as conflict:
            log.info("timer.after_exit", execution_id=execution_id, status=conflict.current)

    async def _run_pass(self, job: Job) -> None:
        execution_id = job.payload["execution_id"]
        record = await self.store.get_execution(execution_id)
        if not record.running:
            log.info("workflow.pass_skipped", execution_id=execution_id, status=record.status.value)
            return

        started = time.perf_counter()
        try:
            with span("workflow.pass", execution_id=execution_id, workflow=record.definition):
                definition = resolve_workflow(record.definition)
                outcome = await ReplayPass(self, record, definition).run()
        except Exception as exc:
            replay_passes(workflow=record.definition, outcome="failed").inc()
            await self.fail(execution_id, exc)
            return
        finally:
            replay_pass_duration(workflow=record.definition).observe(time.perf_counter() - started)

        if not isinstance(outcome, Completed):
            replay_passes(workflow=record.definition, outcome="suspended").inc()
            return
        replay_passes(workflow=record.definition, outcome="completed").inc()
        await self._complete(record, outcome.value)

    async def _complete(self, record: ExecutionRecord, value: Any) -> None:
        await self.store.set_output(record.id, serialize(value))
        try:
            await self.store.transition(record.id, WorkflowStatus.COMPLETED)
        except TransitionConflict as conflict:
            log.info("workflow.complete_conflict", execution_id=record.id, status=conflict.current)
            return

        workflow_transitions(status=WorkflowStatus.COMPLETED.value).inc()
        log.info("workflow.completed", execution_id=record.id, workflow=record.definition)
        await self.events.emit(LifecycleEvent(
            name="workflow.completed",
            execution_id=record.id,
            data={"workflow": record.definition},
        ))

        for link in await self.store.list_parents(record.id):
            try:
                await self.dispatch_next(
                    link.parent_id, link.parent_index, link.parent_now, record.definition, value
                )
            except TransitionConflict as conflict:
                log.info("workflow.parent_exited", parent_id=link.parent_id, status=conflict.current)


def _detail(exc: BaseException) -> ExceptionDetail:
    if isinstance(exc, WorkflowExecutionError) and isinstance(exc.exception_detail, ExceptionDetail):
        return exc.exception_detail
    return describe_exception(exc)


# ── Handle ────────────────────────────────────────────────────────────────────

class WorkflowHandle:
    """
    Caller-side facade over one execution. Status reads go to the store;
    ``fresh()`` refreshes the cached record. Declared signal and query
    methods are available as awaitable attributes::

        await handle.approve()
        approved = await handle.is_approved()
    """

    def __init__(self, orchestrator: Orchestrator, record: ExecutionRecord) -> None:
        self._orc = orchestrator
        self._record = record

    def __repr__(self) -> str:
        return f"WorkflowHandle({self._record.id!r}, {self._record.definition!r})"

    @property
    def id(self) -> str:
        return self._record.id

    @property
    def definition(self) -> str:
        return self._record.definition

    @property
    def record(self) -> ExecutionRecord:
        return self._record

    async def fresh(self) -> "WorkflowHandle":
        self._record = await self._orc.store.get_execution(self.id)
        return self

    async def start(self, *args: Any) -> None:
        await self._orc.start(self, *args)

    async def resume(self) -> None:
        await self._orc.resume(self)

    async def signal(self, method: str, *args: Any) -> None:
        await self._orc.signal(self, method, *args)

    async def query(self, method: str, *args: Any) -> Any:
        return await self._orc.query(self, method, *args)

    async def status(self) -> WorkflowStatus:
        await self.fresh()
        return self._record.status

    async def running(self) -> bool:
        await self.fresh()
        return self._record.running

    async def created(self) -> bool:
        return await self.status() is WorkflowStatus.CREATED

    async def completed(self) -> bool:
        return await self.status() is WorkflowStatus.COMPLETED

    async def failed(self) -> bool:
        return await self.status() is WorkflowStatus.FAILED

    async def output(self) -> Any:
        await self.fresh()
        return deserialize(self._record.output)

    async def result(self) -> Any:
        status = await self.status()
        if status is WorkflowStatus.COMPLETED:
            return deserialize(self._record.output)
        if status is WorkflowStatus.FAILED:
            exceptions = await self.exceptions()
            detail = load_exception_detail(exceptions[-1].payload) if exceptions else None
            raise WorkflowExecutionError(self.id, detail)
        raise DurableError(
            f"Workflow execution {self.id} is still running.",
            code="still_running",
            execution_id=self.id,
        )

    async def logs(self) -> list[LogEntry]:
        return await self._orc.ledger.entries(self.id)

    async def exceptions(self) -> list[ExceptionRecord]:
        return await self._orc.store.list_exceptions(self.id)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        definition = resolve_workflow(self._record.definition)
        if definition.has_capability(name, Capability.SIGNAL):
            async def send(*args: Any) -> None:
                await self.signal(name, *args)
            return send
        if definition.has_capability(name, Capability.QUERY):
            async def ask(*args: Any) -> Any:
                return await self.query(name, *args)
            return ask
        raise AttributeError(f"{type(self).__name__!r} object has no attribute {name!r}")


# ── Singleton ─────────────────────────────────────────────────────────────────

_orchestrator: Orchestrator | None = None


def get_orchestrator() -> Orchestrator:
    """Orchestrator over the configured store, log, queue and event sink."""
    global _orchestrator
    if _orchestrator is None:
        from durable_sdk.tier0_core import ledger, tasks
        from durable_sdk.tier2_reliability import storage
        from durable_sdk.tier3_platform import notifications

        _orchestrator = Orchestrator(
            store=storage.get_provider(),
            ledger=ledger.get_provider(),
            queue=tasks.get_provider(),
            events=notifications.get_provider(),
        )
    return _orchestrator


def _reset_orchestrator() -> None:
    global _orchestrator
    _orchestrator = None


__all__ = [
    "WORKFLOW_JOB",
    "TIMER_JOB",
    "Orchestrator",
    "WorkflowHandle",
    "get_orchestrator",
]
