"""
durable_sdk.tier4_advanced.replay
──────────────────────────────────
Replay primitives and the pass driver.

A workflow definition never suspends a call stack between steps. Each
dispatch runs the definition from the top in a fresh ReplayPass; every
command the definition yields consumes exactly one log index and is
resolved by one protocol:

  1. read the log at the current index
  2. found      → return the recorded result (no work performed)
  3. not found  → perform the work; if it resolved, append it to the log
                  (a lost race returns the winner's value instead)
  4. unresolved → the pass stops here, successfully, without finishing
                  the execution; a later trigger replays it from the top

Recorded signals are applied to the workflow instance before each index,
windowed by the write time of the log row at that index, so a replay sees
every signal at the same point in history as the original pass did.
"""
from __future__ import annotations

import inspect
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, TYPE_CHECKING, Union

from durable_sdk.tier0_core.errors import ActivityExecutionError, DefinitionError
from durable_sdk.tier0_core.ledger import Conflict, Found, LogEntry, Lookup
from durable_sdk.tier0_core.logging import get_logger
from durable_sdk.tier1_runtime import clock
from durable_sdk.tier1_runtime.context import ReplayContext, bind_replay_context, current_replay_context
from durable_sdk.tier1_runtime.serialize import ExceptionDetail, deserialize, serialize
from durable_sdk.tier2_reliability.storage import ExecutionRecord, SignalRecord, WorkflowStatus
from durable_sdk.tier4_advanced.workflow import (
    ActivityDefinition,
    Capability,
    Workflow,
    as_activity,
    workflow_name,
)

if TYPE_CHECKING:
    from durable_sdk.tier4_advanced.orchestrator import Orchestrator

log = get_logger(__name__)

AWAIT_PRODUCER = "await"
TIMER_PRODUCER = "timer"


# ── Commands ──────────────────────────────────────────────────────────────────

class Command:
    """Base for values a workflow definition yields to the pass driver."""


@dataclass(frozen=True)
class WaitCondition(Command):
    condition: Callable[[], bool]
    timeout: float | None = None


@dataclass(frozen=True)
class SideEffect(Command):
    fn: Callable[[], Any]


@dataclass(frozen=True)
class Sleep(Command):
    seconds: float


@dataclass(frozen=True)
class ExecuteActivity(Command):
    activity: ActivityDefinition
    args: tuple = ()


@dataclass(frozen=True)
class ExecuteChildWorkflow(Command):
    definition: str
    args: tuple = ()


@dataclass(frozen=True)
class Gather(Command):
    commands: tuple[Command, ...]


def wait_condition(condition: Callable[[], bool], timeout: float | None = None) -> WaitCondition:
    """
    Resolve ``True`` once ``condition()`` holds. Until then the pass stops
    here; a signal (or the timeout's timer) replays the workflow later.
    With ``timeout`` seconds, resolves ``False`` once the timeout expires.
    """
    return WaitCondition(condition, timeout)


def side_effect(fn: Callable[[], Any]) -> SideEffect:
    """Run ``fn`` once, ever; replays receive the recorded value."""
    return SideEffect(fn)


def sleep(seconds: float) -> Sleep:
    return Sleep(seconds)


def execute_activity(activity: ActivityDefinition | Callable | str, *args: Any) -> ExecuteActivity:
    return ExecuteActivity(as_activity(activity), args)


def execute_child_workflow(definition: type[Workflow] | str, *args: Any) -> ExecuteChildWorkflow:
    return ExecuteChildWorkflow(workflow_name(definition), args)


def gather(*commands: Command) -> Gather:
    """Start several commands at consecutive indices; resolve to a list of results."""
    for command in commands:
        if isinstance(command, Gather) or not isinstance(command, Command):
            raise DefinitionError(f"gather() accepts single replay commands, got {command!r}.")
    return Gather(tuple(commands))


def now() -> datetime:
    """The pass's logical time. Deterministic across replays."""
    return current_replay_context().now


# ── Outcomes ──────────────────────────────────────────────────────────────────

class _Pending:
    """Sentinel: the command cannot resolve in this pass."""

    def __repr__(self) -> str:
        return "PENDING"


PENDING = _Pending()


@dataclass(frozen=True)
class Thrown:
    """The command resolved to an exception to raise inside the definition."""
    error: BaseException


@dataclass(frozen=True)
class Completed:
    value: Any


@dataclass(frozen=True)
class Suspended:
    index: int


PassOutcome = Union[Completed, Suspended]


# ── Activity failure markers ──────────────────────────────────────────────────

_FAILURE_KEY = "__activity_failure__"


def is_failure(value: Any) -> bool:
    return isinstance(value, dict) and _FAILURE_KEY in value


def failure_marker(detail: dict, exception: bytes | None) -> dict:
    return {_FAILURE_KEY: detail, "exception": exception}


def restore_failure(value: dict) -> BaseException:
    """Rebuild the exception an activity ultimately failed with."""
    detail = ExceptionDetail.model_validate(value[_FAILURE_KEY])
    if value.get("exception") is not None:
        try:
            exc = deserialize(value["exception"])
        except Exception:
            log.warning("replay.exception_not_restorable", kind=detail.kind)
        else:
            if isinstance(exc, BaseException):
                return exc
    return ActivityExecutionError(f"{detail.kind}: {detail.message}", detail=detail.message)


# ── Pass driver ───────────────────────────────────────────────────────────────

class ReplayPass:
    """
    One synchronous, top-to-bottom replay of a workflow definition.

    ``read_only`` passes (queries) never write to the log and never
    dispatch jobs; they stop at the first index without a log row.
    """

    def __init__(
        self,
        orchestrator: "Orchestrator",
        execution: ExecutionRecord,
        definition: type[Workflow],
        *,
        read_only: bool = False,
    ) -> None:
        self._orc = orchestrator
        self.execution = execution
        self.definition = definition
        self.ctx = ReplayContext(
            execution_id=execution.id,
            definition=execution.definition,
            started_at=clock.now(),
            read_only=read_only,
        )
        self.instance = definition(execution)
        self._signals: list[SignalRecord] = []
        self._applied = 0

    async def run(self) -> PassOutcome:
        """Replay the definition. Exceptions raised by the definition propagate."""
        args = deserialize(self.execution.arguments) or ()
        with bind_replay_context(self.ctx):
            self._signals = await self._orc.store.list_signals(self.execution.id)
            await self._apply_signals(await self._orc.ledger.read(self.execution.id, 0))

            result = self.instance.execute(*args)
            if not inspect.isgenerator(result):
                return Completed(result)
            return await self._drive(result)

    async def _drive(self, gen: Any) -> PassOutcome:
        send: Any = None
        throw: BaseException | None = None
        try:
            while True:
                try:
                    command = gen.throw(throw) if throw is not None else gen.send(send)
                except StopIteration as stop:
                    return Completed(stop.value)
                send, throw = None, None

                outcome = await self._resolve(command)
                if outcome is PENDING:
                    log.debug("replay.suspended", index=self.ctx.index)
                    return Suspended(self.ctx.index)
                if isinstance(outcome, Thrown):
                    throw = outcome.error
                else:
                    send = outcome
        finally:
            gen.close()

    async def apply_remaining_signals(self) -> None:
        await self._apply_signals(None)

    async def _apply_signals(self, lookup: Lookup | None) -> None:
        cutoff = lookup.entry.recorded_at if isinstance(lookup, Found) else None
        while self._applied < len(self._signals):
            signal = self._signals[self._applied]
            if cutoff is not None and signal.created_at > cutoff:
                break
            if not self.definition.has_capability(signal.method, Capability.SIGNAL):
                raise DefinitionError(
                    f"{self.definition.__name__}.{signal.method} is not a signal method.",
                    method=signal.method,
                )
            getattr(self.instance, signal.method)(*deserialize(signal.arguments))
            self._applied += 1

    # ── resolution ────────────────────────────────────────────────────────────

    async def _resolve(self, command: Any) -> Any:
        if isinstance(command, Gather):
            results: list[Any] = []
            pending = False
            thrown: Thrown | None = None
            for sub in command.commands:
                start = self.ctx.index
                outcome = await self._resolve_one(sub)
                if isinstance(outcome, Thrown):
                    # every sub-command owns one index, failed or not
                    if self.ctx.index == start:
                        self.ctx.advance()
                    thrown = thrown or outcome
                    continue
                if outcome is PENDING:
                    pending = True
                    if self.ctx.read_only:
                        return PENDING
                else:
                    results.append(outcome)
            if thrown is not None:
                return thrown
            return PENDING if pending else results
        if not isinstance(command, Command):
            raise DefinitionError(
                f"Workflow {self.ctx.definition} yielded {command!r}; expected a replay command."
            )
        return await self._resolve_one(command)

    async def _resolve_one(self, command: Command) -> Any:
        if isinstance(command, Sleep) and command.seconds <= 0:
            return True

        index = self.ctx.index
        lookup = await self._orc.ledger.read(self.execution.id, index)
        await self._apply_signals(lookup)

        if isinstance(lookup, Found):
            self.ctx.replaying = True
            self.ctx.now = lookup.entry.now
            self.ctx.advance()
            value = deserialize(lookup.entry.result)
            if isinstance(command, ExecuteActivity) and is_failure(value):
                return Thrown(restore_failure(value))
            return value

        self.ctx.replaying = False
        self.ctx.now = self.ctx.started_at
        if self.ctx.read_only:
            return PENDING

        if isinstance(command, WaitCondition):
            return await self._wait(command, index)
        if isinstance(command, SideEffect):
            return await self._side_effect(command, index)
        if isinstance(command, Sleep):
            return await self._sleep(command, index)
        if isinstance(command, ExecuteActivity):
            return await self._activity(command, index)
        if isinstance(command, ExecuteChildWorkflow):
            return await self._child(command, index)
        raise DefinitionError(f"Unsupported replay command {command!r}.")

    async def _record(self, index: int, producer: str, value: Any) -> Any:
        """Append ``value`` at ``index``; on a lost race, adopt the winner's value."""
        if self.ctx.replaying or self.ctx.read_only:
            return value
        entry = LogEntry(
            execution_id=self.execution.id,
            index=index,
            now=self.ctx.now,
            producer=producer,
            result=serialize(value),
        )
        outcome = await self._orc.ledger.append(entry)
        if isinstance(outcome, Conflict):
            log.info("replay.index_conflict", index=index, producer=producer)
            return deserialize(outcome.existing.result)
        return value

    async def _wait(self, command: WaitCondition, index: int) -> Any:
        try:
            satisfied = command.condition()
        except Exception as exc:
            return Thrown(exc)

        if satisfied:
            value = await self._record(index, AWAIT_PRODUCER, True)
            self.ctx.advance()
            return value

        if command.timeout is not None and await self._timer_expired(index, command.timeout):
            value = await self._record(index, TIMER_PRODUCER, False)
            self.ctx.advance()
            return value

        # slot consumed, nothing recorded
        self.ctx.advance()
        return PENDING

    async def _side_effect(self, command: SideEffect, index: int) -> Any:
        try:
            result = command.fn()
        except Exception as exc:
            return Thrown(exc)
        value = await self._record(index, self.ctx.definition, result)
        self.ctx.advance()
        return value

    async def _sleep(self, command: Sleep, index: int) -> Any:
        if await self._timer_expired(index, command.seconds):
            value = await self._record(index, TIMER_PRODUCER, True)
            self.ctx.advance()
            return value
        self.ctx.advance()
        return PENDING

    async def _timer_expired(self, index: int, seconds: float) -> bool:
        current = self.ctx.now
        stop_at = await self._orc.store.ensure_timer(
            self.execution.id, index, current + timedelta(seconds=seconds)
        )
        if stop_at <= current:
            return True
        await self._orc.schedule_timer(
            self.execution.id, index, (stop_at - current).total_seconds()
        )
        return False

    async def _activity(self, command: ExecuteActivity, index: int) -> Any:
        await self._orc.dispatch_activity(
            self.execution, index, self.ctx.now, command.activity, command.args
        )
        self.ctx.advance()
        return PENDING

    async def _child(self, command: ExecuteChildWorkflow, index: int) -> Any:
        child = await self._orc.store.find_child(self.execution.id, index)
        if child is None:
            handle = await self._orc.create(command.definition)
            await self._orc.start_as_child(
                handle, self.execution.id, index, self.ctx.now, *command.args
            )
        elif child.status is WorkflowStatus.COMPLETED:
            # the child finished but its result never reached this log
            value = await self._record(index, child.definition, deserialize(child.output))
            self.ctx.advance()
            return value
        self.ctx.advance()
        return PENDING


__all__ = [
    "Command",
    "WaitCondition",
    "SideEffect",
    "Sleep",
    "ExecuteActivity",
    "ExecuteChildWorkflow",
    "Gather",
    "wait_condition",
    "side_effect",
    "sleep",
    "execute_activity",
    "execute_child_workflow",
    "gather",
    "now",
    "PENDING",
    "Completed",
    "Suspended",
    "ReplayPass",
]
