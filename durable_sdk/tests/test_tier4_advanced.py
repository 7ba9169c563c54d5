"""Tests for tier4_advanced modules: definitions, replay, orchestration, sagas."""
from __future__ import annotations

import pytest

from durable_sdk.tier0_core.errors import (
    DefinitionError,
    DurableError,
    ReplayError,
    TransitionConflict,
    WorkflowExecutionError,
)
from durable_sdk.tier0_core.ledger import LogEntry, MockLedgerProvider, NotFound
from durable_sdk.tier1_runtime.clock import get_clock, set_clock
from durable_sdk.tier1_runtime.serialize import deserialize, load_exception_detail, serialize
from durable_sdk.tier2_reliability.storage import WorkflowStatus
from durable_sdk.tier4_advanced.orchestrator import Orchestrator
from durable_sdk.tier4_advanced.replay import (
    execute_activity,
    execute_child_workflow,
    gather,
    now,
    side_effect,
    sleep,
    wait_condition,
)
from durable_sdk.tier4_advanced.saga import Compensations
from durable_sdk.tier4_advanced.workflow import (
    Activity,
    Capability,
    Workflow,
    activity,
    query_method,
    resolve_activity,
    resolve_workflow,
    signal_method,
    workflow,
)

MINTED: list[str] = []
REFUNDS: list[str] = []
HELD: list[str] = []


@pytest.fixture(autouse=True)
def reset_effects():
    MINTED.clear()
    REFUNDS.clear()
    HELD.clear()
    yield


def _mint() -> str:
    MINTED.append("minted")
    return f"token-{len(MINTED)}"


# ── definitions ────────────────────────────────────────────────────────────

@activity(name="tests.flow.charge")
def charge(order_id, amount):
    return f"charged:{order_id}:{amount}"


@activity(name="tests.flow.decline", tries=2)
def decline(order_id):
    raise ValueError(f"card declined for {order_id}")


@activity(name="tests.flow.refund")
async def refund(order_id):
    REFUNDS.append(order_id)
    return f"refunded:{order_id}"


@activity(name="tests.flow.void", tries=1)
def void(order_id):
    raise RuntimeError(f"undo failed for {order_id}")


@activity(name="tests.flow.Reserve")
class Reserve(Activity):
    def execute(self, *seats):
        try:
            for seat in seats:
                if seat == "13":
                    raise ValueError("no seat 13")
                HELD.append(seat)
                self.add_compensation(lambda seat=seat: HELD.remove(seat))
        except ValueError:
            list(self.compensate())
            return []
        return list(seats)


@workflow(name="tests.flow.Adder")
class Adder(Workflow):
    def execute(self, a, b):
        return a + b


@workflow(name="tests.flow.SideEffects")
class SideEffects(Workflow):
    def execute(self):
        token = yield side_effect(_mint)
        charged = yield execute_activity(charge, token, 10)
        return [token, charged]


@workflow(name="tests.flow.Minted")
class Minted(Workflow):
    def execute(self):
        return (yield side_effect(_mint))


@workflow(name="tests.flow.Approval")
class Approval(Workflow):
    def __init__(self, execution):
        super().__init__(execution)
        self.approved = False
        self.notes = []

    @signal_method
    def approve(self, note):
        self.approved = True
        self.notes.append(note)

    @query_method
    def is_approved(self):
        return self.approved

    def execute(self):
        ok = yield wait_condition(lambda: self.approved)
        return {"ok": ok, "notes": list(self.notes)}


@workflow(name="tests.flow.Deadline")
class Deadline(Workflow):
    def execute(self):
        return (yield wait_condition(lambda: False, timeout=60))


@workflow(name="tests.flow.Nap")
class Nap(Workflow):
    def execute(self):
        woke = yield sleep(30)
        return {"woke": woke, "at": now()}


@workflow(name="tests.flow.Instant")
class Instant(Workflow):
    def execute(self):
        yield sleep(0)
        return (yield side_effect(lambda: "after"))


@workflow(name="tests.flow.FanOut")
class FanOut(Workflow):
    def execute(self):
        return (yield gather(
            execute_activity(charge, "a", 1),
            execute_activity(charge, "b", 2),
        ))


@workflow(name="tests.flow.Boom")
class Boom(Workflow):
    def execute(self, reason):
        yield side_effect(lambda: None)
        raise RuntimeError(reason)


@workflow(name="tests.flow.Parent")
class Parent(Workflow):
    def execute(self, child, *args):
        result = yield execute_child_workflow(child, *args)
        return {"child": result}


@workflow(name="tests.flow.Unlucky")
class Unlucky(Workflow):
    def execute(self, order_id):
        return (yield execute_activity(decline, order_id))


@workflow(name="tests.flow.Trip")
class Trip(Workflow):
    def execute(self, order_id):
        try:
            yield execute_activity(charge, order_id, 5)
            self.add_compensation(lambda: execute_activity(refund, order_id))
            yield execute_activity(decline, order_id)
        except ValueError as exc:
            undone = yield from self.compensate()
            return {"error": str(exc), "undone": undone}
        return {"error": None}


@workflow(name="tests.flow.Lenient")
class Lenient(Workflow):
    def execute(self, order_id):
        self.set_continue_with_error()
        try:
            yield execute_activity(charge, order_id, 5)
            self.add_compensation(lambda: execute_activity(refund, order_id))
            self.add_compensation(lambda: execute_activity(void, order_id))
            yield execute_activity(decline, order_id)
        except ValueError:
            undone = yield from self.compensate()
            return {"undone": undone}
        return {"undone": None}


@workflow(name="tests.flow.Partial")
class Partial(Workflow):
    def execute(self, order_id):
        try:
            yield gather(
                execute_activity(decline, order_id),
                execute_activity(charge, order_id, 2),
            )
        except ValueError:
            return (yield side_effect(lambda: "fresh"))
        return "stale"


@workflow(name="tests.flow.Booking")
class Booking(Workflow):
    def execute(self, *seats):
        return (yield execute_activity(Reserve, *seats))


@workflow(name="tests.flow.BadYield")
class BadYield(Workflow):
    def execute(self):
        yield 42


async def _run(orchestrator, definition, *args):
    handle = await orchestrator.create(definition)
    await handle.start(*args)
    await orchestrator.queue.run_until_idle()
    return handle


# ── workflow definitions ───────────────────────────────────────────────────

class TestDefinitions:
    def test_capability_table_is_built_per_class(self):
        assert Approval.__capabilities__ == {
            "approve": frozenset({Capability.SIGNAL}),
            "is_approved": frozenset({Capability.QUERY}),
        }
        assert Approval.has_capability("approve", Capability.SIGNAL)
        assert not Approval.has_capability("approve", Capability.QUERY)
        assert SideEffects.__capabilities__ == {}

    def test_capabilities_are_inherited(self):
        class Audited(Approval):
            @query_method
            def note_count(self):
                return len(self.notes)

        assert Audited.has_capability("approve", Capability.SIGNAL)
        assert Audited.has_capability("note_count", Capability.QUERY)
        assert not Approval.has_capability("note_count", Capability.QUERY)

    def test_registry_lookup(self):
        assert resolve_workflow("tests.flow.Approval") is Approval
        assert resolve_activity("tests.flow.charge") is charge
        assert charge.tries == 3
        assert refund.is_async is True

    def test_class_based_activity_definition(self):
        assert resolve_activity("tests.flow.Reserve") is Reserve
        assert Reserve.class_based is True
        assert Reserve.is_async is False
        assert charge.class_based is False

    def test_unknown_definition(self):
        with pytest.raises(DefinitionError):
            resolve_workflow("tests.flow.Missing")
        with pytest.raises(DefinitionError):
            resolve_activity("no_such_module:nothing")

    def test_primitives_outside_a_pass(self):
        with pytest.raises(ReplayError):
            now()


# ── lifecycle ──────────────────────────────────────────────────────────────

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_plain_function_definition_completes(self, orchestrator, events):
        handle = await _run(orchestrator, Adder, 2, 3)
        assert await handle.completed()
        assert await handle.result() == 5
        assert [e.name for e in events.events] == ["workflow.started", "workflow.completed"]

    @pytest.mark.asyncio
    async def test_status_progression(self, orchestrator):
        handle = await orchestrator.create(Adder)
        assert await handle.created()
        assert await handle.running()
        await handle.start(1, 1)
        assert await handle.status() is WorkflowStatus.PENDING
        with pytest.raises(DurableError) as info:
            await handle.result()
        assert info.value.code == "still_running"
        await orchestrator.queue.run_until_idle()
        assert await handle.completed()
        assert not await handle.running()

    @pytest.mark.asyncio
    async def test_started_is_emitted_once(self, orchestrator, queue, events):
        handle = await orchestrator.create(Adder)
        await handle.start(1, 2)
        await handle.start(1, 2)
        assert len(queue.pending) == 2
        await queue.run_until_idle()
        assert len(events.named("workflow.started")) == 1
        assert len(events.named("workflow.completed")) == 1

    @pytest.mark.asyncio
    async def test_started_event_carries_arguments(self, orchestrator, events):
        await _run(orchestrator, Adder, 2, 3)
        (started,) = events.named("workflow.started")
        assert started.data == {"workflow": "tests.flow.Adder", "arguments": "[2, 3]"}
        assert started.timestamp.endswith("Z")

    @pytest.mark.asyncio
    async def test_resume_after_exit_conflicts(self, orchestrator):
        handle = await _run(orchestrator, Adder, 1, 2)
        with pytest.raises(TransitionConflict):
            await handle.resume()

    @pytest.mark.asyncio
    async def test_load_existing_execution(self, orchestrator):
        handle = await _run(orchestrator, Adder, 4, 4)
        loaded = await orchestrator.load(handle.id)
        assert loaded.definition == "tests.flow.Adder"
        assert await loaded.output() == 8


# ── replay ─────────────────────────────────────────────────────────────────

class TestReplay:
    @pytest.mark.asyncio
    async def test_side_effect_runs_once_across_passes(self, orchestrator, events):
        handle = await _run(orchestrator, SideEffects)

        assert await handle.result() == ["token-1", "charged:token-1:10"]
        assert MINTED == ["minted"]
        logs = await handle.logs()
        assert [(e.index, e.producer) for e in logs] == [
            (0, "tests.flow.SideEffects"),
            (1, "tests.flow.charge"),
        ]
        assert [e.name for e in events.events] == [
            "workflow.started",
            "activity.started",
            "activity.completed",
            "workflow.completed",
        ]

    @pytest.mark.asyncio
    async def test_lost_append_race_adopts_winner(self, store, queue, events):
        class RacingLedger(MockLedgerProvider):
            """Hides a competing pass's write until this pass appends."""

            def __init__(self):
                super().__init__()
                self.hidden = True

            async def read(self, execution_id, index):
                if self.hidden:
                    return NotFound(execution_id, index)
                return await super().read(execution_id, index)

            async def insert(self, entry):
                self.hidden = False
                return await super().insert(entry)

        ledger = RacingLedger()
        orchestrator = Orchestrator(store=store, ledger=ledger, queue=queue, events=events)
        handle = await orchestrator.create(Minted)
        await MockLedgerProvider.insert(ledger, LogEntry(
            execution_id=handle.id,
            index=0,
            now=get_clock().now(),
            producer="tests.flow.Minted",
            result=serialize("winner"),
        ))
        await handle.start()
        await queue.run_until_idle()

        assert await handle.result() == "winner"
        assert len(await handle.logs()) == 1

    @pytest.mark.asyncio
    async def test_unsatisfied_await_writes_nothing(self, orchestrator, queue):
        handle = await _run(orchestrator, Approval)
        assert await handle.status() is WorkflowStatus.PENDING
        assert await handle.logs() == []
        assert queue.pending == []

    @pytest.mark.asyncio
    async def test_non_command_yield_fails(self, orchestrator):
        handle = await _run(orchestrator, BadYield)
        assert await handle.failed()
        detail = load_exception_detail((await handle.exceptions())[-1].payload)
        assert detail.kind.endswith("DefinitionError")

    @pytest.mark.asyncio
    async def test_gather_starts_every_activity_before_suspending(self, orchestrator, queue):
        handle = await orchestrator.create(FanOut)
        await handle.start()
        await queue.run_next()
        assert [j.name for j in queue.pending] == ["activity.run", "activity.run"]

        await queue.run_until_idle()
        assert await handle.result() == ["charged:a:1", "charged:b:2"]

    @pytest.mark.asyncio
    async def test_failed_gather_member_keeps_sibling_indices(self, orchestrator):
        handle = await _run(orchestrator, Partial, "o-5")

        assert await handle.result() == "fresh"
        assert [(e.index, e.producer) for e in await handle.logs()] == [
            (0, "tests.flow.decline"),
            (1, "tests.flow.charge"),
            (2, "tests.flow.Partial"),
        ]

    @pytest.mark.asyncio
    async def test_zero_sleep_consumes_no_index(self, orchestrator):
        handle = await _run(orchestrator, Instant)
        assert await handle.result() == "after"
        assert [e.index for e in await handle.logs()] == [0]


# ── signals and queries ────────────────────────────────────────────────────

class TestSignals:
    @pytest.mark.asyncio
    async def test_signal_unblocks_await(self, orchestrator, queue):
        handle = await _run(orchestrator, Approval)
        await handle.approve("lgtm")
        await queue.run_until_idle()

        assert await handle.result() == {"ok": True, "notes": ["lgtm"]}
        logs = await handle.logs()
        assert [(e.index, e.producer, deserialize(e.result)) for e in logs] == [(0, "await", True)]

    @pytest.mark.asyncio
    async def test_query_is_read_only(self, orchestrator, ledger, queue):
        handle = await _run(orchestrator, Approval)
        assert await handle.is_approved() is False

        await orchestrator.signal(handle, "approve", "ok")
        assert await handle.query("is_approved") is True
        assert await ledger.entries(handle.id) == []

        await queue.run_until_idle()
        assert await handle.completed()
        assert await handle.is_approved() is True

    @pytest.mark.asyncio
    async def test_signal_requires_capability(self, orchestrator):
        handle = await _run(orchestrator, Approval)
        with pytest.raises(DefinitionError):
            await handle.signal("is_approved")
        with pytest.raises(DefinitionError):
            await handle.query("approve", "x")
        with pytest.raises(AttributeError):
            handle.execute


# ── timers ─────────────────────────────────────────────────────────────────

class TestTimers:
    @pytest.mark.asyncio
    async def test_sleep_resumes_after_deadline(self, orchestrator, queue, frozen_clock):
        handle = await _run(orchestrator, Nap)
        assert await handle.status() is WorkflowStatus.PENDING
        assert [j.name for j in queue.pending] == ["timer.fire"]

        set_clock(get_clock().advance(31))
        await queue.run_until_idle()

        result = await handle.result()
        assert result["woke"] is True
        assert result["at"] == get_clock().now()

    @pytest.mark.asyncio
    async def test_await_timeout_resolves_false(self, orchestrator, queue, frozen_clock):
        handle = await _run(orchestrator, Deadline)
        set_clock(get_clock().advance(30))
        await queue.run_until_idle()
        assert await handle.running()

        set_clock(get_clock().advance(31))
        await queue.run_until_idle()
        assert await handle.result() is False
        assert [e.producer for e in await handle.logs()] == ["timer"]


# ── child workflows and failures ───────────────────────────────────────────

class TestChildWorkflows:
    @pytest.mark.asyncio
    async def test_child_result_resumes_parent(self, orchestrator, store):
        handle = await _run(orchestrator, Parent, "tests.flow.SideEffects")

        assert await handle.result() == {"child": ["token-1", "charged:token-1:10"]}
        child = await store.find_child(handle.id, 0)
        assert child.status is WorkflowStatus.COMPLETED
        assert (await store.list_parents(child.id))[0].parent_id == handle.id

    @pytest.mark.asyncio
    async def test_definition_error_fails_with_matching_record(self, orchestrator, events):
        handle = await _run(orchestrator, Boom, "inventory mismatch")

        assert await handle.failed()
        records = await handle.exceptions()
        assert len(records) == 1
        assert records[0].producer == "tests.flow.Boom"
        detail = load_exception_detail(records[0].payload)
        assert detail.kind == "builtins.RuntimeError"
        assert detail.message == "inventory mismatch"
        assert events.named("workflow.failed")[0].data["exception"]["message"] == "inventory mismatch"
        with pytest.raises(WorkflowExecutionError, match="inventory mismatch"):
            await handle.result()

    @pytest.mark.asyncio
    async def test_child_failure_fails_parent(self, orchestrator, store, events):
        handle = await _run(orchestrator, Parent, "tests.flow.Boom", "out of stock")

        child = await store.find_child(handle.id, 0)
        assert child.status is WorkflowStatus.FAILED
        assert await handle.failed()
        parent_detail = load_exception_detail((await handle.exceptions())[-1].payload)
        assert parent_detail.message == "out of stock"
        assert {e.execution_id for e in events.named("workflow.failed")} == {handle.id, child.id}


# ── activities and sagas ───────────────────────────────────────────────────

class TestActivityFailures:
    @pytest.mark.asyncio
    async def test_exhausted_activity_fails_workflow(self, orchestrator, events):
        handle = await _run(orchestrator, Unlucky, "o-7")

        assert await handle.failed()
        assert len(events.named("activity.failed")) == 2
        producers = [r.producer for r in await handle.exceptions()]
        assert producers == ["tests.flow.decline", "tests.flow.Unlucky"]
        detail = load_exception_detail((await handle.exceptions())[-1].payload)
        assert detail.kind == "builtins.ValueError"
        assert detail.message == "card declined for o-7"

    @pytest.mark.asyncio
    async def test_failure_triggers_compensation(self, orchestrator):
        handle = await _run(orchestrator, Trip, "o-1")

        assert await handle.result() == {
            "error": "card declined for o-1",
            "undone": ["refunded:o-1"],
        }
        assert REFUNDS == ["o-1"]
        assert [e.producer for e in await handle.logs()] == [
            "tests.flow.charge",
            "tests.flow.decline",
            "tests.flow.refund",
        ]

    @pytest.mark.asyncio
    async def test_continue_on_error_tolerates_failing_compensation(self, orchestrator):
        handle = await _run(orchestrator, Lenient, "o-3")

        assert await handle.completed()
        assert await handle.result() == {"undone": ["refunded:o-3"]}
        assert REFUNDS == ["o-3"]
        assert [e.producer for e in await handle.logs()] == [
            "tests.flow.charge",
            "tests.flow.decline",
            "tests.flow.void",
            "tests.flow.refund",
        ]
        assert [r.producer for r in await handle.exceptions()] == [
            "tests.flow.decline",
            "tests.flow.void",
        ]

    @pytest.mark.asyncio
    async def test_activity_compensations_are_scoped_to_one_invocation(self, orchestrator):
        booked = await _run(orchestrator, Booking, "1A", "1B")
        assert await booked.result() == ["1A", "1B"]

        refused = await _run(orchestrator, Booking, "2A", "13")
        assert await refused.result() == []
        assert HELD == ["1A", "1B"]


class TestCompensations:
    def _saga(self, *actions):
        saga = Compensations()
        for action in actions:
            saga.add_compensation(action)
        return saga

    def test_reverse_order(self):
        saga = self._saga(lambda: "a", lambda: "b")
        assert list(saga.compensate()) == ["b", "a"]

    def test_fail_fast_stops_the_sequence(self):
        ran = []

        def a():
            ran.append("a")
            return "a"

        def b():
            raise RuntimeError("cannot undo b")

        saga = self._saga(a, b)
        with pytest.raises(RuntimeError, match="cannot undo b"):
            list(saga.compensate())
        assert ran == []

    def test_continue_on_error_skips_failures(self):
        def b():
            raise RuntimeError("cannot undo b")

        saga = self._saga(lambda: "a", b).set_continue_with_error()
        assert list(saga.compensate()) == ["a"]

    def test_continue_on_error_absorbs_errors_thrown_back_in(self):
        saga = self._saga(lambda: "a", lambda: "b").set_continue_with_error()
        steps = saga.compensate()
        assert next(steps) == "b"
        assert steps.throw(RuntimeError("b failed downstream")) == "a"
        with pytest.raises(StopIteration) as info:
            steps.send("a done")
        assert info.value.value == ["a done"]

    def test_sequence_is_lazy_and_restartable(self):
        calls = []
        saga = self._saga(lambda: calls.append("a") or "a")
        steps = saga.compensate()
        assert calls == []
        assert list(steps) == ["a"]
        assert list(saga.compensate()) == ["a"]
        assert calls == ["a", "a"]

    def test_parallel_mode_yields_futures(self):
        def b():
            raise RuntimeError("cannot undo b")

        saga = self._saga(lambda: "a", b, lambda: "c")
        saga.set_parallel_compensation().set_continue_with_error()
        results = [future.result(timeout=5) for future in saga.compensate()]
        assert results == ["c", None, "a"]

    def test_empty_saga(self):
        assert list(Compensations().compensate()) == []
