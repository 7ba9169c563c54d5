"""Tests for tier1_runtime modules."""
from __future__ import annotations

import pytest

from durable_sdk.tier0_core.errors import EncodingError, ReplayError, TransitionConflict
from durable_sdk.tier1_runtime.clock import Clock, get_clock, now, set_clock
from durable_sdk.tier1_runtime.context import (
    ReplayContext,
    bind_replay_context,
    current_replay_context,
    in_replay,
)
from durable_sdk.tier1_runtime.middleware import ActivityMiddleware
from durable_sdk.tier1_runtime.retry import retry_policy
from durable_sdk.tier1_runtime.serialize import (
    describe_exception,
    deserialize,
    encode_json,
    load_exception_detail,
    serialize,
)
from durable_sdk.tier2_reliability.storage import WorkflowStatus
from durable_sdk.tier4_advanced.activity import activity_job
from durable_sdk.tier4_advanced.workflow import Workflow, activity, workflow

from datetime import datetime, timezone


# ── clock ──────────────────────────────────────────────────────────────────

class TestClock:
    def test_now_returns_utc_datetime(self):
        dt = now()
        assert dt.tzinfo is not None

    def test_frozen_clock(self):
        fixed = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        clock = Clock().freeze(fixed)
        assert clock.now() == fixed

    def test_advance_returns_new_frozen_clock(self):
        fixed = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        clock = Clock().freeze(fixed)
        later = clock.advance(90)
        assert clock.now() == fixed
        assert (later.now() - fixed).total_seconds() == 90

    def test_frozen_clock_set_global(self):
        fixed = datetime(2025, 6, 15, 0, 0, 0, tzinfo=timezone.utc)
        set_clock(Clock().freeze(fixed))
        assert now() == fixed
        assert get_clock().stamp() == "2025-06-15T00:00:00.000000Z"


# ── context ────────────────────────────────────────────────────────────────

class TestReplayContext:
    def _ctx(self) -> ReplayContext:
        started = datetime(2025, 1, 1, tzinfo=timezone.utc)
        return ReplayContext(execution_id="exec-1", definition="tests:Flow", started_at=started)

    def test_defaults(self):
        ctx = self._ctx()
        assert ctx.index == 0
        assert ctx.now == ctx.started_at
        assert ctx.replaying is False

    def test_advance_moves_forward_only(self):
        ctx = self._ctx()
        assert ctx.advance() == 0
        assert ctx.advance() == 1
        assert ctx.index == 2

    def test_outside_a_pass_raises(self):
        assert in_replay() is False
        with pytest.raises(ReplayError):
            current_replay_context()

    def test_bind_is_scoped(self):
        ctx = self._ctx()
        with bind_replay_context(ctx):
            assert current_replay_context() is ctx
            assert in_replay() is True
        assert in_replay() is False


# ── serialize ──────────────────────────────────────────────────────────────

class TestSerialize:
    def test_pickle_round_trip_keeps_types(self):
        value = ("order-1", {"total": 42}, datetime(2025, 1, 1, tzinfo=timezone.utc))
        assert deserialize(serialize(value)) == value

    def test_json_payload_is_tagged(self):
        payload = serialize({"a": 1}, format="json")
        assert payload[:1] == b"j"
        assert deserialize(payload) == {"a": 1}

    def test_none_payload(self):
        assert deserialize(None) is None

    def test_unpicklable_value_raises_encoding_error(self):
        with pytest.raises(EncodingError):
            serialize(lambda: None)

    def test_unknown_tag_raises(self):
        with pytest.raises(EncodingError):
            deserialize(b"x123")

    def test_encode_json(self):
        assert encode_json([1, "two"]) == '[1, "two"]'
        with pytest.raises(EncodingError):
            encode_json(object())

    def test_describe_exception_captures_origin(self):
        try:
            raise ValueError("card declined")
        except ValueError as exc:
            detail = describe_exception(exc)

        assert detail.kind == "builtins.ValueError"
        assert detail.message == "card declined"
        assert detail.file.endswith("test_tier1_runtime.py")
        assert any("card declined" in line for line in detail.snippet)
        assert len(detail.snippet) <= 7
        assert load_exception_detail(detail.model_dump_json()) == detail


# ── retry ──────────────────────────────────────────────────────────────────

class TestRetry:
    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        calls = []

        @retry_policy(max_attempts=3, min_wait=0, max_wait=0, jitter=0)
        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("down")
            return "up"

        assert await flaky() == "up"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_encoding_errors_are_not_retried(self):
        calls = []

        @retry_policy(max_attempts=3, min_wait=0, max_wait=0, jitter=0)
        async def broken():
            calls.append(1)
            raise EncodingError("not serializable")

        with pytest.raises(EncodingError):
            await broken()
        assert len(calls) == 1


# ── middleware ─────────────────────────────────────────────────────────────

@workflow(name="tests.middleware.Host")
class Host(Workflow):
    def execute(self):
        return None


@activity(name="tests.middleware.add")
def add(a, b):
    return a + b


async def _pending(orchestrator):
    handle = await orchestrator.create(Host)
    await orchestrator.store.transition(handle.id, WorkflowStatus.PENDING)
    return handle


def _job(handle, *args):
    return activity_job(handle.record, 0, datetime(2025, 1, 1, tzinfo=timezone.utc), add, args)


class TestActivityMiddleware:
    @pytest.mark.asyncio
    async def test_success_appends_once_and_resumes(self, orchestrator, ledger, queue, events):
        handle = await _pending(orchestrator)
        job = _job(handle, 2, 3)

        async def call_next(j):
            return 5

        result = await ActivityMiddleware(orchestrator)(job, call_next)

        assert result == 5
        entries = await ledger.entries(handle.id)
        assert [(e.index, deserialize(e.result), e.producer) for e in entries] == [
            (0, 5, "tests.middleware.add")
        ]
        assert [j.name for j in queue.pending] == ["workflow.run"]
        assert [e.name for e in events.events] == ["activity.started", "activity.completed"]
        started, completed = events.events
        assert started.data["arguments"] == "[2, 3]"
        assert started.data["correlation_id"] == completed.data["correlation_id"]
        assert completed.data["result"] == "5"

    @pytest.mark.asyncio
    async def test_failure_reports_and_reraises(self, orchestrator, ledger, queue, events):
        handle = await _pending(orchestrator)

        async def call_next(j):
            raise ValueError("card declined")

        with pytest.raises(ValueError, match="card declined"):
            await ActivityMiddleware(orchestrator)(_job(handle, 1, 1), call_next)

        assert await ledger.entries(handle.id) == []
        assert queue.pending == []
        failed = events.named("activity.failed")
        assert len(failed) == 1
        assert failed[0].data["exception"]["kind"] == "builtins.ValueError"
        assert failed[0].data["exception"]["snippet"]

    @pytest.mark.asyncio
    async def test_unencodable_arguments_fail_before_invocation(self, orchestrator):
        handle = await _pending(orchestrator)
        called = []

        async def call_next(j):
            called.append(j)

        with pytest.raises(EncodingError):
            await ActivityMiddleware(orchestrator)(_job(handle, object()), call_next)
        assert called == []

    @pytest.mark.asyncio
    async def test_conflict_while_running_releases_job(self, orchestrator, events, monkeypatch):
        handle = await _pending(orchestrator)
        job = _job(handle, 1, 2)

        async def conflicting(*args, **kwargs):
            raise TransitionConflict(handle.id, "pending", "pending")

        async def call_next(j):
            return 3

        monkeypatch.setattr(orchestrator, "dispatch_next", conflicting)
        await ActivityMiddleware(orchestrator)(job, call_next)

        assert job.released is True
        assert job.release_delay == 5.0
        assert events.named("activity.completed") == []

    @pytest.mark.asyncio
    async def test_conflict_after_exit_drops_result(self, orchestrator, store, events):
        handle = await _pending(orchestrator)
        await store.transition(handle.id, WorkflowStatus.COMPLETED)
        job = _job(handle, 1, 2)

        async def call_next(j):
            return 3

        await ActivityMiddleware(orchestrator)(job, call_next)

        assert job.released is False
        assert events.named("activity.completed") == []

    @pytest.mark.asyncio
    async def test_shutdown_during_invocation_records_timeout(self, orchestrator, store, queue):
        handle = await _pending(orchestrator)

        async def call_next(j):
            await queue.stop()
            return 3

        await ActivityMiddleware(orchestrator)(_job(handle, 1, 2), call_next)

        records = await store.list_exceptions(handle.id)
        assert len(records) == 1
        assert records[0].producer == "tests.middleware.add"
        assert load_exception_detail(records[0].payload).message == "Activity timed out."

    @pytest.mark.asyncio
    async def test_shutdown_after_completion_records_nothing(self, orchestrator, store, queue):
        handle = await _pending(orchestrator)

        async def call_next(j):
            return 3

        await ActivityMiddleware(orchestrator)(_job(handle, 1, 2), call_next)
        await queue.stop()

        assert await store.list_exceptions(handle.id) == []
