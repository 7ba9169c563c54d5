"""
durable_sdk.tier1_runtime.context
──────────────────────────────────
Replay context: the execution-local state of exactly one replay pass.

A pass creates its own ReplayContext and binds it for its duration; it is
never shared across passes or threads. The log cursor only moves forward:
every replay primitive consumes exactly one index.

Uses Python contextvars so concurrent passes in one worker never see each
other's cursor. Bound fields are mirrored into structlog contextvars.
"""
from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from durable_sdk.tier0_core.errors import ReplayError
from durable_sdk.tier0_core.logging import bind_context, unbind_context


# ── Domain model ─────────────────────────────────────────────────────────────

@dataclass
class ReplayContext:
    execution_id: str
    definition: str
    started_at: datetime
    index: int = 0
    now: datetime | None = None
    replaying: bool = False
    read_only: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.now is None:
            self.now = self.started_at

    def advance(self) -> int:
        """Consume the current index and return it."""
        consumed = self.index
        self.index += 1
        return consumed


# ── ContextVar storage ────────────────────────────────────────────────────────

_ctx: ContextVar[ReplayContext | None] = ContextVar("durable_replay_context", default=None)


def current_replay_context() -> ReplayContext:
    """Return the active pass's context. Raises ReplayError outside a pass."""
    ctx = _ctx.get()
    if ctx is None:
        raise ReplayError("Replay primitives must be used within a workflow pass.")
    return ctx


def in_replay() -> bool:
    return _ctx.get() is not None


@contextmanager
def bind_replay_context(ctx: ReplayContext) -> Iterator[ReplayContext]:
    """Activate ``ctx`` for the duration of a pass."""
    token = _ctx.set(ctx)
    bind_context(execution_id=ctx.execution_id, workflow=ctx.definition)
    try:
        yield ctx
    finally:
        unbind_context("execution_id", "workflow")
        _ctx.reset(token)


__all__ = [
    "ReplayContext",
    "current_replay_context",
    "in_replay",
    "bind_replay_context",
]
