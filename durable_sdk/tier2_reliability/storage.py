"""
durable_sdk.tier2_reliability.storage
──────────────────────────────────────
Execution store: workflow execution records and their status lattice,
exception records, signal records, parent links and durable timers.

Status transitions are compare-and-set: a transition succeeds only from a
status that ALLOWED_TRANSITIONS permits, atomically, so concurrent or
duplicated jobs can never move an execution out of a terminal state.

Backends: memory (tests/local) | sql (SQLAlchemy async)
Select via: DURABLE_STORE_BACKEND=memory|sql
"""
from __future__ import annotations

import dataclasses
import itertools
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Protocol, runtime_checkable

from sqlalchemy import (
    DateTime,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    delete,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from durable_sdk.tier0_core.data import Base, get_session, get_session_factory
from durable_sdk.tier0_core.errors import ConfigurationError, NotFoundError, TransitionConflict
from durable_sdk.tier0_core.ids import new_execution_id
from durable_sdk.tier1_runtime import clock
from durable_sdk.tier1_runtime.clock import as_utc


# ── Status lattice ────────────────────────────────────────────────────────────

class WorkflowStatus(str, Enum):
    CREATED = "created"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL: frozenset[WorkflowStatus] = frozenset({WorkflowStatus.COMPLETED, WorkflowStatus.FAILED})

ALLOWED_TRANSITIONS: dict[WorkflowStatus, set[WorkflowStatus]] = {
    WorkflowStatus.CREATED: {WorkflowStatus.PENDING, WorkflowStatus.FAILED},
    # pending → pending is a redispatch
    WorkflowStatus.PENDING: {WorkflowStatus.PENDING, WorkflowStatus.COMPLETED, WorkflowStatus.FAILED},
    WorkflowStatus.COMPLETED: set(),
    WorkflowStatus.FAILED: set(),
}


def allowed_sources(
    to: WorkflowStatus, from_: Iterable[WorkflowStatus] | None = None
) -> set[WorkflowStatus]:
    """Statuses from which ``to`` may be reached, optionally narrowed to ``from_``."""
    sources = {s for s, targets in ALLOWED_TRANSITIONS.items() if to in targets}
    if from_ is not None:
        sources &= set(from_)
    return sources


# ── Domain model ─────────────────────────────────────────────────────────────

@dataclass
class ExecutionRecord:
    id: str
    definition: str
    status: WorkflowStatus = WorkflowStatus.CREATED
    arguments: bytes | None = None
    output: bytes | None = None
    created_at: datetime = field(default_factory=clock.now)
    updated_at: datetime = field(default_factory=clock.now)

    @property
    def running(self) -> bool:
        return self.status not in TERMINAL


@dataclass(frozen=True)
class ExceptionRecord:
    id: int
    execution_id: str
    producer: str
    payload: str
    created_at: datetime


@dataclass(frozen=True)
class SignalRecord:
    id: int
    execution_id: str
    method: str
    arguments: bytes
    created_at: datetime


@dataclass(frozen=True)
class ParentLink:
    child_id: str
    parent_id: str
    parent_index: int
    parent_now: datetime


# ── Provider protocol ─────────────────────────────────────────────────────────

@runtime_checkable
class ExecutionStore(Protocol):
    async def create_execution(self, definition: str) -> ExecutionRecord: ...

    async def get_execution(self, execution_id: str) -> ExecutionRecord: ...

    async def bind_arguments(self, execution_id: str, arguments: bytes) -> None: ...

    async def transition(
        self,
        execution_id: str,
        to: WorkflowStatus,
        from_: Iterable[WorkflowStatus] | None = None,
    ) -> ExecutionRecord: ...

    async def set_output(self, execution_id: str, output: bytes | None) -> None: ...

    async def add_exception(
        self, execution_id: str, producer: str, payload: str, key: str | None = None
    ) -> ExceptionRecord | None: ...

    async def list_exceptions(self, execution_id: str) -> list[ExceptionRecord]: ...

    async def add_signal(self, execution_id: str, method: str, arguments: bytes) -> SignalRecord: ...

    async def list_signals(self, execution_id: str) -> list[SignalRecord]: ...

    async def attach_parent(
        self, child_id: str, parent_id: str, parent_index: int, parent_now: datetime
    ) -> ParentLink: ...

    async def list_parents(self, child_id: str) -> list[ParentLink]: ...

    async def find_child(self, parent_id: str, parent_index: int) -> ExecutionRecord | None: ...

    async def ensure_timer(self, execution_id: str, index: int, stop_at: datetime) -> datetime: ...


# ── Memory provider (tests / local dev) ───────────────────────────────────────

class MemoryExecutionStore:
    """In-memory store. Returns copies so callers never share mutable records."""

    def __init__(self) -> None:
        self._executions: dict[str, ExecutionRecord] = {}
        self._exceptions: dict[str, list[ExceptionRecord]] = {}
        self._exception_keys: set[tuple[str, str]] = set()
        self._signals: dict[str, list[SignalRecord]] = {}
        self._parents: dict[str, list[ParentLink]] = {}
        self._timers: dict[tuple[str, int], datetime] = {}
        self._ids = itertools.count(1)

    def _get(self, execution_id: str) -> ExecutionRecord:
        try:
            return self._executions[execution_id]
        except KeyError:
            raise NotFoundError(
                f"Workflow execution {execution_id!r} not found.",
                execution_id=execution_id,
            ) from None

    async def create_execution(self, definition: str) -> ExecutionRecord:
        record = ExecutionRecord(id=new_execution_id(), definition=definition)
        self._executions[record.id] = record
        return dataclasses.replace(record)

    async def get_execution(self, execution_id: str) -> ExecutionRecord:
        return dataclasses.replace(self._get(execution_id))

    async def bind_arguments(self, execution_id: str, arguments: bytes) -> None:
        record = self._get(execution_id)
        record.arguments = arguments
        record.updated_at = clock.now()

    async def transition(
        self,
        execution_id: str,
        to: WorkflowStatus,
        from_: Iterable[WorkflowStatus] | None = None,
    ) -> ExecutionRecord:
        record = self._get(execution_id)
        if record.status not in allowed_sources(to, from_):
            raise TransitionConflict(execution_id, record.status.value, to.value)
        record.status = to
        record.updated_at = clock.now()
        return dataclasses.replace(record)

    async def set_output(self, execution_id: str, output: bytes | None) -> None:
        record = self._get(execution_id)
        record.output = output
        record.updated_at = clock.now()

    async def add_exception(
        self, execution_id: str, producer: str, payload: str, key: str | None = None
    ) -> ExceptionRecord | None:
        if key is not None:
            if (execution_id, key) in self._exception_keys:
                return None
            self._exception_keys.add((execution_id, key))
        record = ExceptionRecord(
            id=next(self._ids),
            execution_id=execution_id,
            producer=producer,
            payload=payload,
            created_at=clock.now(),
        )
        self._exceptions.setdefault(execution_id, []).append(record)
        return record

    async def list_exceptions(self, execution_id: str) -> list[ExceptionRecord]:
        return list(self._exceptions.get(execution_id, []))

    async def add_signal(self, execution_id: str, method: str, arguments: bytes) -> SignalRecord:
        self._get(execution_id)
        record = SignalRecord(
            id=next(self._ids),
            execution_id=execution_id,
            method=method,
            arguments=arguments,
            created_at=clock.now(),
        )
        self._signals.setdefault(execution_id, []).append(record)
        return record

    async def list_signals(self, execution_id: str) -> list[SignalRecord]:
        return sorted(self._signals.get(execution_id, []), key=lambda s: (s.created_at, s.id))

    async def attach_parent(
        self, child_id: str, parent_id: str, parent_index: int, parent_now: datetime
    ) -> ParentLink:
        link = ParentLink(child_id, parent_id, parent_index, parent_now)
        self._parents[child_id] = [link]
        return link

    async def list_parents(self, child_id: str) -> list[ParentLink]:
        return list(self._parents.get(child_id, []))

    async def find_child(self, parent_id: str, parent_index: int) -> ExecutionRecord | None:
        for child_id, links in self._parents.items():
            for link in links:
                if link.parent_id == parent_id and link.parent_index == parent_index:
                    return dataclasses.replace(self._get(child_id))
        return None

    async def ensure_timer(self, execution_id: str, index: int, stop_at: datetime) -> datetime:
        return self._timers.setdefault((execution_id, index), stop_at)


# ── SQL provider ──────────────────────────────────────────────────────────────

class ExecutionRow(Base):
    __tablename__ = "workflow_executions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    definition: Mapped[str] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(16), index=True)
    arguments: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    output: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class ExceptionRow(Base):
    __tablename__ = "workflow_exceptions"
    __table_args__ = (
        UniqueConstraint("execution_id", "dedupe_key", name="uq_workflow_exceptions_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    execution_id: Mapped[str] = mapped_column(String(36), index=True)
    producer: Mapped[str] = mapped_column(String(255))
    payload: Mapped[str] = mapped_column(Text)
    dedupe_key: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class SignalRow(Base):
    __tablename__ = "workflow_signals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    execution_id: Mapped[str] = mapped_column(String(36), index=True)
    method: Mapped[str] = mapped_column(String(255))
    arguments: Mapped[bytes] = mapped_column(LargeBinary)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class ParentLinkRow(Base):
    __tablename__ = "workflow_relationships"

    child_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    parent_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    parent_index: Mapped[int] = mapped_column(Integer)
    parent_now: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class TimerRow(Base):
    __tablename__ = "workflow_timers"
    __table_args__ = (
        UniqueConstraint("execution_id", "position", name="uq_workflow_timers_position"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    execution_id: Mapped[str] = mapped_column(String(36), index=True)
    position: Mapped[int] = mapped_column(Integer)
    stop_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


def _to_record(row: ExecutionRow) -> ExecutionRecord:
    return ExecutionRecord(
        id=row.id,
        definition=row.definition,
        status=WorkflowStatus(row.status),
        arguments=row.arguments,
        output=row.output,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


class SqlExecutionStore:
    """SQLAlchemy-backed execution store sharing the engine with SqlLedgerProvider."""

    def __init__(self, sessions: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._sessions = sessions or get_session_factory()

    async def _row(self, session: AsyncSession, execution_id: str) -> ExecutionRow:
        row = await session.get(ExecutionRow, execution_id)
        if row is None:
            raise NotFoundError(
                f"Workflow execution {execution_id!r} not found.",
                execution_id=execution_id,
            )
        return row

    async def create_execution(self, definition: str) -> ExecutionRecord:
        ts = clock.now()
        row = ExecutionRow(
            id=new_execution_id(),
            definition=definition,
            status=WorkflowStatus.CREATED.value,
            created_at=ts,
            updated_at=ts,
        )
        async with get_session(self._sessions) as session:
            session.add(row)
        return _to_record(row)

    async def get_execution(self, execution_id: str) -> ExecutionRecord:
        async with get_session(self._sessions) as session:
            return _to_record(await self._row(session, execution_id))

    async def bind_arguments(self, execution_id: str, arguments: bytes) -> None:
        async with get_session(self._sessions) as session:
            row = await self._row(session, execution_id)
            row.arguments = arguments
            row.updated_at = clock.now()

    async def transition(
        self,
        execution_id: str,
        to: WorkflowStatus,
        from_: Iterable[WorkflowStatus] | None = None,
    ) -> ExecutionRecord:
        sources = [s.value for s in allowed_sources(to, from_)]
        async with get_session(self._sessions) as session:
            result = await session.execute(
                update(ExecutionRow)
                .where(ExecutionRow.id == execution_id, ExecutionRow.status.in_(sources))
                .values(status=to.value, updated_at=clock.now())
                .execution_options(synchronize_session=False)
            )
            row = await self._row(session, execution_id)
            await session.refresh(row)
            if result.rowcount == 0:
                raise TransitionConflict(execution_id, row.status, to.value)
            return _to_record(row)

    async def set_output(self, execution_id: str, output: bytes | None) -> None:
        async with get_session(self._sessions) as session:
            row = await self._row(session, execution_id)
            row.output = output
            row.updated_at = clock.now()

    async def add_exception(
        self, execution_id: str, producer: str, payload: str, key: str | None = None
    ) -> ExceptionRecord | None:
        row = ExceptionRow(
            execution_id=execution_id,
            producer=producer,
            payload=payload,
            dedupe_key=key,
            created_at=clock.now(),
        )
        try:
            async with get_session(self._sessions) as session:
                session.add(row)
        except IntegrityError:
            return None
        return ExceptionRecord(row.id, execution_id, producer, payload, as_utc(row.created_at))

    async def list_exceptions(self, execution_id: str) -> list[ExceptionRecord]:
        async with get_session(self._sessions) as session:
            rows = (await session.execute(
                select(ExceptionRow)
                .where(ExceptionRow.execution_id == execution_id)
                .order_by(ExceptionRow.id)
            )).scalars().all()
        return [
            ExceptionRecord(r.id, r.execution_id, r.producer, r.payload, as_utc(r.created_at))
            for r in rows
        ]

    async def add_signal(self, execution_id: str, method: str, arguments: bytes) -> SignalRecord:
        row = SignalRow(
            execution_id=execution_id,
            method=method,
            arguments=arguments,
            created_at=clock.now(),
        )
        async with get_session(self._sessions) as session:
            await self._row(session, execution_id)
            session.add(row)
        return SignalRecord(row.id, execution_id, method, arguments, as_utc(row.created_at))

    async def list_signals(self, execution_id: str) -> list[SignalRecord]:
        async with get_session(self._sessions) as session:
            rows = (await session.execute(
                select(SignalRow)
                .where(SignalRow.execution_id == execution_id)
                .order_by(SignalRow.created_at, SignalRow.id)
            )).scalars().all()
        return [
            SignalRecord(r.id, r.execution_id, r.method, r.arguments, as_utc(r.created_at))
            for r in rows
        ]

    async def attach_parent(
        self, child_id: str, parent_id: str, parent_index: int, parent_now: datetime
    ) -> ParentLink:
        async with get_session(self._sessions) as session:
            await session.execute(delete(ParentLinkRow).where(ParentLinkRow.child_id == child_id))
            session.add(ParentLinkRow(
                child_id=child_id,
                parent_id=parent_id,
                parent_index=parent_index,
                parent_now=parent_now,
            ))
        return ParentLink(child_id, parent_id, parent_index, parent_now)

    async def list_parents(self, child_id: str) -> list[ParentLink]:
        async with get_session(self._sessions) as session:
            rows = (await session.execute(
                select(ParentLinkRow).where(ParentLinkRow.child_id == child_id)
            )).scalars().all()
        return [
            ParentLink(r.child_id, r.parent_id, r.parent_index, as_utc(r.parent_now))
            for r in rows
        ]

    async def find_child(self, parent_id: str, parent_index: int) -> ExecutionRecord | None:
        async with get_session(self._sessions) as session:
            row = (await session.execute(
                select(ExecutionRow)
                .join(ParentLinkRow, ParentLinkRow.child_id == ExecutionRow.id)
                .where(
                    ParentLinkRow.parent_id == parent_id,
                    ParentLinkRow.parent_index == parent_index,
                )
            )).scalars().first()
        return _to_record(row) if row is not None else None

    async def ensure_timer(self, execution_id: str, index: int, stop_at: datetime) -> datetime:
        try:
            async with get_session(self._sessions) as session:
                session.add(TimerRow(execution_id=execution_id, position=index, stop_at=stop_at))
        except IntegrityError:
            async with get_session(self._sessions) as session:
                row = (await session.execute(
                    select(TimerRow).where(
                        TimerRow.execution_id == execution_id,
                        TimerRow.position == index,
                    )
                )).scalar_one()
                return as_utc(row.stop_at)
        return stop_at


# ── Provider factory ──────────────────────────────────────────────────────────

_provider: ExecutionStore | None = None


def get_provider() -> ExecutionStore:
    global _provider
    if _provider is not None:
        return _provider

    from durable_sdk.tier0_core.config import get_config

    backend = get_config().store_backend
    if backend == "memory":
        _provider = MemoryExecutionStore()
    elif backend == "sql":
        _provider = SqlExecutionStore()
    else:
        raise ConfigurationError(
            f"Unknown DURABLE_STORE_BACKEND: {backend!r}. Supported: memory, sql"
        )
    return _provider


def _reset_provider() -> None:
    global _provider
    _provider = None


__all__ = [
    "WorkflowStatus",
    "TERMINAL",
    "ALLOWED_TRANSITIONS",
    "ExecutionRecord",
    "ExceptionRecord",
    "SignalRecord",
    "ParentLink",
    "ExecutionStore",
    "MemoryExecutionStore",
    "SqlExecutionStore",
    "get_provider",
]
