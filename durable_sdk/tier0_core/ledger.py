"""
durable_sdk.tier0_core.ledger
──────────────────────────────
The execution log: an append-only, per-execution, index-ordered record
store. It is the sole source of truth for "what has already happened"
during replay.

At most one entry exists per (execution_id, index). Writers racing for the
same slot never see an error: the loser reads the slot back and receives
the winner's row as a ``Conflict``, so every pass observes the same value.

Backends: memory (tests/local) | sql (SQLAlchemy async)
Select via: DURABLE_STORE_BACKEND=memory|sql
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, Union, runtime_checkable

from sqlalchemy import DateTime, Integer, LargeBinary, String, UniqueConstraint, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from durable_sdk.tier0_core.data import Base, get_session, get_session_factory
from durable_sdk.tier0_core.errors import ConfigurationError, DuplicateIndex
from durable_sdk.tier1_runtime import clock
from durable_sdk.tier1_runtime.clock import as_utc


# ── Domain model ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class LogEntry:
    """
    One immutable checkpoint in an execution's history.

    ``now`` is the workflow-logical time in effect when the entry was
    produced. ``recorded_at`` is when the row was written and is what
    signal replay is windowed on.
    """
    execution_id: str
    index: int
    now: datetime
    producer: str
    result: bytes | None = None
    recorded_at: datetime = field(default_factory=clock.now)


@dataclass(frozen=True)
class Found:
    entry: LogEntry


@dataclass(frozen=True)
class NotFound:
    execution_id: str
    index: int


@dataclass(frozen=True)
class Appended:
    entry: LogEntry


@dataclass(frozen=True)
class Conflict:
    """The slot was already taken; ``existing`` is the authoritative row."""
    existing: LogEntry


Lookup = Union[Found, NotFound]
AppendResult = Union[Appended, Conflict]


# ── Provider protocol ─────────────────────────────────────────────────────────

@runtime_checkable
class LedgerProvider(Protocol):
    """Implement this protocol to add a new log backend."""

    async def append(self, entry: LogEntry) -> AppendResult:
        """Write ``entry`` unless its slot is taken. Never raises DuplicateIndex."""
        ...

    async def read(self, execution_id: str, index: int) -> Lookup:
        """Side-effect-free point lookup."""
        ...

    async def entries(self, execution_id: str) -> list[LogEntry]:
        """All entries for an execution in index order."""
        ...


class _LedgerBase:
    """Shared append() over a backend-specific insert() that raises DuplicateIndex."""

    async def insert(self, entry: LogEntry) -> LogEntry:
        raise NotImplementedError

    async def read(self, execution_id: str, index: int) -> Lookup:
        raise NotImplementedError

    async def append(self, entry: LogEntry) -> AppendResult:
        try:
            written = await self.insert(entry)
        except DuplicateIndex:
            lookup = await self.read(entry.execution_id, entry.index)
            if isinstance(lookup, Found):
                return Conflict(lookup.entry)
            raise
        return Appended(written)


# ── Mock provider (tests / local dev) ─────────────────────────────────────────

class MockLedgerProvider(_LedgerBase):
    """In-memory log with the same uniqueness guarantee as the SQL table."""

    def __init__(self) -> None:
        # execution_id → {index: LogEntry}
        self._store: dict[str, dict[int, LogEntry]] = {}

    async def insert(self, entry: LogEntry) -> LogEntry:
        slots = self._store.setdefault(entry.execution_id, {})
        if entry.index in slots:
            raise DuplicateIndex(entry.execution_id, entry.index)
        slots[entry.index] = entry
        return entry

    async def read(self, execution_id: str, index: int) -> Lookup:
        entry = self._store.get(execution_id, {}).get(index)
        if entry is None:
            return NotFound(execution_id, index)
        return Found(entry)

    async def entries(self, execution_id: str) -> list[LogEntry]:
        slots = self._store.get(execution_id, {})
        return [slots[i] for i in sorted(slots)]


# ── SQL provider ──────────────────────────────────────────────────────────────

class LogRow(Base):
    __tablename__ = "workflow_logs"
    __table_args__ = (
        UniqueConstraint("execution_id", "position", name="uq_workflow_logs_execution_position"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    execution_id: Mapped[str] = mapped_column(String(36), index=True)
    position: Mapped[int] = mapped_column(Integer)
    now: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    producer: Mapped[str] = mapped_column(String(255))
    result: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


def _row_to_entry(row: LogRow) -> LogEntry:
    return LogEntry(
        execution_id=row.execution_id,
        index=row.position,
        now=as_utc(row.now),
        producer=row.producer,
        result=row.result,
        recorded_at=as_utc(row.recorded_at),
    )


class SqlLedgerProvider(_LedgerBase):
    """
    SQLAlchemy-backed log. The unique constraint on (execution_id, position)
    is what makes concurrent appends safe across worker processes.
    """

    def __init__(self, sessions: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._sessions = sessions or get_session_factory()

    async def insert(self, entry: LogEntry) -> LogEntry:
        try:
            async with get_session(self._sessions) as session:
                session.add(LogRow(
                    execution_id=entry.execution_id,
                    position=entry.index,
                    now=entry.now,
                    producer=entry.producer,
                    result=entry.result,
                    recorded_at=entry.recorded_at,
                ))
        except IntegrityError as exc:
            raise DuplicateIndex(entry.execution_id, entry.index) from exc
        return entry

    async def read(self, execution_id: str, index: int) -> Lookup:
        async with get_session(self._sessions) as session:
            row = (await session.execute(
                select(LogRow).where(
                    LogRow.execution_id == execution_id,
                    LogRow.position == index,
                )
            )).scalar_one_or_none()
        if row is None:
            return NotFound(execution_id, index)
        return Found(_row_to_entry(row))

    async def entries(self, execution_id: str) -> list[LogEntry]:
        async with get_session(self._sessions) as session:
            rows = (await session.execute(
                select(LogRow)
                .where(LogRow.execution_id == execution_id)
                .order_by(LogRow.position)
            )).scalars().all()
        return [_row_to_entry(r) for r in rows]


# ── Provider factory ──────────────────────────────────────────────────────────

_provider: LedgerProvider | None = None


def _build_provider() -> LedgerProvider:
    from durable_sdk.tier0_core.config import get_config

    name = get_config().store_backend
    if name == "memory":
        return MockLedgerProvider()
    if name == "sql":
        return SqlLedgerProvider()
    raise ConfigurationError(
        f"Unknown DURABLE_STORE_BACKEND={name!r}. Valid options: memory, sql"
    )


def get_provider() -> LedgerProvider:
    global _provider
    if _provider is None:
        _provider = _build_provider()
    return _provider


def _reset_provider() -> None:
    """For tests: reset provider so env changes take effect."""
    global _provider
    _provider = None


__all__ = [
    "LogEntry",
    "Found",
    "NotFound",
    "Appended",
    "Conflict",
    "Lookup",
    "AppendResult",
    "LedgerProvider",
    "MockLedgerProvider",
    "SqlLedgerProvider",
    "get_provider",
]
