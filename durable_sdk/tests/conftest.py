"""
durable_sdk test configuration.

All tests run with in-memory providers by default, no external services
required. Override by setting environment variables before running pytest.
"""
from __future__ import annotations

import os
from datetime import datetime, timezone

import pytest

# ── Force in-memory providers for all tests ────────────────────────────────
# These must be set before any durable_sdk modules are imported.

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("APP_NAME", "durable-tests")
os.environ.setdefault("DURABLE_STORE_BACKEND", "memory")
os.environ.setdefault("DURABLE_QUEUE_BACKEND", "inprocess")
os.environ.setdefault("DURABLE_EVENTS_BACKEND", "mock")
os.environ.setdefault("DURABLE_ERROR_BACKEND", "none")
os.environ.setdefault("DURABLE_SERIALIZE_FORMAT", "pickle")
# Redelivery without sleeping
os.environ.setdefault("DURABLE_JOB_BACKOFF_MIN", "0")
os.environ.setdefault("DURABLE_JOB_BACKOFF_MAX", "0")
os.environ.setdefault("DURABLE_ACTIVITY_RELEASE_DELAY", "5")

FROZEN_AT = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


# ── Fixtures ───────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def reset_module_singletons():
    """
    Reset all cached provider singletons between tests.
    This ensures each test gets a fresh provider with no state bleed.
    """
    from durable_sdk.tier0_core import config, ledger, tasks
    from durable_sdk.tier1_runtime import clock
    from durable_sdk.tier2_reliability import storage
    from durable_sdk.tier3_platform import notifications
    from durable_sdk.tier4_advanced import orchestrator

    original_clock = clock.get_clock()
    config._reset_config()

    yield

    clock.set_clock(original_clock)
    config._reset_config()
    ledger._reset_provider()
    tasks._reset_provider()
    storage._reset_provider()
    notifications._reset_provider()
    orchestrator._reset_orchestrator()


@pytest.fixture
def frozen_clock():
    """Freeze the global clock; tests move it with ``set_clock(get_clock().advance(n))``."""
    from durable_sdk.tier1_runtime.clock import Clock, set_clock

    clock = Clock().freeze(FROZEN_AT)
    set_clock(clock)
    return clock


@pytest.fixture
def store():
    from durable_sdk.tier2_reliability.storage import MemoryExecutionStore
    return MemoryExecutionStore()


@pytest.fixture
def ledger():
    from durable_sdk.tier0_core.ledger import MockLedgerProvider
    return MockLedgerProvider()


@pytest.fixture
def queue():
    from durable_sdk.tier0_core.tasks import InProcessTaskProvider
    return InProcessTaskProvider()


@pytest.fixture
def events():
    from durable_sdk.tier3_platform.notifications import MockEventSink
    return MockEventSink()


@pytest.fixture
def orchestrator(store, ledger, queue, events):
    """Orchestrator over fresh in-memory providers."""
    from durable_sdk.tier4_advanced.orchestrator import Orchestrator
    return Orchestrator(store=store, ledger=ledger, queue=queue, events=events)


@pytest.fixture
def sqlite_sessions(tmp_path):
    """Session factory over a throwaway aiosqlite database file."""
    from durable_sdk.tier0_core.data import make_session_factory
    from sqlalchemy.ext.asyncio import create_async_engine

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'durable.db'}")
    return engine, make_session_factory(engine)
