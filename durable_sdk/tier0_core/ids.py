"""
durable_sdk.tier0_core.ids
───────────────────────────
Identifier generation. Executions get time-ordered UUID v7 ids so they
sort by creation in every store; activity invocations get random UUID v4
correlation ids.

Minimal stack: uuid7 (uuid_extensions)
"""
from __future__ import annotations

import uuid

import uuid_extensions


def new_uuid4() -> str:
    """Generate a random UUID v4 string."""
    return str(uuid.uuid4())


def new_uuid7() -> str:
    """Generate a time-ordered UUID v7 string, monotonic within the process."""
    return str(uuid_extensions.uuid7())


def new_execution_id() -> str:
    return new_uuid7()


def new_correlation_id() -> str:
    return new_uuid4()


__all__ = ["new_uuid4", "new_uuid7", "new_execution_id", "new_correlation_id"]
