"""
durable_sdk.tier0_core.errors
──────────────────────────────
Error taxonomy for the durable execution engine. Every error carries a
stable code, a message safe to surface to callers, and a severity level.

Two errors are recoverable and resolved locally by the engine:
  - DuplicateIndex       another replay pass already wrote the log slot
  - TransitionConflict   the status lattice rejected a transition
Everything else surfaces through notifications, the Failed status, or
the job queue's redelivery policy.

Optional capture backend: Sentry or OTel error signals
Select via:    DURABLE_ERROR_BACKEND=sentry|otel|none
"""
from __future__ import annotations

import os
from typing import Any


# ── Base error ────────────────────────────────────────────────────────────────

class DurableError(Exception):
    """
    Base class for all engine errors. Every error has:
    - code: stable machine-readable string (snake_case)
    - user_message: safe to show to callers of the handle API
    - detail: internal context
    - level: "error" for failures, "warning" for recoverable races
    """

    code: str = "durable_error"
    level: str = "error"

    def __init__(
        self,
        user_message: str = "An unexpected engine error occurred.",
        code: str | None = None,
        detail: str | None = None,
        **metadata: Any,
    ) -> None:
        self.code = code or self.__class__.code
        self.user_message = user_message
        self.detail = detail or user_message
        self.metadata = metadata
        super().__init__(self.detail)
        _capture(self)

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.user_message,
            }
        }


# ── Taxonomy ──────────────────────────────────────────────────────────────────

class EncodingError(DurableError):
    """An argument or result could not be serialized."""
    code = "encoding_error"


class DuplicateIndex(DurableError):
    """A log row already exists at (execution, index)."""
    code = "duplicate_index"
    level = "warning"

    def __init__(self, execution_id: str, index: int) -> None:
        self.execution_id = execution_id
        self.index = index
        super().__init__(
            f"Log index {index} already written for execution {execution_id}.",
            execution_id=execution_id,
            index=index,
        )


class TransitionConflict(DurableError):
    """The execution's status does not allow the requested transition."""
    code = "transition_conflict"
    level = "warning"

    def __init__(self, execution_id: str, current: str, requested: str) -> None:
        self.execution_id = execution_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Cannot transition execution {execution_id} from {current!r} to {requested!r}.",
            execution_id=execution_id,
            current=current,
            requested=requested,
        )


class ActivityExecutionError(DurableError):
    """An activity body failed."""
    code = "activity_execution_error"


class ActivityTimedOut(ActivityExecutionError):
    """The worker stopped while an activity invocation was still active."""
    code = "activity_timed_out"


class WorkflowExecutionError(DurableError):
    """The workflow definition raised during a replay pass."""
    code = "workflow_execution_error"

    def __init__(
        self,
        execution_id: str,
        detail: Any = None,
        user_message: str | None = None,
    ) -> None:
        self.execution_id = execution_id
        self.exception_detail = detail
        message = user_message or f"Workflow execution {execution_id} failed."
        if detail is not None and getattr(detail, "message", None):
            message = f"{message} {detail.kind}: {detail.message}"
        super().__init__(message, execution_id=execution_id)


class NotFoundError(DurableError):
    """Requested execution does not exist."""
    code = "not_found"


class DefinitionError(DurableError):
    """Unknown workflow/activity definition, or a method without the capability."""
    code = "definition_error"


class ReplayError(DurableError):
    """A replay primitive was used outside of a replay pass."""
    code = "replay_error"


class ConfigurationError(DurableError):
    """Misconfiguration detected at startup."""
    code = "configuration_error"


# ── Error capture backend ─────────────────────────────────────────────────────

def _capture(error: DurableError) -> None:
    """Send error to configured backend. Called automatically by DurableError.__init__."""
    backend = os.getenv("DURABLE_ERROR_BACKEND", "none").lower()
    if backend == "none":
        return
    if backend == "sentry":
        _capture_sentry(error)
    elif backend == "otel":
        _capture_otel(error)


def _capture_sentry(error: DurableError) -> None:
    import sentry_sdk

    if error.level == "error":
        sentry_sdk.capture_exception(error)
    else:
        sentry_sdk.capture_message(
            str(error),
            level="warning",
        )


def _capture_otel(error: DurableError) -> None:
    from opentelemetry import trace

    span = trace.get_current_span()
    span.record_exception(error)
    if error.level == "error":
        span.set_status(trace.StatusCode.ERROR, str(error))


def configure_sentry(dsn: str, **kwargs: Any) -> None:
    """Initialize Sentry. Call once at worker startup."""
    import sentry_sdk
    sentry_sdk.init(dsn=dsn, **kwargs)
    os.environ["DURABLE_ERROR_BACKEND"] = "sentry"


__all__ = [
    "DurableError",
    "EncodingError",
    "DuplicateIndex",
    "TransitionConflict",
    "ActivityExecutionError",
    "ActivityTimedOut",
    "WorkflowExecutionError",
    "NotFoundError",
    "DefinitionError",
    "ReplayError",
    "ConfigurationError",
    "configure_sentry",
]
