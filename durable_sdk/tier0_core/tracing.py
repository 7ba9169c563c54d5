"""
durable_sdk.tier0_core.tracing
───────────────────────────────
OpenTelemetry spans around replay passes and activity invocations. Only
the OTel API is used here; without an SDK installed and configured by the
host process every span is a no-op.
"""
from __future__ import annotations

import functools
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, Callable, TypeVar

from opentelemetry import trace

F = TypeVar("F", bound=Callable[..., Any])

_tracer = trace.get_tracer("durable_sdk")


@contextmanager
def span(name: str, **attributes: Any) -> Iterator[trace.Span]:
    """
    Context manager that wraps a block in an OTel span. Exceptions are
    recorded on the span and re-raised.

    Usage::

        with span("workflow.pass", execution_id=eid):
            ...
    """
    clean = {k: v for k, v in attributes.items() if isinstance(v, (str, bool, int, float))}
    with _tracer.start_as_current_span(name, attributes=clean) as s:
        yield s


def traced(name: str | None = None, **attributes: Any) -> Callable[[F], F]:
    """Decorator that wraps a coroutine function in an OTel span."""
    def decorator(fn: F) -> F:
        span_name = name or fn.__qualname__

        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            with span(span_name, **attributes):
                return await fn(*args, **kwargs)

        return wrapper  # type: ignore[return-value]

    return decorator


__all__ = ["span", "traced"]
