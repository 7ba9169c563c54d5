"""
durable_sdk.tier3_platform.notifications
─────────────────────────────────────────
Lifecycle event sink. The engine emits:

  workflow.started    workflow.completed    workflow.failed
  activity.started    activity.completed    activity.failed

Delivery order within one execution is not serialized across workflow and
activity jobs; consumers must not assume it.

Backends: mock (in-memory list) | log (structlog) | webhook (httpx POST)
Configure via: DURABLE_EVENTS_BACKEND=mock|log|webhook
               DURABLE_EVENTS_WEBHOOK_URL
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

from durable_sdk.tier0_core.errors import ConfigurationError
from durable_sdk.tier0_core.logging import get_logger
from durable_sdk.tier0_core.tracing import traced
from durable_sdk.tier1_runtime import clock
from durable_sdk.tier1_runtime.retry import retry_policy


@dataclass
class LifecycleEvent:
    name: str
    execution_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=clock.stamp)


@runtime_checkable
class EventSink(Protocol):
    async def emit(self, event: LifecycleEvent) -> None: ...


# ── Mock provider ─────────────────────────────────────────────────────────────

class MockEventSink:
    def __init__(self) -> None:
        self.events: list[LifecycleEvent] = []

    async def emit(self, event: LifecycleEvent) -> None:
        self.events.append(event)

    def named(self, name: str) -> list[LifecycleEvent]:
        return [e for e in self.events if e.name == name]


# ── Log provider ──────────────────────────────────────────────────────────────

class LogEventSink:
    """Writes every lifecycle event as one structured log line."""

    def __init__(self) -> None:
        self._log = get_logger("durable_sdk.events")

    async def emit(self, event: LifecycleEvent) -> None:
        self._log.info(
            event.name,
            execution_id=event.execution_id,
            event_timestamp=event.timestamp,
            **event.data,
        )


# ── Webhook provider ──────────────────────────────────────────────────────────

class WebhookEventSink:
    """
    POSTs each event as JSON to DURABLE_EVENTS_WEBHOOK_URL.
    Non-2xx responses raise and are retried with backoff.
    """

    def __init__(self, url: str, client: httpx.AsyncClient | None = None) -> None:
        self._url = url
        self._client = client or httpx.AsyncClient(timeout=10.0)

    @traced("events.webhook")
    @retry_policy(max_attempts=3, on=[httpx.HTTPError])
    async def emit(self, event: LifecycleEvent) -> None:
        resp = await self._client.post(self._url, json=asdict(event))
        resp.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()


# ── Provider registry ─────────────────────────────────────────────────────────

_provider: EventSink | None = None


def _build_provider() -> EventSink:
    from durable_sdk.tier0_core.config import get_config

    cfg = get_config()
    name = cfg.events_backend
    if name == "mock":
        return MockEventSink()
    if name == "log":
        return LogEventSink()
    if name == "webhook":
        if not cfg.events_webhook_url:
            raise ConfigurationError("DURABLE_EVENTS_WEBHOOK_URL is required for the webhook sink.")
        return WebhookEventSink(cfg.events_webhook_url)
    raise ConfigurationError(f"Unknown DURABLE_EVENTS_BACKEND={name!r}.")


def get_provider() -> EventSink:
    global _provider
    if _provider is None:
        _provider = _build_provider()
    return _provider


def _reset_provider() -> None:
    global _provider
    _provider = None


__all__ = [
    "LifecycleEvent",
    "EventSink",
    "MockEventSink",
    "LogEventSink",
    "WebhookEventSink",
    "get_provider",
]
