"""
durable_sdk.tier0_core.metrics
───────────────────────────────
Counters and histograms with standard naming and labels, exported via the
Prometheus client. The engine's own series are defined once at import.

Minimal stack: prometheus-client
Configure via: DURABLE_METRICS_PORT (default: 8001)
"""
from __future__ import annotations

import os
from typing import Callable

from prometheus_client import Counter, Histogram, start_http_server

# Standard labels applied to every metric
_DEFAULT_LABELS = ["service", "env"]
_SERVICE = os.getenv("APP_NAME", "durable")
_ENV = os.getenv("APP_ENV", "development")
_DEFAULT_LABEL_VALUES = {"service": _SERVICE, "env": _ENV}


def counter(name: str, description: str, labels: list[str] | None = None) -> Callable:
    """
    Create a counter with standard labels.

    Usage:
        passes_total = counter("durable_passes_total", "Replay passes", ["outcome"])
        passes_total(outcome="suspended").inc()
    """
    all_labels = _DEFAULT_LABELS + (labels or [])
    c = Counter(name, description, all_labels)

    def _counter(**extra_labels: str) -> Counter:
        return c.labels(**_DEFAULT_LABEL_VALUES, **extra_labels)

    return _counter


def histogram(
    name: str,
    description: str,
    labels: list[str] | None = None,
    buckets: tuple = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
) -> Callable:
    """Create a histogram with standard labels."""
    all_labels = _DEFAULT_LABELS + (labels or [])
    h = Histogram(name, description, all_labels, buckets=buckets)

    def _histogram(**extra_labels: str) -> Histogram:
        return h.labels(**_DEFAULT_LABEL_VALUES, **extra_labels)

    return _histogram


def start_metrics_server(port: int | None = None) -> None:
    """
    Start the Prometheus HTTP metrics server on a dedicated port.
    Call once at worker startup.
    """
    from durable_sdk.tier0_core.config import get_config
    start_http_server(port or get_config().metrics_port)


# ── Engine series ─────────────────────────────────────────────────────────────

workflow_transitions = counter(
    "durable_workflow_transitions_total",
    "Workflow status transitions",
    ["status"],
)
replay_passes = counter(
    "durable_replay_passes_total",
    "Replay passes by outcome",
    ["workflow", "outcome"],
)
replay_pass_duration = histogram(
    "durable_replay_pass_duration_seconds",
    "Wall time of one replay pass",
    ["workflow"],
)
activity_outcomes = counter(
    "durable_activity_outcomes_total",
    "Activity invocations by outcome",
    ["activity", "outcome"],
)


__all__ = [
    "counter",
    "histogram",
    "start_metrics_server",
    "workflow_transitions",
    "replay_passes",
    "replay_pass_duration",
    "activity_outcomes",
]
