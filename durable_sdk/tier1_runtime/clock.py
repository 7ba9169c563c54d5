"""
durable_sdk.tier1_runtime.clock
────────────────────────────────
Mockable time source. The engine never calls datetime.now() directly: the
logical "now" of a replay pass, log write times, signal times and timer
deadlines all come from here, so tests can freeze and advance time.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable

_STAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


# ── Clock implementation ───────────────────────────────────────────────────

class Clock:
    """Mockable clock. Override now_fn to control time in tests."""

    def __init__(self, now_fn: Callable[[], datetime] | None = None) -> None:
        self._now_fn = now_fn or (lambda: datetime.now(tz=timezone.utc))

    def now(self) -> datetime:
        """Return the current UTC datetime."""
        return self._now_fn()

    def stamp(self) -> str:
        """Return the current time as an ISO-8601 string with microseconds and Z."""
        return self.now().astimezone(timezone.utc).strftime(_STAMP_FORMAT)

    def freeze(self, dt: datetime) -> "Clock":
        """Return a new Clock frozen at the given datetime."""
        return Clock(now_fn=lambda: dt)

    def advance(self, seconds: float) -> "Clock":
        """Return a new Clock frozen *seconds* after this clock's current time."""
        moved = self.now() + timedelta(seconds=seconds)
        return Clock(now_fn=lambda: moved)


def as_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from stores that drop tzinfo."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# ── Module-level singleton ─────────────────────────────────────────────────

_clock = Clock()


def get_clock() -> Clock:
    """Return the global clock instance."""
    return _clock


def set_clock(clock: Clock) -> None:
    """Replace the global clock (use in tests)."""
    global _clock
    _clock = clock


def now() -> datetime:
    """Return the current UTC datetime."""
    return _clock.now()


def stamp() -> str:
    return _clock.stamp()


__all__ = ["Clock", "as_utc", "get_clock", "set_clock", "now", "stamp"]
