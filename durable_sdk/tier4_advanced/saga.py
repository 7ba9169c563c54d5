"""
durable_sdk.tier4_advanced.saga
────────────────────────────────
Saga-style compensation. Register an undo action after each side effect;
if a later step fails, compensate() unwinds them most-recent first.

Usage inside a workflow definition::

    def execute(self, order):
        try:
            booking = yield execute_activity(book_hotel, order)
            self.add_compensation(lambda: execute_activity(cancel_hotel, booking))
            yield execute_activity(charge_card, order)
        except Exception:
            yield from self.compensate()
            raise

Compensations are scoped to one invocation and are not persisted.
"""
from __future__ import annotations

from collections.abc import Callable, Generator, Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from durable_sdk.tier0_core.logging import get_logger

log = get_logger(__name__)


class Compensations:
    """Mixin holding an ordered list of zero-argument compensation actions."""

    _compensations: list[Callable[[], Any]]
    _continue_on_error: bool = False
    _parallel_compensation: bool = False

    def add_compensation(self, action: Callable[[], Any]) -> "Compensations":
        self.__dict__.setdefault("_compensations", []).append(action)
        return self

    @property
    def continue_on_error(self) -> bool:
        return self._continue_on_error

    @continue_on_error.setter
    def continue_on_error(self, value: bool) -> None:
        self._continue_on_error = value

    @property
    def parallel_compensation(self) -> bool:
        return self._parallel_compensation

    @parallel_compensation.setter
    def parallel_compensation(self, value: bool) -> None:
        self._parallel_compensation = value

    def set_continue_with_error(self, value: bool = True) -> "Compensations":
        self.continue_on_error = value
        return self

    def set_parallel_compensation(self, value: bool = True) -> "Compensations":
        self.parallel_compensation = value
        return self

    def compensate(self) -> Generator[Any, Any, list[Any]]:
        """
        Lazily run registered actions in reverse registration order.

        Sequential mode yields each action's result and stops at the first
        failure unless continue_on_error is set, in which case the failure
        is dropped and the next action runs. Failures thrown back in at a
        yield count too, so a workflow delegating with ``yield from`` gets
        the same treatment for compensation activities that fail. The
        return value is the list of values sent back in, which is what
        ``yield from`` evaluates to inside a workflow. Parallel mode yields
        one Future per action.
        """
        actions = list(reversed(self.__dict__.get("_compensations", [])))
        if self.parallel_compensation:
            yield from _compensate_parallel(actions, self.continue_on_error)
            return []

        resolved: list[Any] = []
        for action in actions:
            try:
                resolved.append((yield action()))
            except Exception as exc:
                if not self.continue_on_error:
                    raise
                log.warning("saga.compensation_failed", action=_name(action), error=str(exc))
        return resolved


def _compensate_parallel(
    actions: list[Callable[[], Any]], continue_on_error: bool
) -> Iterator[Future]:
    from durable_sdk.tier0_core.config import get_config

    if not actions:
        return

    def tolerant(action: Callable[[], Any]) -> Callable[[], Any]:
        def run() -> Any:
            try:
                return action()
            except Exception as exc:
                log.warning("saga.compensation_failed", action=_name(action), error=str(exc))
                return None
        return run

    executor = ThreadPoolExecutor(
        max_workers=min(len(actions), get_config().compensation_max_workers),
        thread_name_prefix="compensation",
    )
    try:
        futures = [
            executor.submit(tolerant(a) if continue_on_error else a)
            for a in actions
        ]
    finally:
        # already-submitted actions still run to completion
        executor.shutdown(wait=False)
    yield from futures


def _name(action: Callable[[], Any]) -> str:
    return getattr(action, "__qualname__", repr(action))


__all__ = ["Compensations"]
