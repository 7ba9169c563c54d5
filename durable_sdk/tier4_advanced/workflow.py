"""
durable_sdk.tier4_advanced.workflow
────────────────────────────────────
Workflow and activity definitions.

A workflow is a subclass of ``Workflow`` whose ``execute`` method is a
generator: it yields replay commands (see ``replay.py``) and receives each
command's result back. It must be deterministic: anything non-deterministic
belongs in an activity or a ``side_effect``.

Signal and query handlers are declared with decorators. Each subclass gets
an explicit capability table, built once when the class is created, that
the orchestrator consults instead of inspecting methods at dispatch time.

Usage::

    @activity(tries=5)
    async def charge_card(order_id: str, amount: int) -> str: ...

    @workflow()
    class Checkout(Workflow):
        def __init__(self, execution):
            super().__init__(execution)
            self.approved = False

        @signal_method
        def approve(self):
            self.approved = True

        @query_method
        def is_approved(self):
            return self.approved

        def execute(self, order_id, amount):
            yield wait_condition(lambda: self.approved)
            return (yield execute_activity(charge_card, order_id, amount))
"""
from __future__ import annotations

import importlib
import inspect
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, TYPE_CHECKING

from durable_sdk.tier0_core.errors import DefinitionError
from durable_sdk.tier4_advanced.saga import Compensations

if TYPE_CHECKING:
    from durable_sdk.tier2_reliability.storage import ExecutionRecord


class Capability(str, Enum):
    SIGNAL = "signal"
    QUERY = "query"


_CAPABILITY_ATTR = "__durable_capability__"


def signal_method(fn: Callable) -> Callable:
    """Mark a method as a signal handler. Signals mutate workflow state."""
    setattr(fn, _CAPABILITY_ATTR, Capability.SIGNAL)
    return fn


def query_method(fn: Callable) -> Callable:
    """Mark a method as a read-only query handler."""
    setattr(fn, _CAPABILITY_ATTR, Capability.QUERY)
    return fn


# ── Workflow base ─────────────────────────────────────────────────────────────

class Workflow(Compensations):
    """Base class for workflow definitions."""

    __workflow_name__: str
    __capabilities__: dict[str, frozenset[Capability]] = {}

    queue: str = "default"
    tries: int = 1

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        table: dict[str, set[Capability]] = {
            name: set(caps) for name, caps in cls.__capabilities__.items()
        }
        for name, member in vars(cls).items():
            capability = getattr(member, _CAPABILITY_ATTR, None)
            if capability is not None:
                table.setdefault(name, set()).add(capability)
        cls.__capabilities__ = {name: frozenset(caps) for name, caps in table.items()}
        cls.__workflow_name__ = f"{cls.__module__}:{cls.__qualname__}"

    def __init__(self, execution: "ExecutionRecord") -> None:
        self.execution = execution

    @property
    def execution_id(self) -> str:
        return self.execution.id

    @classmethod
    def has_capability(cls, method: str, capability: Capability) -> bool:
        return capability in cls.__capabilities__.get(method, frozenset())

    def execute(self, *args: Any) -> Any:
        raise NotImplementedError


# ── Activity definitions ──────────────────────────────────────────────────────

class Activity(Compensations):
    """
    Class-based activity. A fresh instance runs each invocation, so
    compensations registered in ``execute`` are scoped to that call.
    """

    def execute(self, *args: Any) -> Any:
        raise NotImplementedError


@dataclass(frozen=True)
class ActivityDefinition:
    name: str
    fn: Callable[..., Any]
    tries: int = 3
    queue: str = "default"

    @property
    def class_based(self) -> bool:
        return isinstance(self.fn, type) and issubclass(self.fn, Activity)

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.fn.execute if self.class_based else self.fn)

    def bind(self) -> Callable[..., Any]:
        """The callable for one invocation."""
        if self.class_based:
            return self.fn().execute
        return self.fn

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self.bind()(*args, **kwargs)


# ── Registries ────────────────────────────────────────────────────────────────

_workflows: dict[str, type[Workflow]] = {}
_activities: dict[str, ActivityDefinition] = {}


def workflow(name: str | None = None) -> Callable[[type[Workflow]], type[Workflow]]:
    """Register a Workflow subclass under ``name`` (default ``module:QualName``)."""
    def decorator(cls: type[Workflow]) -> type[Workflow]:
        if not (isinstance(cls, type) and issubclass(cls, Workflow)):
            raise DefinitionError(f"@workflow expects a Workflow subclass, got {cls!r}.")
        if name:
            cls.__workflow_name__ = name
        _workflows[cls.__workflow_name__] = cls
        return cls
    return decorator


def activity(
    fn: Callable | None = None,
    *,
    name: str | None = None,
    tries: int = 3,
    queue: str = "default",
) -> Any:
    """
    Register a function (sync or async) or an ``Activity`` subclass as an activity.

    Usable bare (``@activity``) or configured (``@activity(tries=5)``).
    """
    def decorator(func: Callable) -> ActivityDefinition:
        definition = ActivityDefinition(
            name=name or f"{func.__module__}:{func.__qualname__}",
            fn=func,
            tries=tries,
            queue=queue,
        )
        _activities[definition.name] = definition
        return definition

    if fn is not None:
        return decorator(fn)
    return decorator


def _import(name: str) -> Any:
    module_name, _, qualname = name.partition(":")
    if not qualname:
        return None
    try:
        target: Any = importlib.import_module(module_name)
    except ImportError:
        return None
    for part in qualname.split("."):
        target = getattr(target, part, None)
        if target is None:
            return None
    return target


def workflow_name(definition: type[Workflow] | str) -> str:
    if isinstance(definition, str):
        return definition
    return definition.__workflow_name__


def resolve_workflow(name: str) -> type[Workflow]:
    """Find a workflow class by registered name, falling back to ``module:QualName``."""
    cls = _workflows.get(name) or _import(name)
    if not (isinstance(cls, type) and issubclass(cls, Workflow)):
        raise DefinitionError(f"Unknown workflow definition {name!r}.", definition=name)
    return cls


def as_activity(target: ActivityDefinition | Callable | str) -> ActivityDefinition:
    """Normalize an activity reference (definition, plain callable or name)."""
    if isinstance(target, ActivityDefinition):
        return target
    if isinstance(target, str):
        return resolve_activity(target)
    if callable(target):
        name = f"{target.__module__}:{target.__qualname__}"
        return _activities.get(name) or ActivityDefinition(name=name, fn=target)
    raise DefinitionError(f"Not an activity: {target!r}.")


def resolve_activity(name: str) -> ActivityDefinition:
    definition = _activities.get(name)
    if definition is not None:
        return definition
    target = _import(name)
    if isinstance(target, ActivityDefinition):
        return target
    if callable(target):
        return ActivityDefinition(name=name, fn=target)
    raise DefinitionError(f"Unknown activity definition {name!r}.", definition=name)


__all__ = [
    "Capability",
    "Workflow",
    "Activity",
    "ActivityDefinition",
    "signal_method",
    "query_method",
    "workflow",
    "activity",
    "workflow_name",
    "resolve_workflow",
    "resolve_activity",
    "as_activity",
]
