"""
durable_sdk
───────────
Stable top-level exports. Import from here, not from sub-modules directly.
Every name exported here is part of the public API and subject to semver.
"""
from durable_sdk.tier0_core.logging import get_logger
from durable_sdk.tier0_core.errors import (
    DurableError,
    EncodingError,
    DuplicateIndex,
    TransitionConflict,
    ActivityExecutionError,
    ActivityTimedOut,
    WorkflowExecutionError,
    NotFoundError,
    DefinitionError,
    ReplayError,
    ConfigurationError,
)
from durable_sdk.tier0_core.config import get_config, DurableConfig
from durable_sdk.tier0_core.data import create_all, get_session, get_engine
from durable_sdk.tier0_core.ledger import LogEntry, Found, NotFound, Appended, Conflict
from durable_sdk.tier0_core.tasks import Job, InProcessTaskProvider

from durable_sdk.tier1_runtime.clock import Clock, get_clock, set_clock
from durable_sdk.tier1_runtime.serialize import serialize, deserialize, ExceptionDetail
from durable_sdk.tier1_runtime.retry import retry_policy
from durable_sdk.tier1_runtime.middleware import ActivityMiddleware

from durable_sdk.tier2_reliability.storage import WorkflowStatus, ExecutionRecord

from durable_sdk.tier3_platform.notifications import LifecycleEvent, MockEventSink

from durable_sdk.tier4_advanced.workflow import (
    Activity,
    Workflow,
    workflow,
    activity,
    signal_method,
    query_method,
)
from durable_sdk.tier4_advanced.replay import (
    wait_condition,
    side_effect,
    sleep,
    execute_activity,
    execute_child_workflow,
    gather,
    now,
)
from durable_sdk.tier4_advanced.saga import Compensations
from durable_sdk.tier4_advanced.orchestrator import (
    Orchestrator,
    WorkflowHandle,
    get_orchestrator,
)

__version__ = "0.1.0"
__all__ = [
    # logging
    "get_logger",
    # errors
    "DurableError", "EncodingError", "DuplicateIndex", "TransitionConflict",
    "ActivityExecutionError", "ActivityTimedOut", "WorkflowExecutionError",
    "NotFoundError", "DefinitionError", "ReplayError", "ConfigurationError",
    # config
    "get_config", "DurableConfig",
    # data
    "create_all", "get_session", "get_engine",
    # log
    "LogEntry", "Found", "NotFound", "Appended", "Conflict",
    # queue
    "Job", "InProcessTaskProvider",
    # clock
    "Clock", "get_clock", "set_clock",
    # serialize
    "serialize", "deserialize", "ExceptionDetail",
    # retry
    "retry_policy",
    # middleware
    "ActivityMiddleware",
    # storage
    "WorkflowStatus", "ExecutionRecord",
    # notifications
    "LifecycleEvent", "MockEventSink",
    # definitions
    "Activity", "Workflow", "workflow", "activity", "signal_method", "query_method",
    # replay
    "wait_condition", "side_effect", "sleep", "execute_activity",
    "execute_child_workflow", "gather", "now",
    # saga
    "Compensations",
    # orchestrator
    "Orchestrator", "WorkflowHandle", "get_orchestrator",
]
