"""Execution engine package.

Dependency-graph workflow execution with:
- Continuous scheduling of ready nodes bounded by parallelism
- Success/failure edge routing with transitive blocking
- Per-attempt timeouts and exponential-backoff retries
- Operator controls: stop, pause, resume, retry_task, skip_task
- Persistence through a CacheService-backed store (Redis or in-memory)
- Typed event channel for terminal transitions
"""

from .models import (
    ExecutionStatus,
    NodeStatus,
    AttemptStatus,
    SkipCause,
    EdgeOutcome,
    Condition,
    StepSpec,
    WorkflowDefinition,
    StepResult,
    Execution,
    NodeState,
    Attempt,
    ExecutionSummary,
    NodeLog,
    GraphExecutionStatus,
    ExecutionHealth,
)
from .errors import (
    TaskGraphError,
    StepError,
    HandlerError,
    StepTimeout,
    UnknownStepKind,
    Cancelled,
    GraphValidationError,
    InvalidOperation,
    ExecutionNotFound,
    DefinitionNotFound,
    NodeNotFound,
    StoreError,
)
from .graph import Graph, Edge, DeadNode
from .conditions import (
    evaluate_condition,
    evaluate_conditions,
    get_nested_value,
    render_template,
    resolve_config,
)
from .retry import RetryPolicy, StepHandler, run_attempt
from .store import ExecutionStore, ExecutionStoreProtocol
from .events import EventType, EngineEvent, ExecutionEventChannel
from .progress import build_summary, build_status, build_logs, build_timeline, build_health
from .executor import WorkflowExecutor
from .recovery import RecoverySweeper

__all__ = [
    # Models
    "ExecutionStatus",
    "NodeStatus",
    "AttemptStatus",
    "SkipCause",
    "EdgeOutcome",
    "Condition",
    "StepSpec",
    "WorkflowDefinition",
    "StepResult",
    "Execution",
    "NodeState",
    "Attempt",
    "ExecutionSummary",
    "NodeLog",
    "GraphExecutionStatus",
    "ExecutionHealth",
    # Errors
    "TaskGraphError",
    "StepError",
    "HandlerError",
    "StepTimeout",
    "UnknownStepKind",
    "Cancelled",
    "GraphValidationError",
    "InvalidOperation",
    "ExecutionNotFound",
    "DefinitionNotFound",
    "NodeNotFound",
    "StoreError",
    # Graph
    "Graph",
    "Edge",
    "DeadNode",
    # Conditions
    "evaluate_condition",
    "evaluate_conditions",
    "get_nested_value",
    "render_template",
    "resolve_config",
    # Retry
    "RetryPolicy",
    "StepHandler",
    "run_attempt",
    # Store
    "ExecutionStore",
    "ExecutionStoreProtocol",
    # Events
    "EventType",
    "EngineEvent",
    "ExecutionEventChannel",
    # Progress
    "build_summary",
    "build_status",
    "build_logs",
    "build_timeline",
    "build_health",
    # Executor
    "WorkflowExecutor",
    # Recovery
    "RecoverySweeper",
]
