"""Execution engine models.

Definitions (what to run) are frozen Pydantic models validated on input.
Runtime records (what happened) are dataclasses that serialize to plain
JSON-compatible dicts for the persistence gateway.
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from taskgraph.constants import (
    CONDITION_OPERATORS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_PARALLELISM,
    DEFAULT_TIMEOUT_SECONDS,
)


# =============================================================================
# STATUS ENUMS
# =============================================================================

class ExecutionStatus(str, Enum):
    """Execution lifecycle.

    State transitions:
        PENDING -> RUNNING -> COMPLETED
                           -> FAILED  (-> RUNNING on operator retry)
                           -> STOPPED
                           -> PAUSED  (-> RUNNING on resume)
    """
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED,
                        ExecutionStatus.STOPPED)


class NodeStatus(str, Enum):
    """Per-node lifecycle within one execution."""
    PENDING = "pending"        # Waiting on predecessors
    RUNNING = "running"        # Attempt in flight or backing off
    COMPLETED = "completed"    # Handler succeeded
    FAILED = "failed"          # Retries exhausted or non-retryable error
    BLOCKED = "blocked"        # Predecessor will never take the edge to this node
    SKIPPED = "skipped"        # Branch not taken, condition unmet, or operator skip

    @property
    def is_terminal(self) -> bool:
        return self not in (NodeStatus.PENDING, NodeStatus.RUNNING)


class AttemptStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class SkipCause(str, Enum):
    """Why a node ended SKIPPED."""
    BRANCH_NOT_TAKEN = "branch_not_taken"
    CONDITION_NOT_MET = "condition_not_met"
    OPERATOR = "operator"


class EdgeOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


# =============================================================================
# DEFINITION MODELS
# =============================================================================

class Condition(BaseModel):
    """Step gate: ``{field, operator, value}`` evaluated against the context."""
    field: str
    operator: str = "equals"
    value: Any = None

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator("operator")
    @classmethod
    def validate_operator(cls, v):
        if v not in CONDITION_OPERATORS:
            raise ValueError(f"Unsupported operator: {v}")
        return v


class StepSpec(BaseModel):
    """One node of a workflow definition.

    ``kind`` stays a free-form string so an unregistered kind surfaces as a
    runtime UnknownStepKind failure rather than a definition error.
    """
    id: str = Field(min_length=1)
    kind: str
    name: str = ""
    config: Dict[str, Any] = Field(default_factory=dict)
    timeout_seconds: float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0, alias="timeoutSeconds")
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0, alias="maxRetries")
    is_optional: bool = Field(default=False, alias="isOptional")
    on_success_step_id: Optional[str] = Field(default=None, alias="onSuccessStepId")
    on_failure_step_id: Optional[str] = Field(default=None, alias="onFailureStepId")
    # Steps whose success this step also waits on (fan-out / fan-in)
    depends_on: List[str] = Field(default_factory=list, alias="dependsOn")
    condition: Optional[Condition] = None
    step_order: int = Field(default=0, alias="stepOrder")

    model_config = {"frozen": True, "populate_by_name": True, "extra": "forbid"}


class WorkflowDefinition(BaseModel):
    """Ordered set of steps plus their success/failure edges."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    steps: List[StepSpec] = Field(default_factory=list)

    model_config = {"frozen": True, "populate_by_name": True, "extra": "forbid"}

    def ordered_steps(self) -> List[StepSpec]:
        """Steps sorted by step_order, ties kept in declaration order."""
        return sorted(self.steps, key=lambda s: s.step_order)


# =============================================================================
# HANDLER RESULT
# =============================================================================

@dataclass
class StepResult:
    """Value returned by a step handler: its output and a context patch."""
    output: Dict[str, Any] = field(default_factory=dict)
    context_patch: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# RUNTIME RECORDS
# =============================================================================

@dataclass
class Execution:
    """One run of a WorkflowDefinition against a context."""
    id: str
    definition_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    context: Dict[str, Any] = field(default_factory=dict)
    parallelism: int = DEFAULT_PARALLELISM
    dry_run: bool = False
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None

    @classmethod
    def create(cls, definition_id: str, context: Dict[str, Any] = None,
               parallelism: int = DEFAULT_PARALLELISM,
               dry_run: bool = False) -> "Execution":
        """Factory method to create a new pending execution."""
        return cls(
            id=str(uuid.uuid4()),
            definition_id=definition_id,
            context=dict(context or {}),
            parallelism=parallelism,
            dry_run=dry_run,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "id": self.id,
            "definition_id": self.definition_id,
            "status": self.status.value,
            "context": self.context,
            "parallelism": self.parallelism,
            "dry_run": self.dry_run,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Execution":
        """Create from dict."""
        return cls(
            id=data["id"],
            definition_id=data["definition_id"],
            status=ExecutionStatus(data["status"]),
            context=data.get("context", {}),
            parallelism=data.get("parallelism", DEFAULT_PARALLELISM),
            dry_run=data.get("dry_run", False),
            created_at=data.get("created_at", time.time()),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            error=data.get("error"),
        )


@dataclass
class NodeState:
    """Per-(execution, step) record written only by the executor."""
    node_id: str
    status: NodeStatus = NodeStatus.PENDING
    retry_count: int = 0
    last_error: Optional[str] = None
    output: Optional[Dict[str, Any]] = None
    skip_cause: Optional[SkipCause] = None
    skip_reason: Optional[str] = None
    blocked_by: Optional[str] = None
    # Operator retried this node while blocked: run once predecessors settle
    released: bool = False
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def reset(self) -> None:
        """Return to PENDING, clearing run results (operator retry)."""
        self.status = NodeStatus.PENDING
        self.retry_count = 0
        self.output = None
        self.skip_cause = None
        self.skip_reason = None
        self.blocked_by = None
        self.released = False
        self.started_at = None
        self.completed_at = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "node_id": self.node_id,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "output": self.output,
            "skip_cause": self.skip_cause.value if self.skip_cause else None,
            "skip_reason": self.skip_reason,
            "blocked_by": self.blocked_by,
            "released": self.released,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeState":
        """Create from dict."""
        skip_cause = data.get("skip_cause")
        return cls(
            node_id=data["node_id"],
            status=NodeStatus(data["status"]),
            retry_count=data.get("retry_count", 0),
            last_error=data.get("last_error"),
            output=data.get("output"),
            skip_cause=SkipCause(skip_cause) if skip_cause else None,
            skip_reason=data.get("skip_reason"),
            blocked_by=data.get("blocked_by"),
            released=data.get("released", False),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )


@dataclass(frozen=True)
class Attempt:
    """Immutable log entry for one timed try at a node's handler."""
    node_id: str
    attempt_number: int
    started_at: float
    completed_at: float
    status: AttemptStatus
    error_detail: Optional[str] = None
    error_kind: Optional[str] = None
    dry_run: bool = False

    @property
    def duration_ms(self) -> int:
        return int(round((self.completed_at - self.started_at) * 1000))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "node_id": self.node_id,
            "attempt_number": self.attempt_number,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_ms": self.duration_ms,
            "status": self.status.value,
            "error_detail": self.error_detail,
            "error_kind": self.error_kind,
            "dry_run": self.dry_run,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Attempt":
        """Create from dict. ``duration_ms`` is derived, not read."""
        return cls(
            node_id=data["node_id"],
            attempt_number=data["attempt_number"],
            started_at=data["started_at"],
            completed_at=data["completed_at"],
            status=AttemptStatus(data["status"]),
            error_detail=data.get("error_detail"),
            error_kind=data.get("error_kind"),
            dry_run=data.get("dry_run", False),
        )


# =============================================================================
# DERIVED VIEWS
# =============================================================================

@dataclass
class ExecutionSummary:
    """Aggregate node counts for one execution (derived, never stored)."""
    total: int = 0
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    blocked: int = 0
    skipped: int = 0

    @property
    def progress(self) -> float:
        return self.completed / self.total if self.total else 0.0

    @property
    def percentage(self) -> int:
        return int(round(self.progress * 100))

    @property
    def is_complete(self) -> bool:
        return self.pending == 0 and self.running == 0 and self.blocked == 0

    @property
    def has_failures(self) -> bool:
        return self.failed > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "pending": self.pending,
            "running": self.running,
            "completed": self.completed,
            "failed": self.failed,
            "blocked": self.blocked,
            "skipped": self.skipped,
            "progress": self.progress,
            "percentage": self.percentage,
            "is_complete": self.is_complete,
            "has_failures": self.has_failures,
        }


@dataclass
class NodeLog:
    """Attempts for one node plus per-node totals."""
    node_id: str
    status: NodeStatus
    attempts: List[Attempt] = field(default_factory=list)
    last_error: Optional[str] = None
    output: Optional[Dict[str, Any]] = None

    @property
    def total_attempts(self) -> int:
        return len(self.attempts)

    @property
    def total_duration_ms(self) -> int:
        return sum(a.duration_ms for a in self.attempts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "status": self.status.value,
            "attempts": [a.to_dict() for a in self.attempts],
            "total_attempts": self.total_attempts,
            "total_duration_ms": self.total_duration_ms,
            "last_error": self.last_error,
            "output": self.output,
        }


@dataclass
class GraphExecutionStatus:
    """Point-in-time view of an execution and all of its nodes."""
    execution: Execution
    nodes: Dict[str, NodeState]
    summary: ExecutionSummary

    @property
    def status(self) -> ExecutionStatus:
        return self.execution.status

    def node(self, node_id: str) -> NodeState:
        return self.nodes[node_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution": self.execution.to_dict(),
            "nodes": {k: v.to_dict() for k, v in self.nodes.items()},
            "summary": self.summary.to_dict(),
        }


@dataclass
class ExecutionHealth:
    """Health classification: healthy, warning or critical."""
    status: str = "healthy"
    stalled: bool = False
    issues: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "stalled": self.stalled,
            "issues": list(self.issues),
            "warnings": list(self.warnings),
        }
