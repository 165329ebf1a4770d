"""Execution engine exception hierarchy.

Step errors carry a ``retryable`` flag that the retry controller consults;
everything else signals a caller mistake or a storage problem.
"""

from typing import List, Optional


class TaskGraphError(Exception):
    """Base exception for the execution engine."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


# =============================================================================
# STEP ERRORS (recorded on attempts)
# =============================================================================

class StepError(TaskGraphError):
    """Failure of a single attempt."""

    kind = "StepError"
    default_retryable = False

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        self.retryable = self.default_retryable if retryable is None else retryable


class HandlerError(StepError):
    """Business-logic failure inside a step handler. Retryable by default."""

    kind = "HandlerError"
    default_retryable = True


class StepTimeout(StepError):
    """Attempt exceeded the step's deadline."""

    kind = "Timeout"
    default_retryable = True

    def __init__(self, timeout_seconds: float):
        super().__init__(f"Step timed out after {timeout_seconds}s")
        self.timeout_seconds = timeout_seconds


class UnknownStepKind(StepError):
    """No capability is registered for the step kind."""

    kind = "UnknownStepKind"

    def __init__(self, step_kind: str):
        super().__init__(f"Unknown step kind: {step_kind}", retryable=False)
        self.step_kind = step_kind


class Cancelled(StepError):
    """Execution was stopped while the attempt was in flight."""

    kind = "Cancelled"

    def __init__(self, message: str = "Execution stopped"):
        super().__init__(message, retryable=False)


# =============================================================================
# DEFINITION / CONTROL ERRORS
# =============================================================================

class GraphValidationError(TaskGraphError):
    """Malformed workflow definition, rejected before any execution starts."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Invalid workflow graph: " + "; ".join(self.errors))


class InvalidOperation(TaskGraphError):
    """Operator control requested on a node or execution in the wrong state."""


class ExecutionNotFound(TaskGraphError):
    """Execution id is unknown."""

    def __init__(self, execution_id: str):
        super().__init__(f"Execution not found: {execution_id}")
        self.execution_id = execution_id


class DefinitionNotFound(TaskGraphError):
    """Workflow definition id is unknown."""

    def __init__(self, definition_id: str):
        super().__init__(f"Workflow definition not found: {definition_id}")
        self.definition_id = definition_id


class NodeNotFound(TaskGraphError):
    """Node id is not part of the execution's graph."""

    def __init__(self, node_id: str):
        super().__init__(f"Node not found: {node_id}")
        self.node_id = node_id


class StoreError(TaskGraphError):
    """Persistence gateway failed to read or write."""
