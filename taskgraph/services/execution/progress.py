"""Progress, summary, log and health views derived from execution state.

Everything here is a pure function of (Execution, NodeStates, Attempts);
nothing is stored and nothing is mutated.
"""

from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .models import (
    Attempt,
    AttemptStatus,
    Execution,
    ExecutionHealth,
    ExecutionStatus,
    ExecutionSummary,
    GraphExecutionStatus,
    NodeLog,
    NodeState,
    NodeStatus,
)

_COUNT_FIELDS = {
    NodeStatus.PENDING: "pending",
    NodeStatus.RUNNING: "running",
    NodeStatus.COMPLETED: "completed",
    NodeStatus.FAILED: "failed",
    NodeStatus.BLOCKED: "blocked",
    NodeStatus.SKIPPED: "skipped",
}


def build_summary(states: Iterable[NodeState]) -> ExecutionSummary:
    """Count nodes by status. The counts always sum to ``total``."""
    summary = ExecutionSummary()
    for state in states:
        summary.total += 1
        field_name = _COUNT_FIELDS[state.status]
        setattr(summary, field_name, getattr(summary, field_name) + 1)
    return summary


def build_status(execution: Execution,
                 states: Mapping[str, NodeState]) -> GraphExecutionStatus:
    """Point-in-time view of an execution with its nodes and summary."""
    return GraphExecutionStatus(
        execution=execution,
        nodes=dict(states),
        summary=build_summary(states.values()),
    )


def build_logs(states: Mapping[str, NodeState], attempts: Iterable[Attempt],
               order: Optional[Sequence[str]] = None) -> List[NodeLog]:
    """Attempts grouped per node, ordered by attempt number.

    Args:
        states: Node states by node id
        attempts: Attempt log in any order
        order: Node order for the result (defaults to ``states`` order)

    Returns:
        One NodeLog per node, including nodes with no attempts
    """
    grouped: Dict[str, List[Attempt]] = defaultdict(list)
    for attempt in attempts:
        grouped[attempt.node_id].append(attempt)

    logs = []
    for node_id in (order or list(states)):
        state = states[node_id]
        node_attempts = sorted(grouped.get(node_id, []), key=lambda a: a.attempt_number)
        failures = [a for a in node_attempts if a.status == AttemptStatus.FAILED]
        last_error = state.last_error
        if failures:
            last_error = f"{failures[-1].error_kind}: {failures[-1].error_detail}"
        logs.append(NodeLog(
            node_id=node_id,
            status=state.status,
            attempts=node_attempts,
            last_error=last_error,
            output=state.output,
        ))
    return logs


def build_timeline(attempts: Iterable[Attempt]) -> List[Attempt]:
    """All attempts across nodes, sorted by start time."""
    return sorted(attempts, key=lambda a: (a.started_at, a.node_id, a.attempt_number))


def build_health(execution: Execution, summary: ExecutionSummary,
                 ready_count: int) -> ExecutionHealth:
    """Classify an execution as healthy, warning or critical.

    Stalled means nothing is running, nothing is ready, yet nodes are still
    pending; operators are expected to retry or skip to unstick it.
    """
    health = ExecutionHealth()

    if summary.failed > 0:
        health.status = "critical"
        health.issues.append(f"{summary.failed} task(s) failed")

    if summary.blocked > 0:
        health.status = "critical" if summary.failed > 0 else "warning"
        health.warnings.append(f"{summary.blocked} task(s) blocked")

    if execution.status == ExecutionStatus.PAUSED:
        health.warnings.append("Execution paused")
    elif (execution.status != ExecutionStatus.STOPPED
            and summary.running == 0 and ready_count == 0 and summary.pending > 0):
        health.stalled = True
        if health.status == "healthy":
            health.status = "warning"
        health.warnings.append("Execution stalled - no tasks running")

    return health
