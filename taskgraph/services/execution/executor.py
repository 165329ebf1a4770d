"""Workflow executor with continuous scheduling and operator controls.

Implements:
- Continuous scheduling: when any node finishes, newly-ready nodes start
  immediately (asyncio.wait FIRST_COMPLETED), bounded by parallelism
- Per-node retry loop with exponential backoff and per-attempt deadlines
- Success/failure edge routing with transitive blocking and branch skips
- Operator controls: stop, pause, resume, retry_task, skip_task
- Dry runs that exercise branching without side-effecting handlers

The executor is the only writer of Execution and NodeState. Every write
sequence runs under the execution's lock, and attempts are appended before
the node status flips, so snapshot readers never see a half-applied change.
"""

import asyncio
import copy
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from taskgraph.constants import STEP_OUTPUTS_KEY
from taskgraph.core.config import Settings
from taskgraph.core.logging import (
    bind_execution_context,
    get_logger,
    log_execution_time,
    log_node_transition,
)
from .conditions import evaluate_condition, resolve_config
from .errors import Cancelled, InvalidOperation, NodeNotFound, StepError
from .events import EngineEvent, EventType, ExecutionEventChannel
from .graph import Graph
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
    SkipCause,
    StepResult,
)
from .progress import build_health, build_logs, build_status, build_summary, build_timeline
from .retry import RetryPolicy, run_attempt
from .store import ExecutionStoreProtocol

if TYPE_CHECKING:
    from taskgraph.services.handlers.registry import HandlerRegistry

logger = get_logger(__name__)


def merge_context(target: Dict[str, Any], patch: Dict[str, Any]) -> None:
    """Deep-merge a handler's context patch into the execution context."""
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            merge_context(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


@dataclass
class _Run:
    """In-memory state of one execution owned by this executor."""
    execution: Execution
    graph: Graph
    states: Dict[str, NodeState]
    attempts: List[Attempt] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    wake: asyncio.Event = field(default_factory=asyncio.Event)
    tasks: Dict[str, asyncio.Task] = field(default_factory=dict)
    # node_id -> start time of the attempt currently calling its handler
    in_flight: Dict[str, float] = field(default_factory=dict)
    loop_task: Optional[asyncio.Task] = None
    stopping: bool = False

    def attempt_count(self, node_id: str) -> int:
        return sum(1 for a in self.attempts if a.node_id == node_id)


class WorkflowExecutor:
    """Runs workflow definitions as dependency graphs of typed steps.

    Features:
    - Isolated in-memory run per execution, persisted through the store
    - Parallel execution of independent nodes up to ``parallelism``
    - Retries with exponential backoff; per-step timeouts
    - Terminal transitions published on a typed event channel
    """

    def __init__(self, store: ExecutionStoreProtocol, registry: "HandlerRegistry",
                 settings: Optional[Settings] = None,
                 events: Optional[ExecutionEventChannel] = None,
                 retry_policy: Optional[RetryPolicy] = None):
        """Initialize executor.

        Args:
            store: Persistence gateway for definitions and execution state
            registry: StepKind -> capability lookup
            settings: Engine settings (defaults from environment)
            events: Outbound channel for lifecycle events
            retry_policy: Backoff policy (defaults from settings)
        """
        self.store = store
        self.registry = registry
        self.settings = settings or Settings()
        self.events = events or ExecutionEventChannel()
        self.retry_policy = retry_policy or RetryPolicy(
            base_delay=self.settings.retry_base_delay,
            max_delay=self.settings.retry_max_delay,
        )
        self._runs: Dict[str, _Run] = {}

    # =========================================================================
    # CONTROL SURFACE
    # =========================================================================

    async def start(self, definition_id: str, context: Optional[Dict[str, Any]] = None,
                    parallelism: Optional[int] = None, dry_run: bool = False) -> str:
        """Start an execution of a stored definition.

        Args:
            definition_id: Workflow definition to run
            context: Initial variable bag
            parallelism: Max concurrently running nodes (settings default if None)
            dry_run: Elide side-effecting handlers

        Returns:
            The new execution id

        Raises:
            DefinitionNotFound: Unknown definition id
            GraphValidationError: Malformed definition (no execution is created)
            ValueError: parallelism below 1
        """
        if parallelism is None:
            parallelism = self.settings.default_parallelism
        if parallelism < 1:
            raise ValueError("parallelism must be at least 1")

        definition = await self.store.load_definition(definition_id)
        graph = Graph.build(definition)

        execution = Execution.create(definition_id, context=copy.deepcopy(context or {}),
                                     parallelism=parallelism, dry_run=dry_run)
        run = _Run(
            execution=execution,
            graph=graph,
            states={node_id: NodeState(node_id=node_id) for node_id in graph.node_ids},
        )

        async with run.lock:
            await self.store.save_execution(execution)
            for node_id, state in run.states.items():
                await self.store.save_node_state(execution.id, node_id, state)

        self._runs[execution.id] = run
        run.loop_task = asyncio.create_task(self._run_loop(run),
                                            name=f"execution_{execution.id}")

        logger.info("Execution created",
                    execution_id=execution.id,
                    definition_id=definition_id,
                    node_count=len(graph),
                    parallelism=parallelism,
                    dry_run=dry_run)
        return execution.id

    async def execute(self, definition_id: str, context: Optional[Dict[str, Any]] = None,
                      parallelism: Optional[int] = None,
                      dry_run: bool = False) -> GraphExecutionStatus:
        """Start an execution and wait for it to settle."""
        execution_id = await self.start(definition_id, context, parallelism, dry_run)
        return await self.wait(execution_id)

    async def wait(self, execution_id: str) -> GraphExecutionStatus:
        """Wait until the execution's scheduling loop has exited.

        Follows loops restarted by operator retries while waiting. A paused
        execution keeps its loop alive, so this returns only after resume.
        """
        run = await self._get_run(execution_id)
        while run.loop_task is not None and not run.loop_task.done():
            await asyncio.shield(run.loop_task)
        if run.loop_task is not None and not run.loop_task.cancelled():
            exc = run.loop_task.exception()
            if exc is not None:
                raise exc
        return await self.status(execution_id)

    async def stop(self, execution_id: str) -> bool:
        """Stop an execution.

        No new nodes launch. Backoff sleeps are cancelled at once; in-flight
        handler calls get ``stop_grace_seconds`` to finish before they are
        cancelled. Any node left RUNNING is reconciled to FAILED (Cancelled).

        Returns:
            True if the execution was stopped, False if it was already terminal
        """
        run = await self._get_run(execution_id)

        async with run.lock:
            execution = run.execution
            if execution.status.is_terminal:
                logger.info("Stop ignored, execution already terminal",
                            execution_id=execution_id, status=execution.status.value)
                return False
            run.stopping = True
            execution.status = ExecutionStatus.STOPPED
            execution.completed_at = time.time()
            execution.error = "Stopped by operator"
            await self.store.save_execution(execution)
            self._publish(EventType.EXECUTION_STOPPED, execution_id)
            run.wake.set()

        logger.info("Stopping execution", execution_id=execution_id,
                    in_flight=list(run.in_flight), running=list(run.tasks))

        for node_id, task in list(run.tasks.items()):
            if node_id not in run.in_flight:
                task.cancel()

        in_flight = [t for n, t in run.tasks.items() if n in run.in_flight and not t.done()]
        if in_flight:
            _, still_running = await asyncio.wait(in_flight,
                                                  timeout=self.settings.stop_grace_seconds)
            for task in still_running:
                task.cancel()

        if run.tasks:
            await asyncio.gather(*run.tasks.values(), return_exceptions=True)

        await self._reconcile_running(run)
        return True

    async def retry_task(self, execution_id: str, node_id: str) -> NodeState:
        """Re-run a FAILED or BLOCKED node.

        Resets the node's retry count, returns it to PENDING and releases
        blocked nodes that are no longer dead. A FAILED execution reopens.

        Raises:
            InvalidOperation: Node not FAILED/BLOCKED, or execution STOPPED/COMPLETED
            NodeNotFound: Node id not in the graph
        """
        run = await self._get_run(execution_id)

        async with run.lock:
            execution = run.execution
            state = self._node_state(run, node_id)

            if state.status not in (NodeStatus.FAILED, NodeStatus.BLOCKED):
                raise InvalidOperation(
                    f"Cannot retry node {node_id} in status {state.status.value}")
            if execution.status in (ExecutionStatus.STOPPED, ExecutionStatus.COMPLETED):
                raise InvalidOperation(
                    f"Cannot retry node in {execution.status.value} execution {execution_id}")

            was_blocked = state.status == NodeStatus.BLOCKED
            state.reset()
            state.released = was_blocked
            await self.store.save_node_state(execution_id, node_id, state)
            log_node_transition(logger, execution_id, node_id, NodeStatus.PENDING.value,
                                operator="retry", released=was_blocked)

            await self._release_blocked(run)

            if execution.status == ExecutionStatus.FAILED:
                execution.status = ExecutionStatus.RUNNING
                execution.completed_at = None
                execution.error = None
                await self.store.save_execution(execution)
                self._publish(EventType.EXECUTION_REOPENED, execution_id, node_id)
                logger.info("Execution reopened", execution_id=execution_id, node_id=node_id)

            self._ensure_loop(run)
            return copy.deepcopy(state)

    async def skip_task(self, execution_id: str, node_id: str, reason: str) -> NodeState:
        """Mark a BLOCKED or FAILED node SKIPPED.

        Dependents on the node's success edge stay (or become) BLOCKED, but
        the execution settles instead of stalling.

        Raises:
            InvalidOperation: Node not BLOCKED/FAILED, or execution STOPPED/COMPLETED
            NodeNotFound: Node id not in the graph
        """
        run = await self._get_run(execution_id)

        async with run.lock:
            execution = run.execution
            state = self._node_state(run, node_id)

            if state.status not in (NodeStatus.BLOCKED, NodeStatus.FAILED):
                raise InvalidOperation(
                    f"Cannot skip node {node_id} in status {state.status.value}")
            if execution.status in (ExecutionStatus.STOPPED, ExecutionStatus.COMPLETED):
                raise InvalidOperation(
                    f"Cannot skip node in {execution.status.value} execution {execution_id}")

            await self._skip_node(run, node_id, SkipCause.OPERATOR, reason)
            await self._settle_dead_nodes(run)

            if run.loop_task is None or run.loop_task.done():
                await self._finalize_locked(run)
            else:
                run.wake.set()
            return copy.deepcopy(state)

    async def pause(self, execution_id: str) -> bool:
        """Hold new node launches.

        Nodes already running, including ones backing off between attempts,
        run to their own end. Nothing new starts until ``resume``.

        Returns:
            True if the execution was paused, False if it already was

        Raises:
            InvalidOperation: Execution is terminal
        """
        run = await self._get_run(execution_id)

        async with run.lock:
            execution = run.execution
            if execution.status == ExecutionStatus.PAUSED:
                return False
            if execution.status.is_terminal:
                raise InvalidOperation(
                    f"Cannot pause {execution.status.value} execution {execution_id}")
            execution.status = ExecutionStatus.PAUSED
            await self.store.save_execution(execution)
            self._publish(EventType.EXECUTION_PAUSED, execution_id,
                          data={"running": list(run.tasks)})
            logger.info("Execution paused", execution_id=execution_id,
                        running=list(run.tasks))
            return True

    async def resume(self, execution_id: str) -> bool:
        """Let a paused execution launch ready nodes again.

        Returns:
            True if the execution was resumed, False if it was not paused

        Raises:
            InvalidOperation: Execution is terminal
        """
        run = await self._get_run(execution_id)

        async with run.lock:
            execution = run.execution
            if execution.status.is_terminal:
                raise InvalidOperation(
                    f"Cannot resume {execution.status.value} execution {execution_id}")
            if execution.status != ExecutionStatus.PAUSED:
                return False
            execution.status = ExecutionStatus.RUNNING
            await self.store.save_execution(execution)
            self._publish(EventType.EXECUTION_RESUMED, execution_id)
            logger.info("Execution resumed", execution_id=execution_id)
            self._ensure_loop(run)
            return True

    async def status(self, execution_id: str) -> GraphExecutionStatus:
        """Consistent snapshot of the execution and its nodes."""
        run = await self._get_run(execution_id)
        async with run.lock:
            return build_status(copy.deepcopy(run.execution), copy.deepcopy(run.states))

    async def summary(self, execution_id: str) -> ExecutionSummary:
        """Node counts and progress for the execution."""
        run = await self._get_run(execution_id)
        async with run.lock:
            return build_summary(copy.deepcopy(list(run.states.values())))

    async def logs(self, execution_id: str) -> List[NodeLog]:
        """Attempts grouped by node, in step order."""
        run = await self._get_run(execution_id)
        async with run.lock:
            return build_logs(copy.deepcopy(run.states), list(run.attempts),
                              order=run.graph.node_ids)

    async def timeline(self, execution_id: str) -> List[Attempt]:
        """All attempts across nodes sorted by start time."""
        run = await self._get_run(execution_id)
        async with run.lock:
            return build_timeline(list(run.attempts))

    async def health(self, execution_id: str) -> ExecutionHealth:
        """Healthy/warning/critical classification, including stall detection."""
        run = await self._get_run(execution_id)
        async with run.lock:
            summary = build_summary(run.states.values())
            ready = [] if run.stopping else run.graph.ready_nodes(run.states)
            return build_health(run.execution, summary, len(ready))

    def active_execution_ids(self) -> List[str]:
        """Ids of in-process executions that are not yet terminal."""
        return [execution_id for execution_id, run in self._runs.items()
                if not run.execution.status.is_terminal]

    async def shutdown(self) -> None:
        """Stop every execution that is still running."""
        for execution_id, run in list(self._runs.items()):
            if not run.execution.status.is_terminal:
                await self.stop(execution_id)
        logger.info("Executor shut down", executions=len(self._runs))

    # =========================================================================
    # SCHEDULING LOOP
    # =========================================================================

    async def _run_loop(self, run: _Run) -> None:
        """Continuous scheduling loop for one execution.

        Launches ready nodes as capacity frees up and wakes on node
        completion, stop, or operator actions. Exits once nothing is running
        and nothing more can be launched.
        """
        execution = run.execution
        start_time = time.time()
        bind_execution_context(execution_id=execution.id)

        try:
            async with run.lock:
                if execution.started_at is None:
                    if execution.status == ExecutionStatus.PENDING:
                        execution.status = ExecutionStatus.RUNNING
                    execution.started_at = time.time()
                    await self.store.save_execution(execution)
                    self._publish(EventType.EXECUTION_STARTED, execution.id,
                                  data={"node_count": len(run.graph)})
                    logger.info("Starting execution", execution_id=execution.id,
                                roots=run.graph.roots())

            while True:
                async with run.lock:
                    run.wake.clear()
                    paused = execution.status == ExecutionStatus.PAUSED
                    if not run.stopping and not paused:
                        await self._launch_ready(run)
                    if not run.tasks and not paused:
                        break
                    pending = set(run.tasks.values())
                    task_nodes = {task: node_id for node_id, task in run.tasks.items()}

                waiter = asyncio.ensure_future(run.wake.wait())
                done, _ = await asyncio.wait(pending | {waiter},
                                             return_when=asyncio.FIRST_COMPLETED)
                if waiter not in done:
                    waiter.cancel()

                for task in done:
                    if task is waiter:
                        continue
                    run.tasks.pop(task_nodes[task], None)
                    if not task.cancelled() and task.exception() is not None:
                        raise task.exception()

            await self._finalize(run)
            log_execution_time(logger, "execution", start_time, time.time(),
                               execution_id=execution.id,
                               status=execution.status.value)

        except asyncio.CancelledError:
            for task in run.tasks.values():
                task.cancel()
            raise

        except Exception as e:
            logger.error("Execution loop failed", execution_id=execution.id,
                         error=str(e), error_type=type(e).__name__)
            for task in run.tasks.values():
                task.cancel()
            if run.tasks:
                await asyncio.gather(*run.tasks.values(), return_exceptions=True)
                run.tasks.clear()
            async with run.lock:
                execution.status = ExecutionStatus.FAILED
                execution.completed_at = time.time()
                execution.error = f"Engine error: {e}"
                await self._fail_running_locked(run, Cancelled(execution.error))
                await self.store.save_execution(execution)
            self._publish(EventType.EXECUTION_FAILED, execution.id,
                          data={"error": execution.error})
            raise

    def _ensure_loop(self, run: _Run) -> None:
        if run.loop_task is None or run.loop_task.done():
            run.loop_task = asyncio.create_task(self._run_loop(run),
                                                name=f"execution_{run.execution.id}")
        else:
            run.wake.set()

    async def _launch_ready(self, run: _Run) -> None:
        """Settle dead nodes, skip unmet conditions, launch up to capacity.

        Repeats until a pass skips nothing, since a condition skip can make
        further nodes dead. Caller holds the lock.
        """
        while True:
            await self._settle_dead_nodes(run)
            launchable = []
            skipped_any = False

            for node_id in run.graph.ready_nodes(run.states):
                step = run.graph.step(node_id)
                if step.condition and not evaluate_condition(step.condition,
                                                             run.execution.context):
                    await self._skip_node(
                        run, node_id, SkipCause.CONDITION_NOT_MET,
                        f"Condition not met: {step.condition.field} "
                        f"{step.condition.operator} {step.condition.value!r}")
                    skipped_any = True
                else:
                    launchable.append(node_id)

            if not skipped_any:
                break

        capacity = run.execution.parallelism - len(run.tasks)
        for node_id in launchable[:max(capacity, 0)]:
            state = run.states[node_id]
            state.status = NodeStatus.RUNNING
            state.started_at = time.time()
            await self.store.save_node_state(run.execution.id, node_id, state)
            run.tasks[node_id] = asyncio.create_task(
                self._execute_node(run, node_id), name=f"node_{node_id}")
            logger.info("Scheduled node", execution_id=run.execution.id, node_id=node_id)

    async def _settle_dead_nodes(self, run: _Run) -> None:
        """Mark nodes that can never run BLOCKED or SKIPPED, to a fixpoint."""
        while True:
            dead = run.graph.dead_nodes(run.states)
            if not dead:
                return
            for verdict in dead:
                if verdict.status == NodeStatus.BLOCKED:
                    state = run.states[verdict.node_id]
                    state.status = NodeStatus.BLOCKED
                    state.blocked_by = verdict.cause_node
                    state.completed_at = time.time()
                    await self.store.save_node_state(run.execution.id, verdict.node_id, state)
                    log_node_transition(logger, run.execution.id, verdict.node_id,
                                        NodeStatus.BLOCKED.value, reason=verdict.reason)
                    self._publish(EventType.NODE_BLOCKED, run.execution.id, verdict.node_id,
                                  {"reason": verdict.reason, "blocked_by": verdict.cause_node})
                else:
                    await self._skip_node(run, verdict.node_id, verdict.skip_cause,
                                          verdict.reason)

    async def _release_blocked(self, run: _Run) -> None:
        """Return BLOCKED nodes whose incoming edges are live again to PENDING."""
        changed = True
        while changed:
            changed = False
            for node_id in run.graph.node_ids:
                state = run.states[node_id]
                if state.status != NodeStatus.BLOCKED:
                    continue
                if run.graph.dead_verdict(node_id, run.states) is None:
                    state.reset()
                    await self.store.save_node_state(run.execution.id, node_id, state)
                    log_node_transition(logger, run.execution.id, node_id,
                                        NodeStatus.PENDING.value, reason="unblocked")
                    changed = True

    async def _skip_node(self, run: _Run, node_id: str, cause: SkipCause,
                         reason: str) -> None:
        state = run.states[node_id]
        state.status = NodeStatus.SKIPPED
        state.skip_cause = cause
        state.skip_reason = reason
        state.completed_at = time.time()
        await self.store.save_node_state(run.execution.id, node_id, state)
        log_node_transition(logger, run.execution.id, node_id, NodeStatus.SKIPPED.value,
                            cause=cause.value, reason=reason)
        self._publish(EventType.NODE_SKIPPED, run.execution.id, node_id,
                      {"cause": cause.value, "reason": reason})

    async def _finalize(self, run: _Run) -> None:
        """Settle the execution's terminal status once the loop has drained."""
        async with run.lock:
            await self._finalize_locked(run)

    async def _finalize_locked(self, run: _Run) -> None:
        execution = run.execution
        await self._reconcile_running_locked(run)

        if execution.status == ExecutionStatus.STOPPED:
            await self.store.save_execution(execution)
            return

        previous = execution.status
        states = run.states.values()
        failed = [s.node_id for s in states
                  if s.status == NodeStatus.FAILED
                  and not run.graph.step(s.node_id).is_optional]
        blocked = [s.node_id for s in states if s.status == NodeStatus.BLOCKED]
        pending = [s.node_id for s in states if s.status == NodeStatus.PENDING]

        if pending and not failed and not blocked:
            logger.warning("Execution stalled - no tasks running",
                           execution_id=execution.id, pending=pending)
            return

        if failed or blocked:
            execution.status = ExecutionStatus.FAILED
            reasons = []
            if failed:
                reasons.append("failed: " + ", ".join(failed))
            if blocked:
                reasons.append("blocked: " + ", ".join(blocked))
            execution.error = "Required steps did not complete (" + "; ".join(reasons) + ")"
        else:
            execution.status = ExecutionStatus.COMPLETED
            execution.error = None

        if execution.status != previous or execution.completed_at is None:
            execution.completed_at = time.time()
        await self.store.save_execution(execution)

        if execution.status != previous:
            event = (EventType.EXECUTION_COMPLETED
                     if execution.status == ExecutionStatus.COMPLETED
                     else EventType.EXECUTION_FAILED)
            self._publish(event, execution.id,
                          data={"summary": build_summary(states).to_dict(),
                                "error": execution.error})
            logger.info("Execution finished", execution_id=execution.id,
                        status=execution.status.value, error=execution.error)

    async def _reconcile_running(self, run: _Run) -> None:
        async with run.lock:
            await self._reconcile_running_locked(run)

    async def _reconcile_running_locked(self, run: _Run) -> None:
        """Turn RUNNING nodes of a stopped execution into FAILED (Cancelled)."""
        if run.stopping:
            await self._fail_running_locked(run, Cancelled())

    async def _fail_running_locked(self, run: _Run, error: StepError) -> None:
        """Fail every RUNNING node with ``error``, closing its in-flight attempt."""
        now = time.time()
        for node_id, state in run.states.items():
            if state.status != NodeStatus.RUNNING:
                continue
            started = run.in_flight.pop(node_id, None)
            if started is not None:
                attempt = Attempt(
                    node_id=node_id,
                    attempt_number=run.attempt_count(node_id) + 1,
                    started_at=started,
                    completed_at=now,
                    status=AttemptStatus.FAILED,
                    error_detail=error.message,
                    error_kind=error.kind,
                    dry_run=run.execution.dry_run,
                )
                await self.store.append_attempt(run.execution.id, node_id, attempt)
                run.attempts.append(attempt)
            state.status = NodeStatus.FAILED
            state.last_error = f"{error.kind}: {error.message}"
            state.completed_at = now
            await self.store.save_node_state(run.execution.id, node_id, state)
            log_node_transition(logger, run.execution.id, node_id, NodeStatus.FAILED.value,
                                error=state.last_error)
            self._publish(EventType.NODE_FAILED, run.execution.id, node_id,
                          {"error": state.last_error, "error_kind": error.kind})

    # =========================================================================
    # NODE EXECUTION WITH RETRY
    # =========================================================================

    async def _execute_node(self, run: _Run, node_id: str) -> None:
        """Run a node's attempts until success, a terminal failure, or stop.

        Each iteration: mark the attempt in flight, call the handler under its
        deadline, append the Attempt, then either finish the node or back off.
        """
        execution = run.execution
        step = run.graph.step(node_id)
        state = run.states[node_id]
        bind_execution_context(execution_id=execution.id, node_id=node_id)

        while True:
            async with run.lock:
                if run.stopping:
                    return
                started = time.time()
                run.in_flight[node_id] = started
                snapshot = copy.deepcopy(execution.context)

            result: Optional[StepResult] = None
            error: Optional[StepError] = None
            dry_run_elided = False
            try:
                capability = self.registry.resolve(step.kind)
                if capability.resolve_templates:
                    config = resolve_config(step.config, snapshot)
                else:
                    config = copy.deepcopy(step.config)

                if execution.dry_run and capability.side_effects:
                    dry_run_elided = True
                    result = StepResult(output={"dry_run": True})
                else:
                    result = await run_attempt(capability.handler, config, snapshot,
                                               step.timeout_seconds)
            except StepError as e:
                error = e

            async with run.lock:
                if run.in_flight.pop(node_id, None) is None:
                    # Reconciled by stop while the handler was returning
                    return
                attempt = Attempt(
                    node_id=node_id,
                    attempt_number=run.attempt_count(node_id) + 1,
                    started_at=started,
                    completed_at=time.time(),
                    status=AttemptStatus.FAILED if error else AttemptStatus.COMPLETED,
                    error_detail=error.message if error else None,
                    error_kind=error.kind if error else None,
                    dry_run=dry_run_elided,
                )
                await self.store.append_attempt(execution.id, node_id, attempt)
                run.attempts.append(attempt)

                if error is None:
                    await self._complete_node(run, node_id, result)
                    return

                state.last_error = f"{error.kind}: {error.message}"
                if (not run.stopping
                        and self.retry_policy.should_retry(error, state.retry_count,
                                                           step.max_retries)):
                    delay = self.retry_policy.calculate_delay(state.retry_count)
                    state.retry_count += 1
                    await self.store.save_node_state(execution.id, node_id, state)
                    logger.info("Retrying node after failure",
                                execution_id=execution.id,
                                node_id=node_id,
                                attempt=attempt.attempt_number,
                                retry_count=state.retry_count,
                                max_retries=step.max_retries,
                                delay=delay,
                                error=error.message[:200])
                    self._publish(EventType.NODE_RETRYING, execution.id, node_id,
                                  {"attempt": attempt.attempt_number,
                                   "retry_count": state.retry_count,
                                   "delay": delay,
                                   "error": error.message})
                else:
                    await self._fail_node(run, node_id, error)
                    return

            await asyncio.sleep(delay)

    async def _complete_node(self, run: _Run, node_id: str, result: StepResult) -> None:
        """Record success and merge the handler's patch. Caller holds the lock."""
        execution = run.execution
        state = run.states[node_id]
        output = copy.deepcopy(result.output or {})

        merge_context(execution.context, result.context_patch or {})
        execution.context.setdefault(STEP_OUTPUTS_KEY, {})[node_id] = copy.deepcopy(output)

        state.status = NodeStatus.COMPLETED
        state.output = output
        state.completed_at = time.time()
        await self.store.save_node_state(execution.id, node_id, state)
        await self.store.save_execution(execution)

        log_node_transition(logger, execution.id, node_id, NodeStatus.COMPLETED.value,
                            retry_count=state.retry_count)
        self._publish(EventType.NODE_COMPLETED, execution.id, node_id,
                      {"output": output})

    async def _fail_node(self, run: _Run, node_id: str, error: StepError) -> None:
        """Record a terminal failure. Caller holds the lock."""
        execution = run.execution
        state = run.states[node_id]
        optional = run.graph.step(node_id).is_optional

        state.status = NodeStatus.FAILED
        state.completed_at = time.time()
        await self.store.save_node_state(execution.id, node_id, state)

        log_node_transition(logger, execution.id, node_id, NodeStatus.FAILED.value,
                            error=state.last_error, optional=optional,
                            retry_count=state.retry_count)
        if optional:
            logger.warning("Optional step failed, continuing on success edge",
                           execution_id=execution.id, node_id=node_id,
                           error=state.last_error)
        self._publish(
            EventType.NODE_OPTIONAL_FAILED if optional else EventType.NODE_FAILED,
            execution.id, node_id,
            {"error": state.last_error, "error_kind": error.kind,
             "retry_count": state.retry_count},
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    async def _get_run(self, execution_id: str) -> _Run:
        """Return the in-memory run, rebuilding it from the store if needed.

        Raises:
            ExecutionNotFound: Unknown execution id
        """
        run = self._runs.get(execution_id)
        if run is not None:
            return run

        execution, states, attempts = await self.store.load_execution_snapshot(execution_id)
        definition = await self.store.load_definition(execution.definition_id)
        graph = Graph.build(definition)
        by_id = {s.node_id: s for s in states}
        run = _Run(
            execution=execution,
            graph=graph,
            states={n: by_id.get(n) or NodeState(node_id=n) for n in graph.node_ids},
            attempts=sorted(attempts, key=lambda a: (a.node_id, a.attempt_number)),
            stopping=execution.status == ExecutionStatus.STOPPED,
        )
        self._runs[execution_id] = run
        logger.debug("Loaded execution from store", execution_id=execution_id,
                     status=execution.status.value)
        return run

    @staticmethod
    def _node_state(run: _Run, node_id: str) -> NodeState:
        if node_id not in run.states:
            raise NodeNotFound(node_id)
        return run.states[node_id]

    def _publish(self, event_type: EventType, execution_id: str,
                 node_id: Optional[str] = None, data: Optional[Dict[str, Any]] = None) -> None:
        self.events.publish(EngineEvent(type=event_type, execution_id=execution_id,
                                        node_id=node_id, data=data or {}))
