"""Graph model: adjacency, validation and readiness over a workflow definition.

Edges come from each step's ``on_success_step_id`` / ``on_failure_step_id``,
plus a success edge from every step named in its ``depends_on`` list, which
is how one step fans out to several successors. Joins are AND-joins: a node is ready once every incoming edge has been
taken by its source. Cycles are legal only when every node on them is
optional; such cycles are broken at their DFS back edges, which are kept
for introspection but never gate scheduling.
"""

from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Set, Tuple

from taskgraph.core.logging import get_logger
from .errors import GraphValidationError, NodeNotFound
from .models import (
    EdgeOutcome,
    NodeState,
    NodeStatus,
    SkipCause,
    StepSpec,
    WorkflowDefinition,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class Edge:
    source: str
    target: str
    outcome: EdgeOutcome


@dataclass(frozen=True)
class DeadNode:
    """A pending node that can never become ready, and how to settle it."""
    node_id: str
    status: NodeStatus
    skip_cause: Optional[SkipCause]
    cause_node: str
    reason: str


class Graph:
    """Immutable adjacency structure built from a WorkflowDefinition."""

    def __init__(self, definition: WorkflowDefinition, steps: List[StepSpec],
                 forward_edges: List[Edge], back_edges: List[Edge]):
        self.definition = definition
        self._steps: Dict[str, StepSpec] = {s.id: s for s in steps}
        self._order: List[str] = [s.id for s in steps]
        self.forward_edges = forward_edges
        self.back_edges = back_edges

        # target -> source -> outcomes that satisfy the edge
        self._incoming: Dict[str, Dict[str, Set[EdgeOutcome]]] = defaultdict(dict)
        self._outgoing: Dict[str, List[Edge]] = defaultdict(list)
        for edge in forward_edges:
            self._incoming[edge.target].setdefault(edge.source, set()).add(edge.outcome)
            self._outgoing[edge.source].append(edge)

    # =========================================================================
    # CONSTRUCTION
    # =========================================================================

    @classmethod
    def build(cls, definition: WorkflowDefinition) -> "Graph":
        """Validate a definition and build its graph.

        Raises:
            GraphValidationError: If the definition is empty, has duplicate
                ids, dangling or self-referencing edges, or a cycle that
                contains a required node.
        """
        steps = definition.ordered_steps()
        errors: List[str] = []

        if not steps:
            raise GraphValidationError(["Workflow has no steps"])

        ids: Set[str] = set()
        for step in steps:
            if step.id in ids:
                errors.append(f"Duplicate step id: {step.id}")
            ids.add(step.id)

        edges: List[Edge] = []
        for step in steps:
            for target, outcome in ((step.on_success_step_id, EdgeOutcome.SUCCESS),
                                    (step.on_failure_step_id, EdgeOutcome.FAILURE)):
                if target is None:
                    continue
                if target == step.id:
                    errors.append(f"Step {step.id} lists itself as its {outcome.value} target")
                elif target not in ids:
                    errors.append(f"Step {step.id} {outcome.value} target does not exist: {target}")
                else:
                    edges.append(Edge(step.id, target, outcome))

        for step in steps:
            for dependency in step.depends_on:
                if dependency == step.id:
                    errors.append(f"Step {step.id} depends on itself")
                elif dependency not in ids:
                    errors.append(f"Step {step.id} dependency does not exist: {dependency}")
                else:
                    edge = Edge(dependency, step.id, EdgeOutcome.SUCCESS)
                    if edge not in edges:
                        edges.append(edge)

        if errors:
            raise GraphValidationError(errors)

        by_id = {s.id: s for s in steps}
        for component in _strongly_connected(steps, edges):
            if len(component) < 2:
                continue
            required = sorted(n for n in component if not by_id[n].is_optional)
            if required:
                errors.append(
                    "Cycle through required step(s): " + ", ".join(required)
                )

        if errors:
            raise GraphValidationError(errors)

        back = _back_edges(steps, edges)
        forward = [e for e in edges if e not in back]

        if back:
            logger.info("Optional cycle broken at back edges",
                        definition_id=definition.id,
                        back_edges=[(e.source, e.target) for e in back])

        return cls(definition, steps, forward, sorted(back, key=lambda e: (e.source, e.target)))

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    @property
    def node_ids(self) -> List[str]:
        """Node ids in step order."""
        return list(self._order)

    def step(self, node_id: str) -> StepSpec:
        try:
            return self._steps[node_id]
        except KeyError:
            raise NodeNotFound(node_id) from None

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._steps

    def __len__(self) -> int:
        return len(self._order)

    def predecessors(self, node_id: str) -> List[str]:
        return [n for n in self._order if n in self._incoming.get(node_id, {})]

    def successors(self, node_id: str) -> List[str]:
        return [e.target for e in self._outgoing.get(node_id, [])]

    def roots(self) -> List[str]:
        return [n for n in self._order if not self._incoming.get(n)]

    def downstream_of(self, node_id: str, outcome: EdgeOutcome) -> Optional[str]:
        """Next node id for a success/failure outcome, or None if terminal."""
        step = self.step(node_id)
        if outcome == EdgeOutcome.SUCCESS:
            return step.on_success_step_id
        return step.on_failure_step_id

    # =========================================================================
    # READINESS
    # =========================================================================

    def taken_outcome(self, state: NodeState) -> Optional[EdgeOutcome]:
        """Edge a terminal node takes.

        Optional failures take the success edge. Skipped and blocked nodes
        take no edge at all.
        """
        if state.status == NodeStatus.COMPLETED:
            return EdgeOutcome.SUCCESS
        if state.status == NodeStatus.FAILED:
            if self.step(state.node_id).is_optional:
                return EdgeOutcome.SUCCESS
            return EdgeOutcome.FAILURE
        return None

    def ready_nodes(self, states: Mapping[str, NodeState]) -> List[str]:
        """Pending nodes whose every incoming edge has been taken.

        A node released by an operator only waits for its predecessors to
        settle, whichever edge they took.
        """
        ready = []
        for node_id in self._order:
            state = states[node_id]
            if state.status != NodeStatus.PENDING:
                continue
            incoming = self._incoming.get(node_id, {})
            if state.released:
                if all(states[src].status.is_terminal for src in incoming):
                    ready.append(node_id)
            elif all(self.taken_outcome(states[src]) in outcomes
                     for src, outcomes in incoming.items()):
                ready.append(node_id)
        return ready

    def dead_nodes(self, states: Mapping[str, NodeState]) -> List[DeadNode]:
        """Pending nodes with an incoming edge that can never be taken.

        BLOCKED when the cause is a failure the operator must act on: a
        required predecessor failed, a predecessor is blocked, or it was
        skipped by an operator. SKIPPED when the path was simply not
        chosen. BLOCKED wins when both apply.
        """
        dead = []
        for node_id in self._order:
            state = states[node_id]
            if state.status != NodeStatus.PENDING or state.released:
                continue
            verdict = self.dead_verdict(node_id, states)
            if verdict:
                dead.append(verdict)
        return dead

    def dead_verdict(self, node_id: str,
                     states: Mapping[str, NodeState]) -> Optional[DeadNode]:
        """Why a pending node can never become ready, or None if it still can."""
        skipped: Optional[DeadNode] = None

        for src, outcomes in self._incoming.get(node_id, {}).items():
            src_state = states[src]
            if not src_state.status.is_terminal:
                continue
            taken = self.taken_outcome(src_state)
            if taken in outcomes:
                continue

            if src_state.status == NodeStatus.BLOCKED:
                return DeadNode(node_id, NodeStatus.BLOCKED, None, src,
                                f"Predecessor {src} is blocked")
            if src_state.status == NodeStatus.SKIPPED:
                if src_state.skip_cause == SkipCause.OPERATOR:
                    return DeadNode(node_id, NodeStatus.BLOCKED, None, src,
                                    f"Predecessor {src} was skipped by operator")
                skipped = skipped or DeadNode(node_id, NodeStatus.SKIPPED,
                                              SkipCause.BRANCH_NOT_TAKEN, src,
                                              f"Predecessor {src} was skipped")
                continue
            if taken == EdgeOutcome.FAILURE:
                return DeadNode(node_id, NodeStatus.BLOCKED, None, src,
                                f"Required predecessor {src} failed")
            skipped = skipped or DeadNode(node_id, NodeStatus.SKIPPED,
                                          SkipCause.BRANCH_NOT_TAKEN, src,
                                          f"Predecessor {src} took the {taken.value} edge")
        return skipped


# =============================================================================
# CYCLE HELPERS
# =============================================================================

def _adjacency(steps: List[StepSpec], edges: List[Edge]) -> Dict[str, List[str]]:
    adjacency: Dict[str, List[str]] = {s.id: [] for s in steps}
    for edge in edges:
        adjacency[edge.source].append(edge.target)
    return adjacency


def _strongly_connected(steps: List[StepSpec], edges: List[Edge]) -> List[Set[str]]:
    """Tarjan's algorithm, iterative so deep chains cannot hit the recursion limit."""
    adjacency = _adjacency(steps, edges)
    index: Dict[str, int] = {}
    lowlink: Dict[str, int] = {}
    on_stack: Set[str] = set()
    stack: List[str] = []
    components: List[Set[str]] = []
    counter = 0

    for root in adjacency:
        if root in index:
            continue
        work: List[Tuple[str, int]] = [(root, 0)]
        while work:
            node, child_idx = work.pop()
            if child_idx == 0:
                index[node] = lowlink[node] = counter
                counter += 1
                stack.append(node)
                on_stack.add(node)
            children = adjacency[node]
            if child_idx < len(children):
                work.append((node, child_idx + 1))
                child = children[child_idx]
                if child not in index:
                    work.append((child, 0))
                elif child in on_stack:
                    lowlink[node] = min(lowlink[node], index[child])
                continue
            if lowlink[node] == index[node]:
                component = set()
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.add(member)
                    if member == node:
                        break
                components.append(component)
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])

    return components


def _back_edges(steps: List[StepSpec], edges: List[Edge]) -> Set[Edge]:
    """Edges closing a cycle during a DFS visited in step order."""
    outgoing: Dict[str, List[Edge]] = {s.id: [] for s in steps}
    for edge in edges:
        outgoing[edge.source].append(edge)

    visited: Set[str] = set()
    on_path: Set[str] = set()
    back: Set[Edge] = set()

    for root in outgoing:
        if root in visited:
            continue
        work: List[Tuple[str, int]] = [(root, 0)]
        visited.add(root)
        on_path.add(root)
        while work:
            node, child_idx = work.pop()
            children = outgoing[node]
            if child_idx < len(children):
                work.append((node, child_idx + 1))
                edge = children[child_idx]
                if edge.target in on_path:
                    back.add(edge)
                elif edge.target not in visited:
                    visited.add(edge.target)
                    on_path.add(edge.target)
                    work.append((edge.target, 0))
            else:
                on_path.discard(node)

    return back
