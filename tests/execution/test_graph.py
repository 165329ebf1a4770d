"""Tests for Graph construction, validation and readiness."""

import pytest

from taskgraph.services.execution import (
    EdgeOutcome,
    Graph,
    GraphValidationError,
    NodeNotFound,
    NodeState,
    NodeStatus,
    SkipCause,
    StepSpec,
    WorkflowDefinition,
)


def _step(step_id, order=0, **fields):
    return StepSpec(id=step_id, kind="NOOP", step_order=order, **fields)


def _graph(*steps):
    return Graph.build(WorkflowDefinition(steps=list(steps)))


def _states(graph, **statuses):
    states = {n: NodeState(node_id=n) for n in graph.node_ids}
    for node_id, status in statuses.items():
        states[node_id].status = status
    return states


class TestValidation:
    def test_empty_definition(self):
        with pytest.raises(GraphValidationError) as exc_info:
            Graph.build(WorkflowDefinition(steps=[]))
        assert exc_info.value.errors == ["Workflow has no steps"]

    def test_duplicate_ids(self):
        with pytest.raises(GraphValidationError) as exc_info:
            _graph(_step("A"), _step("A", order=1))
        assert "Duplicate step id: A" in exc_info.value.errors

    def test_self_edge(self):
        with pytest.raises(GraphValidationError):
            _graph(_step("A", on_success_step_id="A"))

    def test_dangling_target(self):
        with pytest.raises(GraphValidationError) as exc_info:
            _graph(_step("A", on_failure_step_id="missing"))
        assert "missing" in exc_info.value.errors[0]

    def test_cycle_through_required_step(self):
        with pytest.raises(GraphValidationError) as exc_info:
            _graph(
                _step("A", on_success_step_id="B", order=0),
                _step("B", on_success_step_id="A", is_optional=True, order=1),
            )
        assert "A" in exc_info.value.errors[0]

    def test_optional_cycle_is_broken_at_back_edge(self):
        graph = _graph(
            _step("start", on_success_step_id="A", order=0),
            _step("A", on_success_step_id="B", is_optional=True, order=1),
            _step("B", on_failure_step_id="A", is_optional=True, order=2),
        )

        assert [(e.source, e.target) for e in graph.back_edges] == [("B", "A")]
        assert graph.predecessors("A") == ["start"]
        assert graph.roots() == ["start"]

    def test_steps_ordered_by_step_order(self):
        graph = _graph(_step("late", order=5), _step("early", order=1))
        assert graph.node_ids == ["early", "late"]


class TestLookups:
    def test_adjacency(self):
        graph = _graph(
            _step("A", on_success_step_id="B", on_failure_step_id="C", order=0),
            _step("B", order=1),
            _step("C", order=2),
        )

        assert graph.successors("A") == ["B", "C"]
        assert graph.predecessors("C") == ["A"]
        assert graph.downstream_of("A", EdgeOutcome.FAILURE) == "C"
        assert graph.downstream_of("B", EdgeOutcome.SUCCESS) is None
        assert "B" in graph
        assert len(graph) == 3

    def test_unknown_step(self):
        graph = _graph(_step("A"))
        with pytest.raises(NodeNotFound):
            graph.step("Z")


class TestReadiness:
    def test_roots_ready_first(self):
        graph = _graph(_step("A", on_success_step_id="B"), _step("B", order=1))
        assert graph.ready_nodes(_states(graph)) == ["A"]

    def test_and_join_waits_for_every_predecessor(self):
        graph = _graph(
            _step("A", on_success_step_id="C", order=0),
            _step("B", on_success_step_id="C", order=1),
            _step("C", order=2),
        )
        states = _states(graph, A=NodeStatus.COMPLETED, B=NodeStatus.RUNNING)
        assert graph.ready_nodes(states) == []

        states["B"].status = NodeStatus.COMPLETED
        assert graph.ready_nodes(states) == ["C"]

    def test_optional_failure_takes_success_edge(self):
        graph = _graph(
            _step("A", on_success_step_id="B", is_optional=True, order=0),
            _step("B", order=1),
        )
        states = _states(graph, A=NodeStatus.FAILED)

        assert graph.taken_outcome(states["A"]) == EdgeOutcome.SUCCESS
        assert graph.ready_nodes(states) == ["B"]
        assert graph.dead_nodes(states) == []

    def test_required_failure_blocks_success_target(self):
        graph = _graph(
            _step("A", on_success_step_id="B", on_failure_step_id="C", order=0),
            _step("B", order=1),
            _step("C", order=2),
        )
        states = _states(graph, A=NodeStatus.FAILED)

        assert graph.ready_nodes(states) == ["C"]
        dead = graph.dead_nodes(states)
        assert [(d.node_id, d.status, d.cause_node) for d in dead] == [
            ("B", NodeStatus.BLOCKED, "A"),
        ]

    def test_untaken_failure_edge_is_skipped(self):
        graph = _graph(
            _step("A", on_failure_step_id="C", order=0),
            _step("C", order=1),
        )
        dead = graph.dead_nodes(_states(graph, A=NodeStatus.COMPLETED))

        assert dead[0].status == NodeStatus.SKIPPED
        assert dead[0].skip_cause == SkipCause.BRANCH_NOT_TAKEN

    def test_blocked_wins_over_skipped(self):
        graph = _graph(
            _step("A", on_failure_step_id="C", order=0),
            _step("B", on_success_step_id="C", order=1),
            _step("C", order=2),
        )
        states = _states(graph, A=NodeStatus.COMPLETED, B=NodeStatus.FAILED)

        verdict = graph.dead_verdict("C", states)
        assert verdict.status == NodeStatus.BLOCKED
        assert verdict.cause_node == "B"

    def test_operator_skip_blocks_dependents(self):
        graph = _graph(_step("A", on_success_step_id="B"), _step("B", order=1))
        states = _states(graph, A=NodeStatus.SKIPPED)
        states["A"].skip_cause = SkipCause.OPERATOR

        assert graph.dead_verdict("B", states).status == NodeStatus.BLOCKED

        states["A"].skip_cause = SkipCause.CONDITION_NOT_MET
        assert graph.dead_verdict("B", states).status == NodeStatus.SKIPPED

    def test_released_node_ignores_taken_edge(self):
        graph = _graph(_step("A", on_success_step_id="B"), _step("B", order=1))
        states = _states(graph, A=NodeStatus.FAILED)
        states["B"].released = True

        assert graph.dead_nodes(states) == []
        assert graph.ready_nodes(states) == ["B"]


class TestDependsOn:
    def test_dependencies_become_success_edges(self):
        graph = _graph(
            _step("A", order=0),
            _step("B", depends_on=["A"], order=1),
            _step("C", depends_on=["A"], order=2),
        )

        assert graph.successors("A") == ["B", "C"]
        assert graph.predecessors("C") == ["A"]
        assert graph.roots() == ["A"]

    def test_fan_out_releases_every_dependent(self):
        graph = _graph(
            _step("A", order=0),
            _step("B", depends_on=["A"], order=1),
            _step("C", depends_on=["A"], order=2),
        )
        assert graph.ready_nodes(_states(graph)) == ["A"]
        assert graph.ready_nodes(_states(graph, A=NodeStatus.COMPLETED)) == ["B", "C"]

    def test_duplicate_of_success_edge_is_merged(self):
        graph = _graph(
            _step("A", on_success_step_id="B", order=0),
            _step("B", depends_on=["A"], order=1),
        )
        assert len(graph.forward_edges) == 1

    def test_unknown_and_self_dependencies_rejected(self):
        with pytest.raises(GraphValidationError) as exc_info:
            _graph(_step("A", depends_on=["A", "ghost"]))
        assert exc_info.value.errors == [
            "Step A depends on itself",
            "Step A dependency does not exist: ghost",
        ]

    def test_dependency_cycle_through_required_step(self):
        with pytest.raises(GraphValidationError):
            _graph(
                _step("A", depends_on=["B"], order=0),
                _step("B", depends_on=["A"], order=1),
            )

    def test_camel_case_alias(self):
        step = StepSpec.model_validate({"id": "B", "kind": "NOOP", "dependsOn": ["A"]})
        assert step.depends_on == ["A"]
