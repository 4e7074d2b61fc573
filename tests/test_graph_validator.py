"""Tests for graph validation and compilation."""

import pytest

from builders import edge, task, workflow
from workflow_engine.core.exceptions import GraphValidationError
from workflow_engine.core.graph_validator import GraphValidator
from workflow_engine.core.node_executors import create_default_registry
from workflow_engine.models.core import NodeDefinition


@pytest.fixture
def validator(action_provider):
    return GraphValidator(create_default_registry(), action_provider)


def loop_node(node_id: str, **config):
    config.setdefault("max_iterations", 3)
    return NodeDefinition(id=node_id, type="loop", config=config)


class TestGraphValidation:
    """Structural checks reported by GraphValidator.validate."""

    def test_valid_linear_workflow(self, validator):
        definition = workflow("ok", nodes=[task("a"), task("b")], edges=[edge("a", "b")])

        result = validator.validate(definition)

        assert result.is_valid
        assert result.errors == []
        assert result.warnings == []

    def test_missing_entry_node(self, validator):
        definition = workflow("no-entry", nodes=[task("a")], edges=[], entry="ghost")

        result = validator.validate(definition)

        assert not result.is_valid
        assert "Entry node 'ghost' does not exist" in result.errors

    def test_edge_to_unknown_node(self, validator):
        definition = workflow("dangling", nodes=[task("a")], edges=[edge("a", "nowhere")])

        result = validator.validate(definition)

        assert "Edge 'a-nowhere' references non-existent target node 'nowhere'" in result.errors

    def test_unknown_node_type_and_action(self, validator):
        definition = workflow(
            "unknown",
            nodes=[NodeDefinition(id="a", type="teleport"), task("b", action="does_not_exist")],
            edges=[edge("a", "b")],
        )

        result = validator.validate(definition)

        assert "Node 'a' has unknown type 'teleport'" in result.errors
        assert "Node 'b': task config references unknown action 'does_not_exist'" in result.errors

    def test_cycle_is_reported_as_path(self, validator):
        definition = workflow(
            "cyclic",
            nodes=[task("a"), task("b"), task("c")],
            edges=[edge("a", "b"), edge("b", "c"), edge("c", "b")],
        )

        result = validator.validate(definition)

        assert not result.is_valid
        assert "Cycle among non-loop edges: b -> c -> b" in result.errors

    def test_long_chain_ending_in_cycle(self, validator):
        ids = [f"n{i}" for i in range(1500)]
        definition = workflow(
            "long-chain",
            nodes=[task(node_id) for node_id in ids],
            edges=[edge(a, b) for a, b in zip(ids, ids[1:])] + [edge("n1499", "n1498")],
        )

        result = validator.validate(definition)

        assert "Cycle among non-loop edges: n1498 -> n1499 -> n1498" in result.errors

    def test_fan_out_requires_fork(self, validator):
        definition = workflow(
            "fan-out",
            nodes=[task("a"), task("b"), task("c")],
            edges=[edge("a", "b"), edge("a", "c")],
        )

        result = validator.validate(definition)

        assert any("fan-out requires a fork or condition node" in error for error in result.errors)

    def test_fan_in_requires_join(self, validator):
        definition = workflow(
            "fan-in",
            nodes=[NodeDefinition(id="split", type="fork"), task("b"), task("c"), task("d")],
            edges=[edge("split", "b"), edge("split", "c"), edge("b", "d"), edge("c", "d")],
        )

        result = validator.validate(definition)

        assert "Node 'd' of type 'task' has 2 incoming edges; fan-in requires a join node" in result.errors

    def test_condition_node_edges_need_conditions(self, validator):
        definition = workflow(
            "bare-condition",
            nodes=[NodeDefinition(id="check", type="condition", config={"expression": "x > 1"}), task("b")],
            edges=[edge("check", "b")],
        )

        result = validator.validate(definition)

        assert "Edge 'check-b' leaves condition node 'check' without a condition" in result.errors

    def test_fork_edges_cannot_carry_conditions(self, validator):
        definition = workflow(
            "conditional-fork",
            nodes=[NodeDefinition(id="split", type="fork"), task("b")],
            edges=[edge("split", "b", condition="x > 1")],
        )

        result = validator.validate(definition)

        assert any("leaves fork node 'split'" in error for error in result.errors)

    def test_duplicate_conditions_are_ambiguous(self, validator):
        definition = workflow(
            "duplicate-conditions",
            nodes=[NodeDefinition(id="check", type="condition", config={"expression": "x"}), task("b"), task("c")],
            edges=[edge("check", "b", condition="result > 1"), edge("check", "c", condition="result  >  1")],
        )

        result = validator.validate(definition)

        assert any(error.startswith("Ambiguous branch at node 'check'") for error in result.errors)

    def test_invalid_expression_syntax(self, validator):
        definition = workflow(
            "bad-syntax",
            nodes=[NodeDefinition(id="check", type="condition", config={"expression": "x >"}), task("b")],
            edges=[edge("check", "b", condition="result ==")],
        )

        result = validator.validate(definition)

        assert any(error.startswith("Node 'check': invalid syntax") for error in result.errors)
        assert any(error.startswith("Edge 'check-b': invalid syntax") for error in result.errors)

    def test_unreachable_nodes(self, validator):
        definition = workflow("islands", nodes=[task("a"), task("b"), task("c")], edges=[edge("a", "b")])

        result = validator.validate(definition)

        assert "Nodes unreachable from entry node 'a': c" in result.errors

    def test_join_with_single_input_is_a_warning(self, validator):
        definition = workflow(
            "lonely-join",
            nodes=[task("a"), NodeDefinition(id="j", type="join"), task("b")],
            edges=[edge("a", "j"), edge("j", "b")],
        )

        result = validator.validate(definition)

        assert result.is_valid
        assert result.warnings == ["Join node 'j' has a single incoming edge"]

    def test_delay_config(self, validator):
        definition = workflow(
            "delays",
            nodes=[
                NodeDefinition(id="both", type="delay", config={"seconds": 1, "until": "2030-01-01T00:00:00"}),
                NodeDefinition(id="negative", type="delay", config={"seconds": -1}),
                NodeDefinition(id="garbled", type="delay", config={"until": "next tuesday"}),
            ],
            edges=[edge("both", "negative"), edge("negative", "garbled")],
        )

        result = validator.validate(definition)

        assert "Node 'both': delay requires exactly one of 'seconds' or 'until'" in result.errors
        assert "Node 'negative': delay 'seconds' must be a non-negative number" in result.errors
        assert "Node 'garbled': delay 'until' must be an ISO-8601 timestamp" in result.errors

    def test_compensatable_task_needs_compensation(self, validator):
        definition = workflow("no-undo", nodes=[task("a", compensatable=True)], edges=[])

        result = validator.validate(definition)

        assert "Node 'a' is compensatable but has no 'compensation' config" in result.errors

    def test_reports_every_violation(self, validator):
        definition = workflow(
            "many-problems",
            nodes=[task("a", action="missing"), NodeDefinition(id="b", type="mystery"), task("c")],
            edges=[],
        )

        result = validator.validate(definition)

        assert len(result.errors) == 3

    def test_validation_is_deterministic(self, validator):
        definition = workflow(
            "repeatable",
            nodes=[task("a"), task("b"), task("c"), task("d")],
            edges=[edge("a", "b"), edge("a", "c"), edge("c", "b")],
        )

        assert validator.validate(definition) == validator.validate(definition)


class TestLoopValidation:

    def test_valid_loop(self, validator):
        definition = workflow(
            "loop",
            nodes=[task("a"), task("body"), loop_node("again"), task("z")],
            edges=[edge("a", "body"), edge("body", "again"), edge("again", "body", loop_back=True),
                   edge("again", "z")],
        )

        result = validator.validate(definition)

        assert result.is_valid, result.errors

    def test_loop_back_must_start_at_loop_node(self, validator):
        definition = workflow(
            "bad-back-edge",
            nodes=[task("a"), task("b")],
            edges=[edge("a", "b"), edge("b", "a", loop_back=True)],
        )

        result = validator.validate(definition)

        assert any("loop-back edges must start at a loop node" in error for error in result.errors)

    def test_loop_node_without_back_edge(self, validator):
        definition = workflow("no-back", nodes=[task("a"), loop_node("again")], edges=[edge("a", "again")])

        result = validator.validate(definition)

        assert "Loop node 'again' must have exactly one loop-back edge, found 0" in result.errors

    def test_loop_back_edge_cannot_have_condition(self, validator):
        definition = workflow(
            "conditional-back",
            nodes=[task("body"), loop_node("again")],
            edges=[edge("body", "again"), edge("again", "body", loop_back=True, condition="x")],
        )

        result = validator.validate(definition)

        assert "Loop-back edge 'again-body' cannot carry a condition" in result.errors

    def test_loop_body_must_not_escape(self, validator):
        definition = workflow(
            "escaping",
            nodes=[
                NodeDefinition(id="split", type="fork"),
                task("x"),
                task("y"),
                loop_node("again"),
            ],
            edges=[edge("split", "x"), edge("split", "y"), edge("x", "again"),
                   edge("again", "split", loop_back=True)],
        )

        result = validator.validate(definition)

        assert any("'split' exits the body to y" in error for error in result.errors)

    def test_loop_config(self, validator):
        definition = workflow(
            "bad-loop-config",
            nodes=[task("body"), NodeDefinition(id="again", type="loop", config={"max_iterations": "3"})],
            edges=[edge("body", "again"), edge("again", "body", loop_back=True)],
        )

        result = validator.validate(definition)

        assert "Node 'again': loop requires a positive integer 'max_iterations'" in result.errors

    def test_zero_max_iterations(self, validator):
        definition = workflow(
            "zero-loop",
            nodes=[task("body"), loop_node("again", max_iterations=0)],
            edges=[edge("body", "again"), edge("again", "body", loop_back=True)],
        )

        result = validator.validate(definition)

        assert "Node 'again': loop requires a positive integer 'max_iterations'" in result.errors


class TestCompilation:

    def test_compile_resolves_structure(self, validator):
        definition = workflow(
            "compiled",
            nodes=[task("a"), task("body"), loop_node("again"), task("z")],
            edges=[edge("a", "body"), edge("body", "again"), edge("again", "body", loop_back=True),
                   edge("again", "z")],
        )

        compiled = validator.compile(definition)

        assert compiled.topological_order == ["a", "body", "again", "z"]
        assert compiled.loop_bodies == {"again": frozenset({"body", "again"})}
        assert compiled.enclosing_loop == {"a": None, "body": "again", "again": "again", "z": None}
        # Loop-back edges are kept apart from the acyclic adjacency.
        assert [e.id for e in compiled.incoming["body"]] == ["a-body"]
        assert compiled.loop_back["again"].target_node_id == "body"

    def test_compile_is_cached(self, validator):
        definition = workflow("cached", nodes=[task("a")], edges=[])

        assert validator.compile(definition) is validator.compile(definition)

    def test_compile_long_chain(self, validator):
        ids = [f"n{i}" for i in range(1500)]
        definition = workflow("long-chain", nodes=[task(node_id) for node_id in ids],
                              edges=[edge(a, b) for a, b in zip(ids, ids[1:])])

        compiled = validator.compile(definition)

        assert compiled.topological_order == ids

    def test_compile_invalid_definition_raises(self, validator):
        definition = workflow("broken", nodes=[task("a"), task("b")], edges=[])

        with pytest.raises(GraphValidationError) as exc_info:
            validator.compile(definition)

        assert exc_info.value.validation_errors == ["Nodes unreachable from entry node 'a': b"]
