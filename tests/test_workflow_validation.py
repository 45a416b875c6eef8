import pytest

from routeflow.service.definition_validation import (
    load_workflow_definition,
    validate_workflow_definition,
    validate_workflow_input,
)
from routeflow.service.errors import InvalidWorkflowDefinition, InvalidWorkflowInput
from routeflow.service.workflow_models import ErrorStrategy, NodeKind, WorkflowDefinition


def linear(**overrides):
    definition = {
        "id": "wf",
        "entry": "a",
        "exits": ["b"],
        "nodes": [
            {"id": "a", "kind": "tool", "type": "template", "config": {"template": "x"}},
            {"id": "b", "kind": "tool", "type": "template", "config": {"template": "y"}},
        ],
        "edges": [{"source": "a", "target": "b"}],
    }
    definition.update(overrides)
    return definition


def test_valid_definition_has_no_errors():
    assert validate_workflow_definition(linear()) == []


def test_schema_errors_reported_with_location():
    errors = validate_workflow_definition({"id": "wf", "nodes": [{"id": "a", "kind": "agent"}]})

    assert any("'entry' is a required property" in e for e in errors)
    assert any(e.startswith("nodes/0") and "'type' is a required property" in e for e in errors)


def test_missing_entry_and_exit_nodes():
    errors = validate_workflow_definition(linear(entry="ghost", exits=["nowhere"]))
    assert "entry node 'ghost' does not exist" in errors
    assert "exit node 'nowhere' does not exist" in errors


def test_duplicate_node_ids():
    definition = linear()
    definition["nodes"].append({"id": "a", "kind": "human"})
    assert "duplicate node id 'a'" in validate_workflow_definition(definition)


def test_cycles_are_rejected():
    definition = linear(edges=[{"source": "a", "target": "b"}, {"source": "b", "target": "a"}])
    errors = validate_workflow_definition(definition)
    assert errors and errors[0].startswith("workflow graph contains a cycle")


def test_edge_to_unknown_node():
    definition = linear(edges=[{"source": "a", "target": "zzz"}])
    assert any("unknown node 'zzz'" in e for e in validate_workflow_definition(definition))


def test_fallback_strategy_requires_existing_node():
    errors = validate_workflow_definition(linear(error_handling={"strategy": "fallback"}))
    assert "fallback strategy requires error_handling.fallback_node" in errors

    errors = validate_workflow_definition(
        linear(error_handling={"strategy": "fallback", "fallback_node": "nope"})
    )
    assert "fallback node 'nope' does not exist" in errors


def test_parallel_children_rules():
    definition = {
        "id": "wf",
        "entry": "fan",
        "exits": ["fan"],
        "nodes": [
            {"id": "fan", "kind": "parallel", "children": ["c1", "missing"]},
            {"id": "c1", "kind": "tool", "type": "template", "config": {"template": "x"}},
            {"id": "other", "kind": "tool", "type": "template", "config": {"template": "x"}},
        ],
        "edges": [{"source": "c1", "target": "other"}],
    }
    errors = validate_workflow_definition(definition)

    assert "parallel node 'fan' child 'missing' does not exist" in errors
    assert any("touches a parallel child" in e for e in errors)


def test_condition_node_needs_outgoing_edges():
    definition = linear(
        nodes=[
            {"id": "a", "kind": "condition"},
            {"id": "b", "kind": "tool", "type": "template", "config": {"template": "y"}},
        ],
        edges=[],
    )
    assert "condition node 'a' has no outgoing edges" in validate_workflow_definition(definition)


def test_load_definition_parses_models():
    definition = load_workflow_definition(
        linear(
            error_handling={"strategy": "continue", "max_errors": 3},
            nodes=[
                {"id": "a", "kind": "human"},
                {
                    "id": "b",
                    "kind": "agent",
                    "type": "text-generator",
                    "config": {"prompt": "p"},
                    "retry": {"max_attempts": 3, "backoff_ms": 10},
                },
            ],
        )
    )

    assert isinstance(definition, WorkflowDefinition)
    assert definition.node("a").type == "human-input"
    assert definition.node("b").kind == NodeKind.AGENT
    assert definition.node("b").retry.max_attempts == 3
    assert definition.node("b").retry.delay_ms(2) == 20
    assert definition.error_handling.strategy == ErrorStrategy.CONTINUE


def test_load_definition_raises_with_all_errors():
    with pytest.raises(InvalidWorkflowDefinition) as exc:
        load_workflow_definition(linear(entry="ghost", exits=["nowhere"]))
    assert len(exc.value.detail["errors"]) == 2


def test_single_exit_alias():
    definition = linear()
    del definition["exits"]
    definition["exit"] = "b"
    # Schema requires ``exits``; the alias is accepted when parsing directly
    assert WorkflowDefinition.from_dict(definition).exits == ["b"]


class TestWorkflowInput:
    def definition(self):
        return load_workflow_definition(
            linear(
                variables=[
                    {"name": "topic", "type": "string", "required": True, "validation": {"min": 3}},
                    {"name": "count", "type": "number", "default": 2, "validation": {"max": 5}},
                    {"name": "tone", "type": "string", "validation": {"options": ["formal", "casual"]}},
                    {"name": "code", "type": "string", "validation": {"pattern": "^[A-Z]{2}$"}},
                ]
            )
        )

    def test_defaults_applied(self):
        resolved = validate_workflow_input(self.definition(), {"topic": "owls"})
        assert resolved == {"topic": "owls", "count": 2}

    def test_all_violations_reported(self):
        with pytest.raises(InvalidWorkflowInput) as exc:
            validate_workflow_input(
                self.definition(), {"topic": "ab", "count": 9, "tone": "angry", "code": "abc"}
            )
        errors = exc.value.detail["errors"]
        assert len(errors) == 4
        assert "Variable 'topic' is below minimum 3" in errors

    def test_missing_required_and_wrong_type(self):
        with pytest.raises(InvalidWorkflowInput) as exc:
            validate_workflow_input(self.definition(), {"count": "many"})
        assert exc.value.detail["errors"] == [
            "Required variable 'topic' is missing",
            "Variable 'count' must be of type number",
        ]
