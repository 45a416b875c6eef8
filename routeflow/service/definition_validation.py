from __future__ import annotations

import re
from typing import Any, Dict, List, Union

from jsonschema import Draft202012Validator

from routeflow.service.errors import InvalidWorkflowDefinition, InvalidWorkflowInput
from routeflow.service.workflow_models import (
    ErrorStrategy,
    NodeKind,
    WorkflowDefinition,
)

_NODE_KINDS = [kind.value for kind in NodeKind]

WORKFLOW_DEFINITION_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "name": {"type": "string"},
        "version": {"type": ["string", "number"]},
        "entry": {"type": "string", "minLength": 1},
        "exits": {"type": "array", "items": {"type": "string"}, "minItems": 1},
        "timeout_ms": {"type": "integer", "exclusiveMinimum": 0},
        "nodes": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "kind": {"enum": _NODE_KINDS},
                    "type": {"type": "string"},
                    "config": {"type": "object"},
                    "inputs": {"type": "array", "items": {"type": "string"}},
                    "outputs": {"type": "array", "items": {"type": "string"}},
                    "children": {"type": "array", "items": {"type": "string"}},
                    "timeout_ms": {"type": "integer", "exclusiveMinimum": 0},
                    "conditions": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "field": {"type": "string"},
                                "operator": {
                                    "enum": [
                                        "equals", "not_equals", "contains",
                                        "greater_than", "less_than", "exists",
                                    ]
                                },
                                "value": {},
                                "logic": {"enum": ["and", "or"]},
                            },
                            "required": ["field", "operator"],
                        },
                    },
                    "retry": {
                        "type": "object",
                        "properties": {
                            "max_attempts": {"type": "integer", "minimum": 1},
                            "backoff_ms": {"type": "number", "minimum": 0},
                            "backoff_multiplier": {"type": "number", "minimum": 1},
                            "retryable_codes": {"type": "array", "items": {"type": "string"}},
                        },
                    },
                },
                "required": ["id", "kind"],
                "allOf": [
                    {
                        "if": {"properties": {"kind": {"enum": ["agent", "tool"]}}},
                        "then": {"required": ["type"]},
                    },
                    {
                        "if": {"properties": {"kind": {"const": "parallel"}}},
                        "then": {
                            "required": ["children"],
                            "properties": {"children": {"minItems": 1}},
                        },
                    },
                ],
            },
        },
        "edges": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "source": {"type": "string"},
                    "target": {"type": "string"},
                    "condition": {"type": "string"},
                    "label": {"type": "string"},
                },
                "required": ["source", "target"],
            },
        },
        "variables": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "type": {"enum": ["string", "number", "boolean", "object", "array"]},
                    "required": {"type": "boolean"},
                },
                "required": ["name"],
            },
        },
        "error_handling": {
            "type": "object",
            "properties": {
                "strategy": {"enum": [strategy.value for strategy in ErrorStrategy]},
                "fallback_node": {"type": "string"},
                "max_errors": {"type": "integer", "minimum": 1},
                "max_workflow_retries": {"type": "integer", "minimum": 0},
            },
        },
    },
    "required": ["id", "nodes", "entry", "exits"],
}


def _schema_errors(data: Dict[str, Any]) -> List[str]:
    validator = Draft202012Validator(WORKFLOW_DEFINITION_SCHEMA)
    errors = sorted(validator.iter_errors(data), key=lambda e: [str(p) for p in e.path])
    messages = []
    for error in errors:
        location = "/".join(str(p) for p in error.path)
        messages.append(f"{location}: {error.message}" if location else error.message)
    return messages


def _find_cycle(definition: WorkflowDefinition) -> List[str]:
    graph: Dict[str, List[str]] = {node.id: [] for node in definition.nodes}
    for edge in definition.edges:
        if edge.source in graph and edge.target in graph:
            graph[edge.source].append(edge.target)
    for node in definition.nodes:
        if node.kind == NodeKind.PARALLEL:
            graph[node.id].extend(c for c in node.children if c in graph)

    visiting: List[str] = []
    done: set = set()

    def _visit(node_id: str) -> List[str]:
        if node_id in done:
            return []
        if node_id in visiting:
            return visiting[visiting.index(node_id):] + [node_id]
        visiting.append(node_id)
        for target in graph[node_id]:
            cycle = _visit(target)
            if cycle:
                return cycle
        visiting.pop()
        done.add(node_id)
        return []

    for node_id in graph:
        cycle = _visit(node_id)
        if cycle:
            return cycle
    return []


def structural_errors(definition: WorkflowDefinition) -> List[str]:
    messages: List[str] = []
    ids = [node.id for node in definition.nodes]
    seen: set = set()
    for node_id in ids:
        if node_id in seen:
            messages.append(f"duplicate node id '{node_id}'")
        seen.add(node_id)

    if definition.entry not in seen:
        messages.append(f"entry node '{definition.entry}' does not exist")
    if not definition.exits:
        messages.append("at least one exit node is required")
    for exit_id in definition.exits:
        if exit_id not in seen:
            messages.append(f"exit node '{exit_id}' does not exist")

    handling = definition.error_handling
    if handling.strategy == ErrorStrategy.FALLBACK:
        if not handling.fallback_node:
            messages.append("fallback strategy requires error_handling.fallback_node")
        elif handling.fallback_node not in seen:
            messages.append(f"fallback node '{handling.fallback_node}' does not exist")

    children = definition.parallel_children()
    for node in definition.nodes:
        if node.kind in (NodeKind.AGENT, NodeKind.TOOL) and not node.type:
            messages.append(f"node '{node.id}' of kind {node.kind.value} needs a type")
        if node.kind == NodeKind.PARALLEL:
            for child in node.children:
                if child not in seen:
                    messages.append(f"parallel node '{node.id}' child '{child}' does not exist")
                elif definition.node(child).kind in (NodeKind.PARALLEL, NodeKind.CONDITION):
                    messages.append(
                        f"parallel node '{node.id}' child '{child}' must be an agent, tool or human node"
                    )
        if node.kind == NodeKind.CONDITION and not definition.outgoing(node.id):
            messages.append(f"condition node '{node.id}' has no outgoing edges")

    if definition.entry in children:
        messages.append(f"entry node '{definition.entry}' cannot be a parallel child")

    for edge in definition.edges:
        for endpoint in (edge.source, edge.target):
            if endpoint not in seen:
                messages.append(
                    f"edge {edge.source}->{edge.target} references unknown node '{endpoint}'"
                )
        if edge.source in children or edge.target in children:
            messages.append(
                f"edge {edge.source}->{edge.target} touches a parallel child; "
                "children are reached only through their parallel node"
            )

    if not messages:
        cycle = _find_cycle(definition)
        if cycle:
            messages.append("workflow graph contains a cycle: " + " -> ".join(cycle))
    return messages


def validate_workflow_definition(data: Dict[str, Any]) -> List[str]:
    """Return every problem with a raw definition; empty when it is valid."""
    messages = _schema_errors(data)
    if messages:
        return messages
    try:
        definition = WorkflowDefinition.from_dict(data)
    except (KeyError, TypeError, ValueError) as exc:
        return [f"could not parse definition: {exc}"]
    return structural_errors(definition)


def load_workflow_definition(
    data: Union[Dict[str, Any], WorkflowDefinition]
) -> WorkflowDefinition:
    if isinstance(data, WorkflowDefinition):
        definition = data
        messages = structural_errors(definition)
    else:
        messages = validate_workflow_definition(data)
        definition = None if messages else WorkflowDefinition.from_dict(data)
    if messages:
        raise InvalidWorkflowDefinition(
            "workflow definition validation failed", detail={"errors": messages}
        )
    return definition


_TYPE_CHECKS = {
    "string": lambda v: isinstance(v, str),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "object": lambda v: isinstance(v, dict),
    "array": lambda v: isinstance(v, list),
}


def validate_workflow_input(
    definition: WorkflowDefinition, payload: Dict[str, Any]
) -> Dict[str, Any]:
    """Check ``payload`` against the variable schema and return it with defaults applied."""
    resolved = dict(payload or {})
    messages: List[str] = []
    for variable in definition.variables:
        if variable.name not in resolved or resolved[variable.name] is None:
            if variable.default is not None:
                resolved[variable.name] = variable.default
            elif variable.required:
                messages.append(f"Required variable '{variable.name}' is missing")
                continue
            else:
                continue
        value = resolved[variable.name]
        check = _TYPE_CHECKS.get(variable.type)
        if check is not None and not check(value):
            messages.append(f"Variable '{variable.name}' must be of type {variable.type}")
            continue
        if variable.pattern and isinstance(value, str) and not re.search(variable.pattern, value):
            messages.append(f"Variable '{variable.name}' does not match pattern {variable.pattern}")
        measured = value if variable.type == "number" else (
            len(value) if isinstance(value, (str, list)) else None
        )
        if measured is not None:
            if variable.min is not None and measured < variable.min:
                messages.append(f"Variable '{variable.name}' is below minimum {variable.min}")
            if variable.max is not None and measured > variable.max:
                messages.append(f"Variable '{variable.name}' is above maximum {variable.max}")
        if variable.options is not None and value not in variable.options:
            messages.append(
                f"Variable '{variable.name}' must be one of {list(variable.options)}"
            )
    if messages:
        raise InvalidWorkflowInput("workflow input validation failed", detail={"errors": messages})
    return resolved
