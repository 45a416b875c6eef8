"""Edge and condition-node predicates.

Free-form edge expressions are parsed with ``ast`` and evaluated against an
allowlist of node types, so workflow definitions can never reach arbitrary
Python. Structured ``NodeCondition`` lists cover the common field/operator
checks without an expression.
"""
from __future__ import annotations

import ast
import operator
from collections.abc import Mapping, Sequence
from typing import Any, Iterable, Optional

from routeflow.logging import get_logger
from routeflow.service.templating import resolve_path
from routeflow.service.workflow_models import NodeCondition

logger = get_logger(__name__)

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.FloorDiv: operator.floordiv,
}

_CMP_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_DISALLOWED = (
    ast.Lambda,
    ast.ListComp,
    ast.SetComp,
    ast.DictComp,
    ast.GeneratorExp,
    ast.Await,
    ast.Yield,
    ast.YieldFrom,
    ast.NamedExpr,
    ast.Starred,
)

_MAX_RECURSION_DEPTH = 100

_CONSTANTS = {"true": True, "false": False, "null": None, "True": True, "False": False, "None": None}


def _contains(haystack: Any, needle: Any) -> bool:
    if haystack is None:
        return False
    try:
        return needle in haystack
    except TypeError:
        return False


def _length(value: Any) -> int:
    return len(value) if isinstance(value, (list, tuple, dict, str, bytes)) else 0


SAFE_FUNCTIONS = {
    "len": _length,
    "contains": _contains,
    "exists": lambda value: value is not None,
}


def _eval_node(node: ast.AST, names: Mapping[str, Any], _depth: int = 0) -> Any:
    if _depth > _MAX_RECURSION_DEPTH:
        raise ValueError("expression too deeply nested")

    if isinstance(node, ast.Expression):
        return _eval_node(node.body, names, _depth + 1)

    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, ast.Name):
        if node.id in names:
            return names[node.id]
        if node.id in _CONSTANTS:
            return _CONSTANTS[node.id]
        # Unset state keys read as null
        return None

    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            result = True
            for value in node.values:
                result = bool(_eval_node(value, names, _depth + 1))
                if not result:
                    break
            return result
        result = False
        for value in node.values:
            result = bool(_eval_node(value, names, _depth + 1))
            if result:
                break
        return result

    if isinstance(node, ast.UnaryOp):
        operand = _eval_node(node.operand, names, _depth + 1)
        if isinstance(node.op, ast.Not):
            return not bool(operand)
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
        raise ValueError("unsupported unary operator")

    if isinstance(node, ast.BinOp):
        op = _BIN_OPS.get(type(node.op))
        if op is None:
            raise ValueError("unsupported binary operator")
        return op(
            _eval_node(node.left, names, _depth + 1),
            _eval_node(node.right, names, _depth + 1),
        )

    if isinstance(node, ast.Compare):
        left = _eval_node(node.left, names, _depth + 1)
        for op_node, comparator in zip(node.ops, node.comparators):
            op = _CMP_OPS.get(type(op_node))
            if op is None:
                raise ValueError("unsupported comparator")
            right = _eval_node(comparator, names, _depth + 1)
            if not op(left, right):
                return False
            left = right
        return True

    if isinstance(node, ast.Call):
        if not isinstance(node.func, ast.Name) or node.func.id not in SAFE_FUNCTIONS:
            raise ValueError("callable is not permitted")
        if node.keywords:
            raise ValueError("keyword arguments not permitted")
        args = [_eval_node(arg, names, _depth + 1) for arg in node.args]
        return SAFE_FUNCTIONS[node.func.id](*args)

    if isinstance(node, ast.Attribute):
        # Dotted access reads mapping keys only, never Python attributes
        target = _eval_node(node.value, names, _depth + 1)
        if isinstance(target, Mapping):
            return target.get(node.attr)
        if target is None:
            return None
        raise ValueError("attribute access is only permitted on mappings")

    if isinstance(node, ast.Subscript):
        target = _eval_node(node.value, names, _depth + 1)
        index = _eval_node(node.slice, names, _depth + 1)
        if target is None:
            return None
        if not isinstance(target, (Mapping, Sequence, str, bytes)):
            raise ValueError("subscript targets must be sequences or mappings")
        try:
            return target[index]
        except (KeyError, IndexError, TypeError) as exc:
            raise ValueError(f"invalid subscript access: {exc}") from exc

    if isinstance(node, (ast.Tuple, ast.List)):
        return [_eval_node(elt, names, _depth + 1) for elt in node.elts]

    raise ValueError(f"unsupported expression node: {type(node).__name__}")


def safe_eval_expr(expr: str, names: Mapping[str, Any]) -> Any:
    """Evaluate ``expr`` against ``names`` with a constrained AST allowlist."""
    try:
        parsed = ast.parse(expr.strip(), mode="eval")
    except SyntaxError as exc:
        raise ValueError("invalid expression") from exc

    for node in ast.walk(parsed):
        if isinstance(node, _DISALLOWED):
            raise ValueError("disallowed syntax in expression")
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ValueError("private attribute access not permitted")

    return _eval_node(parsed, names)


def evaluate_expression(
    expr: Optional[str], state: Mapping[str, Any], *, result: Any = None
) -> bool:
    """Evaluate an edge condition; any evaluation error counts as ``False``."""
    if expr is None or not str(expr).strip():
        return True
    names = dict(state)
    names["state"] = state
    names["result"] = result
    try:
        return bool(safe_eval_expr(str(expr), names))
    except (ValueError, TypeError, ZeroDivisionError, ArithmeticError) as exc:
        logger.warning("condition_evaluation_failed", expression=expr, error=str(exc))
        return False


def _check(condition: NodeCondition, state: Mapping[str, Any]) -> bool:
    actual = resolve_path(state, condition.field)
    expected = condition.value
    op = condition.operator
    try:
        if op == "equals":
            return actual == expected
        if op == "not_equals":
            return actual != expected
        if op == "contains":
            return _contains(actual, expected)
        if op == "greater_than":
            return actual is not None and actual > expected
        if op == "less_than":
            return actual is not None and actual < expected
        if op == "exists":
            return actual is not None
    except TypeError as exc:
        logger.warning(
            "condition_comparison_failed",
            field=condition.field,
            operator=op,
            error=str(exc),
        )
        return False
    logger.warning("condition_unknown_operator", operator=op)
    return False


def evaluate_conditions(conditions: Iterable[NodeCondition], state: Mapping[str, Any]) -> bool:
    """Fold structured conditions left to right using each one's ``logic``."""
    outcome: Optional[bool] = None
    for condition in conditions:
        value = _check(condition, state)
        if outcome is None:
            outcome = value
        elif condition.logic == "or":
            outcome = outcome or value
        else:
            outcome = outcome and value
    return True if outcome is None else outcome
