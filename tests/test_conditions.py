import pytest

from routeflow.service.conditions import evaluate_conditions, evaluate_expression, safe_eval_expr
from routeflow.service.workflow_models import NodeCondition


@pytest.mark.parametrize(
    "expr,expected",
    [
        ("score > 0.5", True),
        ("score > 0.5 and label == 'spam'", False),
        ("label in ['ham', 'eggs']", True),
        ("len(items) == 3", True),
        ("contains(label, 'am')", True),
        ("exists(missing)", False),
        ("missing == null", True),
        ("state.nested.flag", True),
        ("result.ok == true", True),
        ("", True),
        (None, True),
    ],
)
def test_expressions(expr, expected):
    state = {"score": 0.9, "label": "ham", "items": [1, 2, 3], "nested": {"flag": True}}
    assert evaluate_expression(expr, state, result={"ok": True}) is expected


@pytest.mark.parametrize(
    "expr",
    [
        "__import__('os')",
        "items.__class__",
        "[x for x in items]",
        "lambda: 1",
        "open('/etc/passwd')",
    ],
)
def test_unsafe_expressions_evaluate_false(expr):
    assert evaluate_expression(expr, {"items": [1]}) is False


def test_safe_eval_rejects_private_attributes():
    with pytest.raises(ValueError):
        safe_eval_expr("a._secret", {"a": {}})


def test_structured_conditions_fold_left():
    state = {"user": {"tier": "gold", "age": 30}}
    conditions = [
        NodeCondition(field="user.tier", operator="equals", value="silver"),
        NodeCondition(field="user.age", operator="greater_than", value=18, logic="or"),
        NodeCondition(field="user.email", operator="exists", logic="and"),
    ]

    assert evaluate_conditions(conditions[:2], state) is True
    assert evaluate_conditions(conditions, state) is False
    assert evaluate_conditions([], state) is True


def test_incomparable_values_are_false():
    condition = NodeCondition(field="x", operator="less_than", value=3)
    assert evaluate_conditions([condition], {"x": "abc"}) is False
