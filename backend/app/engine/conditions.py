"""
Condition evaluation for IF / SWITCH nodes and SET_VALUE assignments.

A condition is ``{"field", "operator", "value", "type"}`` where ``field``
and ``value`` are resolved through ``FormulaEvaluator.resolve_value``
(literal, ``$document.path`` or ``{{ expression }}``).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from app.engine.errors import ProcessorConfigError
from app.engine.formula import FormulaEvaluator, loose_equals, to_number, to_string


def _coerce_datetime(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.timestamp()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    try:
        return datetime.fromisoformat(str(value).strip().replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


def _coerce(value: Any, value_type: str | None) -> Any:
    if value_type == "number":
        return to_number(value)
    if value_type == "datetime":
        return _coerce_datetime(value)
    if value_type == "boolean":
        if isinstance(value, str):
            return value.strip().lower() not in ("", "false", "0", "no")
        return bool(value)
    return value


def _ordered(op: str, left: Any, right: Any) -> bool:
    if left is None or right is None:
        return False
    a, b = to_number(left), to_number(right)
    if a is not None and b is not None:
        left, right = a, b
    try:
        if op == "greater_than":
            return left > right
        if op == "less_than":
            return left < right
        if op == "greater_than_or_equal":
            return left >= right
        return left <= right
    except TypeError:
        return False


def evaluate_condition(
    condition: Mapping[str, Any],
    metadata: Mapping[str, Any],
    evaluator: FormulaEvaluator,
) -> bool:
    operator = condition.get("operator")
    value_type = condition.get("type") or "string"

    field_value = _coerce(evaluator.resolve_value(condition.get("field"), metadata), value_type)
    compare_value = evaluator.resolve_value(condition.get("value"), metadata)
    if value_type != "boolean":
        compare_value = _coerce(compare_value, value_type)

    if operator == "equals":
        return loose_equals(field_value, compare_value)
    if operator == "not_equals":
        return not loose_equals(field_value, compare_value)
    if operator == "contains":
        return to_string(compare_value) in to_string(field_value)
    if operator == "not_contains":
        return to_string(compare_value) not in to_string(field_value)
    if operator in ("greater_than", "less_than", "greater_than_or_equal", "less_than_or_equal"):
        return _ordered(operator, field_value, compare_value)
    if operator == "is_true":
        return bool(field_value) is True
    if operator == "is_false":
        return bool(field_value) is False
    if operator == "exists":
        return field_value is not None
    if operator == "not_exists":
        return field_value is None

    raise ProcessorConfigError(f"Unknown condition operator: {operator!r}")


def evaluate_conditions(
    conditions: list[Mapping[str, Any]] | None,
    logic: str | None,
    metadata: Mapping[str, Any],
    evaluator: FormulaEvaluator,
) -> bool:
    """AND (default) / OR over a condition list; an empty list is true."""
    if not conditions:
        return True
    if (logic or "AND").upper() == "OR":
        return any(evaluate_condition(c, metadata, evaluator) for c in conditions)
    return all(evaluate_condition(c, metadata, evaluator) for c in conditions)


def apply_assignments(
    assignments: list[Mapping[str, Any]] | None,
    metadata: Mapping[str, Any],
    evaluator: FormulaEvaluator,
) -> dict[str, Any]:
    """Return a copy of metadata with each ``field`` set from its resolved ``value``.

    Every value resolves against the incoming metadata, not the partially
    updated copy.
    """
    result = dict(metadata)
    for assignment in assignments or []:
        field = assignment.get("field")
        if not field:
            raise ProcessorConfigError("Assignment is missing its target field")
        result[field] = evaluator.resolve_value(assignment.get("value"), metadata)
    return result
