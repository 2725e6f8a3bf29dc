"""Unit tests for routing conditions and SET_VALUE assignments."""

import pytest

from app.engine.conditions import apply_assignments, evaluate_condition, evaluate_conditions
from app.engine.errors import ProcessorConfigError
from app.engine.formula import FormulaEvaluator


@pytest.fixture
def evaluator():
    return FormulaEvaluator()


def condition(field, operator, value=None, type_=None):
    return {"field": field, "operator": operator, "value": value, "type": type_}


class TestEvaluateCondition:
    """Single-condition operators."""

    def test_equals_with_number_type(self, evaluator):
        """Test that number-typed equality coerces numeric strings."""
        metadata = {"amount": "100"}
        assert evaluate_condition(condition("$document.amount", "equals", 100, "number"), metadata, evaluator)

    def test_not_equals(self, evaluator):
        """Test not_equals on strings."""
        assert evaluate_condition(condition("$document.kind", "not_equals", "po"), {"kind": "invoice"}, evaluator)

    def test_contains(self, evaluator):
        """Test substring containment."""
        metadata = {"name": "Invoice 2024-001"}
        assert evaluate_condition(condition("$document.name", "contains", "2024"), metadata, evaluator)
        assert evaluate_condition(condition("$document.name", "not_contains", "PO"), metadata, evaluator)

    def test_ordering_operators(self, evaluator):
        """Test numeric ordering with string inputs."""
        metadata = {"total": "250.5"}
        assert evaluate_condition(condition("$document.total", "greater_than", "100", "number"), metadata, evaluator)
        assert not evaluate_condition(condition("$document.total", "less_than", 100, "number"), metadata, evaluator)
        assert evaluate_condition(condition("$document.total", "less_than_or_equal", 250.5, "number"), metadata, evaluator)

    def test_ordering_with_missing_value_is_false(self, evaluator):
        """Test that comparisons against a missing field never match."""
        assert not evaluate_condition(condition("$document.total", "greater_than", 1, "number"), {}, evaluator)

    def test_datetime_comparison(self, evaluator):
        """Test ISO date ordering."""
        metadata = {"due": "2024-03-01"}
        assert evaluate_condition(condition("$document.due", "greater_than", "2024-02-28", "datetime"), metadata, evaluator)

    def test_boolean_type(self, evaluator):
        """Test that 'true' / 'false' strings coerce under boolean type."""
        assert evaluate_condition(condition("$document.flag", "is_true", None, "boolean"), {"flag": "true"}, evaluator)
        assert evaluate_condition(condition("$document.flag", "is_false", None, "boolean"), {"flag": "false"}, evaluator)

    def test_exists(self, evaluator):
        """Test exists / not_exists."""
        assert evaluate_condition(condition("$document.a", "exists"), {"a": 0}, evaluator)
        assert evaluate_condition(condition("$document.b", "not_exists"), {"a": 0}, evaluator)

    def test_template_value(self, evaluator):
        """Test that the compare value may be an expression."""
        metadata = {"total": 200, "limit": 100}
        cond = condition("$document.total", "greater_than", "{{ $document.limit * 1.5 }}", "number")
        assert evaluate_condition(cond, metadata, evaluator)

    def test_unknown_operator(self, evaluator):
        """Test that an unknown operator is a configuration error."""
        with pytest.raises(ProcessorConfigError):
            evaluate_condition(condition("$document.a", "resembles", 1), {"a": 1}, evaluator)


class TestEvaluateConditions:
    def test_empty_list_is_true(self, evaluator):
        """Test that no conditions means the node matches."""
        assert evaluate_conditions([], None, {}, evaluator) is True

    def test_and_is_default(self, evaluator):
        """Test AND combination."""
        conditions = [condition("$document.a", "equals", 1), condition("$document.b", "equals", 2)]
        assert not evaluate_conditions(conditions, None, {"a": 1, "b": 3}, evaluator)

    def test_or(self, evaluator):
        """Test OR combination."""
        conditions = [condition("$document.a", "equals", 1), condition("$document.b", "equals", 2)]
        assert evaluate_conditions(conditions, "or", {"a": 1, "b": 3}, evaluator)


class TestApplyAssignments:
    def test_values_resolve_against_incoming_metadata(self, evaluator):
        """Test that later assignments do not see earlier ones."""
        assignments = [
            {"field": "a", "value": "{{ $document.b + 1 }}"},
            {"field": "c", "value": "$document.a"},
        ]
        result = apply_assignments(assignments, {"a": 0, "b": 1}, evaluator)
        assert result == {"a": 2, "b": 1, "c": 0}

    def test_input_is_not_mutated(self, evaluator):
        """Test that the incoming metadata is copied."""
        metadata = {"a": 1}
        apply_assignments([{"field": "a", "value": 2}], metadata, evaluator)
        assert metadata == {"a": 1}

    def test_missing_field(self, evaluator):
        """Test that an assignment without a target is rejected."""
        with pytest.raises(ProcessorConfigError):
            apply_assignments([{"value": 1}], {}, evaluator)
