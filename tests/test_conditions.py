"""Tests for condition evaluation and placeholder rendering."""
import pytest

from models.schemas import ConditionOperator
from utils.conditions import evaluate_condition, resolve_placeholders


class TestEvaluateCondition:
    @pytest.mark.parametrize("operator,actual,expected,result", [
        (ConditionOperator.EQUALS, "yes", "yes", True),
        (ConditionOperator.EQUALS, "Yes", "yes", False),
        (ConditionOperator.EQUALS, 5, "5", True),
        (ConditionOperator.EQUALS, 5.0, "5", True),
        (ConditionOperator.NOT_EQUALS, "a", "b", True),
        (ConditionOperator.CONTAINS, "hello world", "world", True),
        (ConditionOperator.CONTAINS, "hello", "world", False),
        (ConditionOperator.GREATER_THAN, "10", 9, True),
        (ConditionOperator.GREATER_THAN, "9", 10, False),
        (ConditionOperator.LESS_THAN, 2, "3.5", True),
    ])
    def test_operators(self, operator, actual, expected, result):
        assert evaluate_condition(operator, actual, expected) is result

    def test_missing_variable_compares_as_empty(self):
        assert evaluate_condition(ConditionOperator.EQUALS, None, "")
        assert evaluate_condition(ConditionOperator.NOT_EQUALS, None, "x")

    def test_non_numeric_never_orders(self):
        assert not evaluate_condition(ConditionOperator.GREATER_THAN, "abc", 1)
        assert not evaluate_condition(ConditionOperator.LESS_THAN, None, 1)

    def test_booleans_compare_lowercase(self):
        assert evaluate_condition(ConditionOperator.EQUALS, True, "true")


class TestResolvePlaceholders:
    def test_replaces_known_keys(self):
        assert resolve_placeholders("Hi {{name}}, order {{id}}",
                                    {"name": "Asha", "id": 7}) == "Hi Asha, order 7"

    def test_unknown_keys_left_alone(self):
        assert resolve_placeholders("Hi {{missing}}", {}) == "Hi {{missing}}"

    def test_keys_are_literal(self):
        assert resolve_placeholders("{{ name }}", {"name": "x"}) == "{{ name }}"

    def test_non_strings_pass_through(self):
        assert resolve_placeholders(42, {"a": 1}) == 42
        assert resolve_placeholders(None, {}) is None
