"""
Shared condition evaluator and placeholder renderer for flow execution.

Condition nodes compare a conversation variable against a configured value.
equals / not_equals / contains compare as strings, greater_than / less_than
coerce both sides to numbers (a value that does not parse never matches).
"""
from __future__ import annotations

import operator as op
import re
from typing import Any, Callable, Optional

from models.schemas import ConditionOperator


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _numeric(fn: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def compare(a: Any, b: Any) -> bool:
        left, right = _as_number(a), _as_number(b)
        if left is None or right is None:
            return False
        return fn(left, right)
    return compare


OPERATORS: dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQUALS: lambda a, b: _as_text(a) == _as_text(b),
    ConditionOperator.NOT_EQUALS: lambda a, b: _as_text(a) != _as_text(b),
    ConditionOperator.CONTAINS: lambda a, b: _as_text(b) in _as_text(a),
    ConditionOperator.GREATER_THAN: _numeric(op.gt),
    ConditionOperator.LESS_THAN: _numeric(op.lt),
}


def evaluate_condition(operator: ConditionOperator, actual: Any, expected: Any) -> bool:
    """Evaluate ``actual <operator> expected``. Unknown operators are false."""
    fn = OPERATORS.get(operator)
    if fn is None:
        return False
    return fn(actual, expected)


_PLACEHOLDER = re.compile(r"\{\{(.*?)\}\}")


def resolve_placeholders(template: Any, variables: dict[str, Any]) -> Any:
    """
    Replace every ``{{key}}`` with ``variables[key]``.

    Keys are matched literally (no whitespace trimming, no dot paths);
    unknown keys are left untouched. Non-string templates pass through.
    """
    if not isinstance(template, str) or "{{" not in template:
        return template

    def replacer(match: re.Match) -> str:
        key = match.group(1)
        if key not in variables:
            return match.group(0)
        return _as_text(variables[key])

    return _PLACEHOLDER.sub(replacer, template)
