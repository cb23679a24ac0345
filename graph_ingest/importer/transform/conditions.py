"""
Condition evaluation for type transformations.

A condition is ``{"key", "operator", "value", "subexpressions"}``; each
subexpression adds ``"expression": "AND" | "OR"``. A condition's own test is
folded left to right with its subexpressions, short-circuiting. All
top-level conditions must hold.
"""

from __future__ import annotations

import enum
import re
from typing import Any, Callable, Iterable, Mapping, Sequence

from ..errors import ConfigurationError
from .paths import MISSING, PathSyntaxError, parse_path, resolve


class ConditionOperator(str, enum.Enum):
    EQUALS = "=="
    NOT_EQUALS = "!="
    IN = "in"
    CONTAINS = "contains"
    EXISTS = "exists"
    LESS_THAN = "<"
    GREATER_THAN = ">"
    LESS_EQUAL = "<="
    GREATER_EQUAL = ">="
    LIKE = "like"


class Join(str, enum.Enum):
    AND = "AND"
    OR = "OR"


def _loose_equals(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    if isinstance(actual, bool) or isinstance(expected, bool):
        return str(actual).lower() == str(expected).lower()
    return str(actual) == str(expected)


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _numeric(compare: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def _test(actual: Any, expected: Any) -> bool:
        left, right = _as_number(actual), _as_number(expected)
        if left is None or right is None:
            return False
        return compare(left, right)

    return _test


def _in(actual: Any, expected: Any) -> bool:
    if isinstance(expected, str):
        candidates: Iterable[Any] = [item.strip() for item in expected.split(",")]
    elif isinstance(expected, (list, tuple, set)):
        candidates = expected
    else:
        return False
    return any(_loose_equals(actual, candidate) for candidate in candidates)


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return str(expected) in actual
    if isinstance(actual, (list, tuple)):
        return any(_loose_equals(item, expected) for item in actual)
    if isinstance(actual, Mapping):
        return str(expected) in actual
    return False


def _like(actual: Any, expected: Any) -> bool:
    if actual is None or isinstance(actual, (dict, list)):
        return False
    try:
        return re.search(str(expected), str(actual)) is not None
    except re.error:
        return False


_TESTS: dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQUALS: _loose_equals,
    ConditionOperator.NOT_EQUALS: lambda actual, expected: not _loose_equals(actual, expected),
    ConditionOperator.IN: _in,
    ConditionOperator.CONTAINS: _contains,
    ConditionOperator.LESS_THAN: _numeric(lambda left, right: left < right),
    ConditionOperator.GREATER_THAN: _numeric(lambda left, right: left > right),
    ConditionOperator.LESS_EQUAL: _numeric(lambda left, right: left <= right),
    ConditionOperator.GREATER_EQUAL: _numeric(lambda left, right: left >= right),
    ConditionOperator.LIKE: _like,
}


def _test(expression: Mapping[str, Any], payload: Any, indices: Sequence[int]) -> bool:
    operator = ConditionOperator(str(expression.get("operator", "")).strip())
    actual = resolve(payload, expression["key"], indices)
    if operator is ConditionOperator.EXISTS:
        wanted = expression.get("value", True)
        present = actual is not MISSING and actual is not None
        return present if wanted not in (False, "false", "False") else not present
    if actual is MISSING:
        # a missing key is "not equal" to anything and satisfies nothing else
        return operator is ConditionOperator.NOT_EQUALS
    return _TESTS[operator](actual, expression.get("value"))


def evaluate_condition(condition: Mapping[str, Any], payload: Any, indices: Sequence[int] = ()) -> bool:
    result = _test(condition, payload, indices)
    for subexpression in condition.get("subexpressions") or ():
        join = Join(str(subexpression.get("expression", "AND")).upper())
        if join is Join.AND:
            result = result and _test(subexpression, payload, indices)
        else:
            result = result or _test(subexpression, payload, indices)
    return result


def conditions_hold(conditions: Sequence[Mapping[str, Any]] | None, payload: Any, indices: Sequence[int] = ()) -> bool:
    """True when every top-level condition holds; an empty list always holds."""
    return all(evaluate_condition(condition, payload, indices) for condition in conditions or ())


def validate_conditions(conditions: Sequence[Mapping[str, Any]] | None) -> None:
    """Raise ``ConfigurationError`` for unknown operators, joins or bad paths."""
    for position, condition in enumerate(conditions or ()):
        expressions = [condition, *(condition.get("subexpressions") or ())]
        for expression in expressions:
            _validate_expression(expression, position)
        for subexpression in condition.get("subexpressions") or ():
            try:
                Join(str(subexpression.get("expression", "AND")).upper())
            except ValueError as exc:
                raise ConfigurationError(
                    f"condition {position}: unknown join '{subexpression.get('expression')}'"
                ) from exc


def _validate_expression(expression: Mapping[str, Any], position: int) -> None:
    if not isinstance(expression, Mapping) or not expression.get("key"):
        raise ConfigurationError(f"condition {position}: every expression needs a key")
    try:
        parse_path(expression["key"])
    except PathSyntaxError as exc:
        raise ConfigurationError(f"condition {position}: {exc}") from exc
    try:
        operator = ConditionOperator(str(expression.get("operator", "")).strip())
    except ValueError as exc:
        raise ConfigurationError(f"condition {position}: unknown operator '{expression.get('operator')}'") from exc
    if operator is ConditionOperator.LIKE:
        try:
            re.compile(str(expression.get("value", "")))
        except re.error as exc:
            raise ConfigurationError(f"condition {position}: invalid pattern: {exc}") from exc
