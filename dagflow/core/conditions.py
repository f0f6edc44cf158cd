"""Single-comparison conditions against the triggering entity."""

from enum import Enum
from typing import Any

from dagflow.core.utils import loose_equals, stringify_value, to_number


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"


def evaluate_condition(config: dict[str, Any] | None, entity: dict[str, Any] | None) -> bool:
    """Compare ``entity[config.field]`` against ``config.value``.

    Numeric operators coerce both sides to numbers (non-numeric -> False),
    string operators compare the string forms. A missing entity or an
    unknown operator evaluates to False.
    """
    if entity is None or not config:
        return False

    actual = entity.get(config.get("field")) if isinstance(config.get("field"), str) else None
    expected = config.get("value")
    operator = config.get("operator")

    if operator == Operator.EQUALS:
        return loose_equals(actual, expected)
    if operator == Operator.NOT_EQUALS:
        return not loose_equals(actual, expected)
    if operator == Operator.GREATER_THAN:
        return to_number(actual) > to_number(expected)
    if operator == Operator.LESS_THAN:
        return to_number(actual) < to_number(expected)
    if operator == Operator.CONTAINS:
        return stringify_value(expected) in _as_text(actual)
    if operator == Operator.NOT_CONTAINS:
        return stringify_value(expected) not in _as_text(actual)
    return False


def _as_text(value: Any) -> str:
    # A missing field reads as empty text, so "contains" is False and
    # "not_contains" True for it.
    return "" if value is None else stringify_value(value)
