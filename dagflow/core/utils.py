"""Shared value coercion helpers for template, trigger and condition code.

Workflow configurations are authored in a browser editor, so comparisons and
string interpolation follow the loose JSON-value semantics users expect there
("5" equals 5, booleans render as true/false).
"""

import json
import math
from typing import Any


def is_number(value: Any) -> bool:
    """True for int/float values (bool excluded)."""
    return isinstance(value, int | float) and not isinstance(value, bool)


def stringify_value(value: Any) -> str:
    """Render a JSON-like value the way it appears in interpolated text."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, dict | list):
        return json.dumps(value, default=str)
    return str(value)


def to_number(value: Any) -> float:
    """Coerce a value to a float, returning NaN when it has no numeric form.

    NaN compares false against everything, so numeric operators on
    non-numeric data evaluate to False instead of raising.
    """
    if value is None:
        return math.nan
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if is_number(value):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            return float(text)
        except ValueError:
            return math.nan
    return math.nan


def loose_equals(left: Any, right: Any) -> bool:
    """Equality that treats numeric strings and numbers as comparable."""
    if left == right:
        return True
    if left is None or right is None:
        return False
    if is_number(left) and isinstance(right, str) or is_number(right) and isinstance(left, str):
        return to_number(left) == to_number(right)
    if isinstance(left, bool) and is_number(right) or isinstance(right, bool) and is_number(left):
        return to_number(left) == to_number(right)
    return False
