"""
Condition evaluation shared by `condition` and `whileLoop` nodes.
"""

from __future__ import annotations

import math
from typing import Any, Mapping

from .params import as_float, as_optional_float, get_str
from .script_model import WorkflowNode
from .var_math import EPSILON


def resolve_operand(kind: str, raw: str, variables: Mapping[str, Any]) -> Any:
    """A `var` operand reads a variable; anything else is a coerced literal."""
    if kind == "var":
        return variables.get(raw)
    try:
        number = float(raw)
    except ValueError:
        number = None
    if number is not None and math.isfinite(number):
        return number
    if raw.lower() == "true":
        return True
    if raw.lower() == "false":
        return False
    return raw


def _json_equal(left: Any, right: Any) -> bool:
    # bool is a subclass of int; JSON keeps them apart.
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, list) and isinstance(right, list):
        return len(left) == len(right) and all(_json_equal(a, b) for a, b in zip(left, right))
    if isinstance(left, dict) and isinstance(right, dict):
        return left.keys() == right.keys() and all(_json_equal(left[k], right[k]) for k in left)
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right
    return type(left) is type(right) and left == right


def values_equal(left: Any, right: Any) -> bool:
    left_num = as_optional_float(left)
    right_num = as_optional_float(right)
    if left_num is not None and right_num is not None:
        return abs(left_num - right_num) < EPSILON
    return _json_equal(left, right)


def compare(left: Any, operator: str, right: Any) -> bool:
    if operator == "==":
        return values_equal(left, right)
    if operator == "!=":
        return not values_equal(left, right)
    if operator == ">":
        return as_float(left) > as_float(right)
    if operator == ">=":
        return as_float(left) >= as_float(right)
    if operator == "<":
        return as_float(left) < as_float(right)
    if operator == "<=":
        return as_float(left) <= as_float(right)
    return False


def evaluate_condition(node: WorkflowNode, variables: Mapping[str, Any]) -> bool:
    left = resolve_operand(get_str(node, "leftType", "var"), get_str(node, "left", ""), variables)
    right = resolve_operand(get_str(node, "rightType", "literal"), get_str(node, "right", ""), variables)
    return compare(left, get_str(node, "operator", "=="), right)
