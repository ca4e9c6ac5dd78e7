"""
Typed access to dynamically-typed node parameters.

Parameters mirror the JSON document: None, bool, int, float, str, list, dict.
Each accessor returns the caller's default when the stored value has the wrong
shape, so a half-edited node never crashes the dispatcher on a type error.
"""

from __future__ import annotations

import json
import math
from typing import Any, Dict, List, Mapping, Optional

from .script_model import WorkflowNode


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_integer(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def get_int(node: WorkflowNode, key: str, default: int) -> int:
    value = _as_integer(node.params.get(key))
    return default if value is None else value


def get_uint(node: WorkflowNode, key: str, default: int) -> int:
    value = _as_integer(node.params.get(key))
    if value is None or value < 0:
        return default
    return value


def get_float(node: WorkflowNode, key: str, default: float) -> float:
    value = node.params.get(key)
    return float(value) if _is_number(value) else default


def get_bool(node: WorkflowNode, key: str, default: bool) -> bool:
    value = node.params.get(key)
    return value if isinstance(value, bool) else default


def get_str(node: WorkflowNode, key: str, default: str) -> str:
    value = node.params.get(key)
    return value if isinstance(value, str) else default


def get_str_list(node: WorkflowNode, key: str, default: List[str]) -> List[str]:
    value = node.params.get(key)
    if not isinstance(value, list):
        return list(default)
    items = [item for item in value if isinstance(item, str)]
    return items or list(default)


def as_optional_float(value: Any) -> Optional[float]:
    """Numeric reading of a value: numbers and numeric strings only."""
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def as_float(value: Any) -> float:
    number = as_optional_float(value)
    return 0.0 if number is None else number


def stringify_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def resolve_typed_value(node: WorkflowNode, base_key: str) -> Any:
    """Resolve a `<base>Type` / `<base>String|Number|Boolean|Json` parameter group."""
    selected = node.params.get(f"{base_key}Type")
    selected = selected if isinstance(selected, str) else ""

    if selected == "string":
        return get_str(node, f"{base_key}String", "")
    if selected == "number":
        number = get_float(node, f"{base_key}Number", 0.0)
        return number if math.isfinite(number) else None
    if selected == "boolean":
        raw = node.params.get(f"{base_key}Boolean")
        if isinstance(raw, bool):
            return raw
        return (raw if isinstance(raw, str) else "false").lower() == "true"
    if selected == "json":
        raw = get_str(node, f"{base_key}Json", "null")
        try:
            return json.loads(raw)
        except ValueError:
            return None
    return node.params.get(base_key)


def render_template(raw: str, variables: Mapping[str, Any]) -> str:
    """Replace `{{ name }}` placeholders with stringified variable values.

    Unknown names render as empty text; an unclosed `{{` is kept literally.
    """
    parts: List[str] = []
    cursor = 0
    while True:
        start = raw.find("{{", cursor)
        if start < 0:
            break
        parts.append(raw[cursor:start])
        end = raw.find("}}", start + 2)
        if end < 0:
            parts.append(raw[start:])
            cursor = len(raw)
            break
        key = raw[start + 2:end].strip()
        if key and key in variables:
            parts.append(stringify_value(variables[key]))
        cursor = end + 2
    parts.append(raw[cursor:])
    return "".join(parts)


def resolve_text_input(node: WorkflowNode, variables: Dict[str, Any]) -> str:
    """Text for nodes with a literal/variable input selector.

    In literal mode a `text` parameter (what a data edge targets) wins over
    the editor's `inputText` field.
    """
    mode = get_str(node, "inputMode", "literal").lower()
    if mode == "var":
        name = get_str(node, "inputVar", "").strip()
        if not name:
            return ""
        return stringify_value(variables.get(name))

    if "text" in node.params:
        raw = stringify_value(node.params.get("text"))
    else:
        raw = get_str(node, "inputText", "")
    return render_template(raw, variables)
