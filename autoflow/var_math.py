"""
Numeric operators applied to a variable and an operand.

Every operator maps (current, operand) to a float. Comparisons and logical
operators answer 1.0 / 0.0; bitwise operators work on the saturating 64-bit
signed truncation of both sides.
"""

from __future__ import annotations

import math
import operator
import sys
from typing import Callable, Dict

from .errors import ValidationError

EPSILON = sys.float_info.epsilon

I64_MIN = -(2 ** 63)
I64_MAX = 2 ** 63 - 1
U64_MASK = 2 ** 64 - 1


def to_i64(value: float) -> int:
    """Saturating float -> int64 conversion; NaN becomes 0."""
    if math.isnan(value):
        return 0
    if value >= I64_MAX:
        return I64_MAX
    if value <= I64_MIN:
        return I64_MIN
    return int(value)


def _wrap_i64(value: int) -> int:
    value &= U64_MASK
    return value - 2 ** 64 if value > I64_MAX else value


def _shift_bits(operand: float) -> int:
    return max(to_i64(operand), 0) & 63


def _truthy(value: float) -> bool:
    return abs(value) > EPSILON


def _flag(value: bool) -> float:
    return 1.0 if value else 0.0


def round_half_away(value: float) -> float:
    truncated = math.trunc(value)
    if abs(value - truncated) >= 0.5:
        truncated += math.copysign(1.0, value)
    return float(truncated)


def _rem_euclid(a: float, b: float) -> float:
    r = math.fmod(a, b)
    return r + abs(b) if r < 0.0 else r


def _nonzero(value: float, what: str) -> float:
    if abs(value) < EPSILON:
        raise ValidationError(f"{what} by zero")
    return value


def _div(a: float, b: float) -> float:
    return a / _nonzero(b, "division")


def _mod(a: float, b: float) -> float:
    return _rem_euclid(a, _nonzero(b, "modulo"))


def _rem(a: float, b: float) -> float:
    return math.fmod(a, _nonzero(b, "remainder"))


def _floordiv(a: float, b: float) -> float:
    return float(math.floor(a / _nonzero(b, "floor division")))


def _recip(a: float, _b: float) -> float:
    if abs(a) < EPSILON:
        raise ValidationError("reciprocal of zero")
    return 1.0 / a


def _bitwise(op: Callable[[int, int], int]) -> Callable[[float, float], float]:
    return lambda a, b: float(op(to_i64(a), to_i64(b)))


def _unary(fn: Callable[[float], float]) -> Callable[[float, float], float]:
    return lambda a, _b: float(fn(a))


_BINARY: Dict[str, Callable[[float, float], float]] = {
    "add": operator.add,
    "sub": operator.sub,
    "mul": operator.mul,
    "div": _div,
    "mod": _mod,
    "rem": _rem,
    "floordiv": _floordiv,
    "pow": math.pow,
    "max": max,
    "min": min,
    "hypot": math.hypot,
    "atan2": math.atan2,
    "eq": lambda a, b: _flag(abs(a - b) < EPSILON),
    "ne": lambda a, b: _flag(abs(a - b) >= EPSILON),
    "gt": lambda a, b: _flag(a > b),
    "ge": lambda a, b: _flag(a >= b),
    "lt": lambda a, b: _flag(a < b),
    "le": lambda a, b: _flag(a <= b),
    "land": lambda a, b: _flag(_truthy(a) and _truthy(b)),
    "lor": lambda a, b: _flag(_truthy(a) or _truthy(b)),
    "lxor": lambda a, b: _flag(_truthy(a) != _truthy(b)),
    "band": _bitwise(operator.and_),
    "bor": _bitwise(operator.or_),
    "bxor": _bitwise(operator.xor),
    "shl": lambda a, b: float(_wrap_i64(to_i64(a) << _shift_bits(b))),
    "shr": lambda a, b: float(to_i64(a) >> _shift_bits(b)),
    "ushr": lambda a, b: float((to_i64(a) & U64_MASK) >> _shift_bits(b)),
    "neg": _unary(operator.neg),
    "abs": _unary(abs),
    "sign": _unary(lambda a: a if math.isnan(a) else math.copysign(1.0, a)),
    "square": _unary(lambda a: a * a),
    "cube": _unary(lambda a: a * a * a),
    "sqrt": _unary(math.sqrt),
    "cbrt": _unary(math.cbrt),
    "exp": _unary(math.exp),
    "ln": _unary(math.log),
    "log2": _unary(math.log2),
    "log10": _unary(math.log10),
    "sin": _unary(math.sin),
    "cos": _unary(math.cos),
    "tan": _unary(math.tan),
    "asin": _unary(math.asin),
    "acos": _unary(math.acos),
    "atan": _unary(math.atan),
    "ceil": _unary(math.ceil),
    "floor": _unary(math.floor),
    "round": _unary(round_half_away),
    "trunc": _unary(math.trunc),
    "frac": _unary(lambda a: a - math.trunc(a)),
    "recip": _recip,
    "lnot": lambda a, _b: _flag(not _truthy(a)),
    "bnot": lambda a, _b: float(~to_i64(a)),
    "set": lambda _a, b: b,
}

ALIASES: Dict[str, str] = {
    "+": "add",
    "-": "sub",
    "*": "mul",
    "/": "div",
    "%": "mod",
    "==": "eq",
    "!=": "ne",
    ">": "gt",
    ">=": "ge",
    "<": "lt",
    "<=": "le",
    "&&": "land",
    "||": "lor",
    "&": "band",
    "|": "bor",
    "^": "bxor",
    "<<": "shl",
    ">>": "shr",
    ">>>": "ushr",
    "!": "lnot",
    "~": "bnot",
    "=": "set",
}

OPERATIONS = frozenset(_BINARY) | frozenset(ALIASES)


def canonical_operation(name: str) -> str:
    lowered = name.strip().lower()
    return ALIASES.get(lowered, lowered)


def evaluate(operation: str, current: float, operand: float) -> float:
    """Apply `operation` to `current` and `operand`.

    Raises ValidationError for unknown operators, zero divisors and
    results that are not finite (math domain errors included).
    """
    fn = _BINARY.get(canonical_operation(operation))
    if fn is None:
        raise ValidationError(f"unsupported varMath operation '{operation.strip().lower()}'")
    try:
        result = float(fn(current, operand))
    except (ValueError, OverflowError):
        result = math.nan
    if not math.isfinite(result):
        raise ValidationError("varMath result is not finite")
    return result
