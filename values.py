from __future__ import annotations
import math
import re
from dataclasses import dataclass
from typing import Any, Optional

import numpy as np


TYPE_INT = "INT"
TYPE_FLT = "FLT"
TYPE_STR = "STR"
TYPE_BOOL = "BOOL"
TYPE_NULL = "NULL"

NUMERIC_TYPES = (TYPE_INT, TYPE_FLT)

INT_MIN = int(np.iinfo(np.int64).min)
INT_MAX = int(np.iinfo(np.int64).max)
LOOP_MIN = int(np.iinfo(np.int32).min)
LOOP_MAX = int(np.iinfo(np.int32).max)

_INT_LITERAL = re.compile(r"[+-]?[0-9]+")
_FLT_LITERAL = re.compile(r"[+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")

_DEBUG_NAMES = {
    TYPE_INT: "Int",
    TYPE_FLT: "Float",
    TYPE_STR: "String",
    TYPE_BOOL: "Bool",
}


class LiteralError(ValueError):
    """Raised when a token cannot be classified as a literal."""

    def __init__(self, message: str, token: str) -> None:
        super().__init__(message)
        self.message = message
        self.token = token


@dataclass(frozen=True)
class Value:
    type: str
    value: Any = None

    def is_numeric(self) -> bool:
        return self.type in NUMERIC_TYPES

    def render(self) -> str:
        if self.type == TYPE_INT:
            return str(self.value)
        if self.type == TYPE_FLT:
            return format_float(self.value)
        if self.type == TYPE_STR:
            return self.value.replace("\\n", "\n")
        if self.type == TYPE_BOOL:
            return "true" if self.value else "false"
        return "null"

    def debug(self) -> str:
        if self.type == TYPE_NULL:
            return "Null"
        if self.type == TYPE_STR:
            escaped = self.value.replace("\\", "\\\\").replace('"', '\\"')
            return f'String("{escaped}")'
        rendered = debug_float(self.value) if self.type == TYPE_FLT else self.render()
        return f"{_DEBUG_NAMES[self.type]}({rendered})"

    def __str__(self) -> str:
        return self.render()


NULL = Value(TYPE_NULL)


def int_value(value: int) -> Value:
    return Value(TYPE_INT, int(value))


def flt_value(value: float) -> Value:
    return Value(TYPE_FLT, float(value))


def str_value(value: str) -> Value:
    return Value(TYPE_STR, value)


def bool_value(value: bool) -> Value:
    return Value(TYPE_BOOL, bool(value))


def format_float(x: float) -> str:
    if math.isnan(x):
        return "NaN"
    if math.isinf(x):
        return "inf" if x > 0 else "-inf"
    return np.format_float_positional(x, unique=True, trim="-")


def debug_float(x: float) -> str:
    """Float text for state dumps.

    Magnitudes below 1e-4 or from 1e16 up switch to exponent form (``1e20``,
    ``1.5e-7``); everything else keeps at least one fractional digit.
    """
    if math.isnan(x) or math.isinf(x):
        return format_float(x)
    mantissa, marker, exponent = repr(x).partition("e")
    if not marker:
        return mantissa
    return f"{mantissa}e{int(exponent)}"


def fits_int64(value: int) -> bool:
    return INT_MIN <= value <= INT_MAX


def truncating_div(a: int, b: int) -> int:
    # Integer quotient rounded toward zero.
    q = abs(a) // abs(b)
    return -q if (a < 0) != (b < 0) else q


def loop_count(value: Value) -> Optional[int]:
    """Number of repetitions described by a loop register value.

    Floats are truncated toward zero and saturated to the 32-bit range; NaN
    counts as zero. Non-numeric values yield None.
    """
    if value.type == TYPE_INT:
        return value.value
    if value.type == TYPE_FLT:
        x = value.value
        if math.isnan(x):
            return 0
        if math.isinf(x):
            return LOOP_MAX if x > 0 else LOOP_MIN
        return max(LOOP_MIN, min(LOOP_MAX, int(x)))
    return None


def classify_literal(token: str) -> Value:
    if len(token) >= 2 and token.startswith('"') and token.endswith('"'):
        return str_value(token[1:-1])
    if token == "true" or token == "false":
        return bool_value(token == "true")
    if "." in token:
        if not _FLT_LITERAL.fullmatch(token):
            raise LiteralError(f"Invalid float literal: {token}", token)
        return flt_value(float(token))
    if _INT_LITERAL.fullmatch(token):
        number = int(token)
        if fits_int64(number):
            return int_value(number)
    raise LiteralError(f"Unknown data type: {token}", token)
