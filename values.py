"""Value domain and coercion rules.

Values are one of four kinds: ``number`` (``int`` or ``float``, never
``bool``), ``string``, ``boolean`` and ``null`` (``None``). Arithmetic is
IEEE-754 double precision computed through numpy; integral results that fit
in 2**53 come back as ``int`` so traces show ``3`` rather than ``3.0``.
"""
from __future__ import annotations
import math
import re
from typing import Any, Union

import numpy as np


NUMBER = "number"
STRING = "string"
BOOLEAN = "boolean"
NULL = "null"

MAX_SAFE_INTEGER = 2 ** 53

Number = Union[int, float]

_NUMERIC_TEXT = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_INFINITY_TEXT = {"Infinity": math.inf, "+Infinity": math.inf, "-Infinity": -math.inf}
_JS_WHITESPACE = " \t\n\r\v\f\u00a0\ufeff"


def kind_of(value: Any) -> str:
    if value is None:
        return NULL
    if isinstance(value, bool):
        return BOOLEAN
    if isinstance(value, (int, float)):
        return NUMBER
    if isinstance(value, str):
        return STRING
    raise TypeError(f"Not a runtime value: {value!r}")


def normalize_number(value: Any) -> Number:
    x = float(value)
    if math.isfinite(x) and x.is_integer() and abs(x) <= MAX_SAFE_INTEGER:
        return int(x)
    return x


def parse_number_literal(text: str) -> Number:
    return normalize_number(float(text))


def to_number(value: Any) -> Number:
    kind = kind_of(value)
    if kind == NUMBER:
        return value
    if kind == BOOLEAN:
        return 1 if value else 0
    if kind == NULL:
        return 0
    text = value.strip(_JS_WHITESPACE)
    if text == "":
        return 0
    if text in _INFINITY_TEXT:
        return _INFINITY_TEXT[text]
    if _NUMERIC_TEXT.fullmatch(text):
        return normalize_number(float(text))
    return math.nan


def is_truthy(value: Any) -> bool:
    kind = kind_of(value)
    if kind == BOOLEAN:
        return value
    if kind == NULL:
        return False
    if kind == STRING:
        return value != ""
    return value != 0 and not math.isnan(value)


def to_display(value: Any) -> str:
    kind = kind_of(value)
    if kind == NULL:
        return "null"
    if kind == BOOLEAN:
        return "true" if value else "false"
    if kind == STRING:
        return value
    if isinstance(value, int):
        return str(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    magnitude = abs(value)
    if magnitude == 0 or 1e-6 <= magnitude < 1e21:
        return np.format_float_positional(value, trim="-")
    return np.format_float_scientific(value, trim="-", exp_digits=1)


def to_repr(value: Any) -> str:
    """Render a value the way it would be written in source."""
    if isinstance(value, str):
        return '"' + value + '"'
    return to_display(value)


def arithmetic(operator: str, left: Any, right: Any) -> Any:
    if operator == "+" and (kind_of(left) == STRING or kind_of(right) == STRING):
        return to_display(left) + to_display(right)
    x = np.float64(to_number(left))
    y = np.float64(to_number(right))
    with np.errstate(all="ignore"):
        if operator == "+":
            result = x + y
        elif operator == "-":
            result = x - y
        elif operator == "*":
            result = x * y
        elif operator == "/":
            result = x / y
        elif operator == "%":
            result = np.fmod(x, y)
        else:
            raise ValueError(f"Unknown arithmetic operator {operator}")
    return normalize_number(result)


def compare(operator: str, left: Any, right: Any) -> bool:
    if kind_of(left) == STRING and kind_of(right) == STRING:
        a: Any = left
        b: Any = right
    else:
        a = to_number(left)
        b = to_number(right)
        if math.isnan(a) or math.isnan(b):
            return False
    if operator == "<":
        return a < b
    if operator == ">":
        return a > b
    if operator == "<=":
        return a <= b
    if operator == ">=":
        return a >= b
    raise ValueError(f"Unknown relational operator {operator}")


def strict_equals(left: Any, right: Any) -> bool:
    if kind_of(left) != kind_of(right):
        return False
    return left == right


def loose_equals(left: Any, right: Any) -> bool:
    left_kind = kind_of(left)
    right_kind = kind_of(right)
    if left_kind == right_kind:
        return strict_equals(left, right)
    if left_kind == NULL or right_kind == NULL:
        return False
    if left_kind == BOOLEAN:
        return loose_equals(to_number(left), right)
    if right_kind == BOOLEAN:
        return loose_equals(left, to_number(right))
    # number against string
    return to_number(left) == to_number(right)


def logical(operator: str, left: Any, right: Any) -> Any:
    if operator == "&&":
        return right if is_truthy(left) else left
    if operator == "||":
        return left if is_truthy(left) else right
    raise ValueError(f"Unknown logical operator {operator}")


def unary(operator: str, argument: Any) -> Any:
    if operator == "!":
        return not is_truthy(argument)
    if operator == "-":
        return normalize_number(-np.float64(to_number(argument)))
    if operator == "+":
        return to_number(argument)
    raise ValueError(f"Unknown unary operator {operator}")


ARITHMETIC_OPERATORS = {"+", "-", "*", "/", "%"}
RELATIONAL_OPERATORS = {"<", ">", "<=", ">="}
LOGICAL_OPERATORS = {"&&", "||"}
EQUALITY_OPERATORS = {"==", "!=", "===", "!=="}


def binary(operator: str, left: Any, right: Any) -> Any:
    if operator in ARITHMETIC_OPERATORS:
        return arithmetic(operator, left, right)
    if operator in RELATIONAL_OPERATORS:
        return compare(operator, left, right)
    if operator == "==":
        return loose_equals(left, right)
    if operator == "!=":
        return not loose_equals(left, right)
    if operator == "===":
        return strict_equals(left, right)
    if operator == "!==":
        return not strict_equals(left, right)
    if operator in LOGICAL_OPERATORS:
        return logical(operator, left, right)
    raise ValueError(f"Unknown binary operator {operator}")
