import math

import pytest

import values


def test_kind_of_distinguishes_booleans_from_numbers():
    assert values.kind_of(True) == "boolean"
    assert values.kind_of(1) == "number"
    assert values.kind_of(1.5) == "number"
    assert values.kind_of("") == "string"
    assert values.kind_of(None) == "null"
    with pytest.raises(TypeError):
        values.kind_of([])


def test_to_number():
    assert values.to_number(" 12 ") == 12
    assert values.to_number("") == 0
    assert values.to_number("1e3") == 1000
    assert values.to_number("-Infinity") == -math.inf
    assert math.isnan(values.to_number("12px"))
    assert values.to_number(True) == 1
    assert values.to_number(None) == 0


def test_truthiness():
    assert not values.is_truthy(0)
    assert not values.is_truthy(math.nan)
    assert not values.is_truthy("")
    assert not values.is_truthy(None)
    assert values.is_truthy("0")
    assert values.is_truthy(-1)


def test_display():
    assert values.to_display(3) == "3"
    assert values.to_display(0.5) == "0.5"
    assert values.to_display(0.1 + 0.2) == "0.30000000000000004"
    assert values.to_display(1e21) == "1e+21"
    assert values.to_display(math.nan) == "NaN"
    assert values.to_display(-math.inf) == "-Infinity"
    assert values.to_display(False) == "false"
    assert values.to_display(None) == "null"
    assert values.to_repr("a") == '"a"'


def test_arithmetic():
    assert values.arithmetic("+", 1, 2) == 3
    assert isinstance(values.arithmetic("+", 1, 2), int)
    assert values.arithmetic("/", 1, 4) == 0.25
    assert values.arithmetic("%", -7, 3) == -1
    assert values.arithmetic("%", 5.5, 2) == 1.5
    assert values.arithmetic("*", "3", True) == 3
    assert math.isnan(values.arithmetic("-", "x", 1))


def test_plus_concatenates_when_either_side_is_a_string():
    assert values.arithmetic("+", "a", 1) == "a1"
    assert values.arithmetic("+", 1.5, "b") == "1.5b"
    assert values.arithmetic("+", "x", None) == "xnull"
    assert values.arithmetic("+", True, "") == "true"


def test_relational():
    assert values.compare("<", 1, 2)
    assert values.compare("<", "a", "b")
    # Two strings compare lexicographically, anything else numerically.
    assert values.compare("<", "10", "9")
    assert values.compare(">", "10", 9)
    assert not values.compare("<", 1, "abc")
    assert not values.compare(">=", "abc", 1)
    assert values.compare("<=", None, 0)


def test_loose_equality():
    assert values.loose_equals(1, "1")
    assert values.loose_equals(True, 1)
    assert values.loose_equals("0", False)
    assert values.loose_equals(None, None)
    assert not values.loose_equals(None, 0)
    assert not values.loose_equals(None, "")
    assert not values.loose_equals(math.nan, math.nan)


def test_strict_equality():
    assert values.strict_equals(1, 1.0)
    assert not values.strict_equals(1, "1")
    assert not values.strict_equals(True, 1)
    assert values.strict_equals("a", "a")


def test_logical_operators_return_an_operand():
    assert values.logical("&&", 0, "x") == 0
    assert values.logical("&&", 1, "x") == "x"
    assert values.logical("||", "", "y") == "y"
    assert values.logical("||", "z", "y") == "z"


def test_unary():
    assert values.unary("-", 3) == -3
    assert values.unary("-", "2") == -2
    assert values.unary("!", 0) is True
    assert values.unary("+", "4") == 4


def test_binary_dispatch():
    assert values.binary("!==", 1, "1") is True
    assert values.binary("!=", 1, "1") is False
    with pytest.raises(ValueError):
        values.binary("**", 1, 2)
