"""Rounding strategies, engine hints, and cross-backend comparison."""

from __future__ import annotations

import math
from decimal import Decimal
from fractions import Fraction

import pytest

from formula_orchestrator.domain.models import EngineHint, RoundingStrategy
from formula_orchestrator.execution.precision import (
    absolute_difference,
    apply_engine_hint,
    are_equal,
    compare_outputs,
    normalize,
    relative_difference,
)

try:
    from hypothesis import given
    from hypothesis import strategies as st
except ModuleNotFoundError:
    _HYPOTHESIS_AVAILABLE = False
else:
    _HYPOTHESIS_AVAILABLE = True


@pytest.mark.parametrize(
    ("value", "scale", "strategy", "expected"),
    [
        (4.455, 2, "round", 4.46),
        (1.005, 2, "round", 1.01),
        (-4.455, 2, "round", -4.46),
        (2.5, 0, "round", 3.0),
        (-2.5, 0, "round", -3.0),
        (1.239, 2, "trunc", 1.23),
        (-1.239, 2, "trunc", -1.23),
        (1.231, 2, "ceil", 1.24),
        (-1.239, 2, "ceil", -1.23),
        (1.239, 2, "floor", 1.23),
        (-1.231, 2, "floor", -1.24),
        (1234.5, -2, "round", 1200.0),
    ],
)
def test_normalize_float_strategies(value: float, scale: int, strategy: str, expected: float) -> None:
    assert normalize(value, scale, strategy) == expected


def test_normalize_accepts_enum_strategy() -> None:
    assert normalize(0.123456789, 4, RoundingStrategy.TRUNC) == 0.1234


def test_normalize_integers_and_negative_scale() -> None:
    assert normalize(17, 2, "round") == 17
    assert normalize(1250, -2, "round") == 1300
    assert normalize(1250, -2, "floor") == 1200
    assert isinstance(normalize(1250, -2, "floor"), int)


def test_normalize_decimal_and_fraction() -> None:
    assert normalize(Decimal("2.675"), 2, "round") == Decimal("2.68")
    assert normalize(Fraction(1, 3), 3, "round") == Fraction(333, 1000)


@pytest.mark.parametrize("value", ["4.455", None, True, [1.234], {"a": 1.234}])
def test_normalize_passes_non_numeric_through(value: object) -> None:
    assert normalize(value, 2, "round") == value


def test_normalize_leaves_non_finite_floats() -> None:
    assert math.isnan(normalize(float("nan"), 2, "round"))  # type: ignore[arg-type]
    assert normalize(float("inf"), 2, "floor") == float("inf")


def test_normalize_rejects_unknown_strategy_and_bad_scale() -> None:
    with pytest.raises(ValueError):
        normalize(1.0, 2, "bankers")
    with pytest.raises(ValueError):
        normalize(1.0, 2.5, "round")  # type: ignore[arg-type]


def test_apply_engine_hint_defaults() -> None:
    assert apply_engine_hint(1.23456, None) == 1.23456
    assert apply_engine_hint(1.23456, EngineHint()) == 1.23456
    assert apply_engine_hint(1.23456, EngineHint(scale=2)) == 1.23
    assert apply_engine_hint(0.123456789123, EngineHint(rounding=RoundingStrategy.FLOOR)) == 0.12345678
    assert apply_engine_hint(4.455, EngineHint(rounding=RoundingStrategy.CEIL, scale=1)) == 4.5


def test_difference_helpers() -> None:
    assert absolute_difference(1.0, 1.5) == 0.5
    assert relative_difference(2.0, 3.0) == 50.0
    assert relative_difference(0.0, 0.0) == 0.0
    assert relative_difference(0.0, 1.0) == math.inf
    assert are_equal(0.1 + 0.2, 0.3)
    assert not are_equal(1.0, 1.001)
    assert are_equal(1.0, 1.001, threshold=0.01)


def test_compare_outputs_only_diffs_numbers_present_on_both_sides() -> None:
    diffs = compare_outputs(
        {"result": 10.0, "label": "x", "flag": True, "missing": 1.0},
        {"result": 10.5, "label": "y", "flag": False},
    )
    assert len(diffs) == 1
    only = diffs[0]
    assert only.key == "result"
    assert only.absolute == 0.5
    assert only.relative == pytest.approx(5.0)
    assert not only.equal


if _HYPOTHESIS_AVAILABLE:

    @given(
        value=st.floats(min_value=-1e9, max_value=1e9, allow_nan=False, allow_infinity=False),
        scale=st.integers(min_value=0, max_value=8),
    )
    def test_property_directional_rounding_brackets_value(value: float, scale: int) -> None:
        floor = normalize(value, scale, "floor")
        ceil = normalize(value, scale, "ceil")
        trunc = normalize(value, scale, "trunc")
        assert Decimal(repr(floor)) <= Decimal(repr(value)) <= Decimal(repr(ceil))
        assert abs(Decimal(repr(trunc))) <= abs(Decimal(repr(value)))

else:

    def test_property_directional_rounding_brackets_value() -> None:
        pytest.skip("hypothesis is not installed")
