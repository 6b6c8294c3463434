"""
formula-orchestrator — precision normalizer

File: src/formula_orchestrator/execution/precision.py

Purpose
- Apply a rounding strategy at a fixed number of fractional digits to
  numeric formula results, and compare numeric results across backends.

Functional requirements
- ``round`` resolves ties away from zero for positive and negative values.
- ``floor``/``ceil`` are directional, ``trunc`` drops digits toward zero.
- Non-numeric values (including ``bool``) pass through unchanged.
- Floats are rounded from their shortest repr, so ``4.455`` rounds to ``4.46``.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import (
    ROUND_CEILING,
    ROUND_DOWN,
    ROUND_FLOOR,
    ROUND_HALF_UP,
    Decimal,
    localcontext,
)
from fractions import Fraction
from typing import TYPE_CHECKING, Final

from formula_orchestrator.constants import DEFAULT_HINT_SCALE
from formula_orchestrator.domain.models import RoundingStrategy

if TYPE_CHECKING:
    from formula_orchestrator.domain.models import EngineHint

DEFAULT_EQUALITY_THRESHOLD: Final[float] = 1e-10

_DECIMAL_ROUNDING: Final[dict[RoundingStrategy, str]] = {
    RoundingStrategy.ROUND: ROUND_HALF_UP,
    RoundingStrategy.FLOOR: ROUND_FLOOR,
    RoundingStrategy.CEIL: ROUND_CEILING,
    RoundingStrategy.TRUNC: ROUND_DOWN,
}


def normalize(value: object, scale: int, strategy: RoundingStrategy | str) -> object:
    """Round ``value`` to ``scale`` fractional digits using ``strategy``.

    A negative ``scale`` rounds to tens, hundreds, and so on.
    """

    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal, Fraction)):
        return value
    if isinstance(scale, bool) or not isinstance(scale, int):
        raise ValueError(f"scale must be an integer, got {type(scale).__name__}")
    rounding = _DECIMAL_ROUNDING[RoundingStrategy(strategy)]

    if isinstance(value, int):
        if scale >= 0:
            return value
        return int(_quantize(Decimal(value), scale, rounding))
    if isinstance(value, float):
        if not math.isfinite(value):
            return value
        return float(_quantize(Decimal(repr(value)), scale, rounding))
    if isinstance(value, Decimal):
        if not value.is_finite():
            return value
        return _quantize(value, scale, rounding)

    with localcontext() as ctx:
        ctx.prec = 60
        as_decimal = Decimal(value.numerator) / Decimal(value.denominator)
    return Fraction(_quantize(as_decimal, scale, rounding))


def apply_engine_hint(value: object, hint: EngineHint | None) -> object:
    """Normalize ``value`` with ``hint``; missing pieces fall back to round/8."""

    if hint is None or (hint.rounding is None and hint.scale is None):
        return value
    strategy = hint.rounding if hint.rounding is not None else RoundingStrategy.ROUND
    scale = hint.scale if hint.scale is not None else DEFAULT_HINT_SCALE
    return normalize(value, scale, strategy)


def _quantize(value: Decimal, scale: int, rounding: str) -> Decimal:
    exponent = Decimal(1).scaleb(-scale)
    digits = max(value.adjusted() + 1, 1)
    with localcontext() as ctx:
        ctx.prec = max(28, digits + max(scale, 0) + 2)
        return value.quantize(exponent, rounding=rounding)


def absolute_difference(a: float, b: float) -> float:
    return abs(a - b)


def relative_difference(a: float, b: float) -> float:
    """Relative difference of ``b`` against ``a`` as a percentage."""

    if a == 0:
        return 0.0 if b == 0 else math.inf
    return abs((b - a) / a) * 100.0


def are_equal(a: float, b: float, threshold: float = DEFAULT_EQUALITY_THRESHOLD) -> bool:
    return absolute_difference(a, b) < threshold


@dataclass(frozen=True, slots=True)
class OutputDifference:
    key: str
    absolute: float
    relative: float
    equal: bool


def compare_outputs(
    first: Mapping[str, object],
    second: Mapping[str, object],
    *,
    threshold: float = DEFAULT_EQUALITY_THRESHOLD,
) -> tuple[OutputDifference, ...]:
    """Differences for every key that holds a real number on both sides."""

    diffs: list[OutputDifference] = []
    for key in sorted(first):
        left = first[key]
        right = second.get(key)
        if not _is_real(left) or not _is_real(right):
            continue
        left_f = float(left)  # type: ignore[arg-type]
        right_f = float(right)  # type: ignore[arg-type]
        diffs.append(
            OutputDifference(
                key=key,
                absolute=absolute_difference(left_f, right_f),
                relative=relative_difference(left_f, right_f),
                equal=are_equal(left_f, right_f, threshold),
            )
        )
    return tuple(diffs)


def _is_real(value: object) -> bool:
    return not isinstance(value, bool) and isinstance(value, (int, float, Decimal, Fraction))


__all__ = [
    "DEFAULT_EQUALITY_THRESHOLD",
    "OutputDifference",
    "absolute_difference",
    "apply_engine_hint",
    "are_equal",
    "compare_outputs",
    "normalize",
    "relative_difference",
]
