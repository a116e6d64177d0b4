"""
Fixed-point numeric primitives for quantities, prices, commissions and P&L.

Every value crossing into the ledger is a ``decimal.Decimal``. Arithmetic stays
exact inside a computation; rounding (one rule, banker's rounding by default)
is applied only when a derived value is materialized: ingestion, matched trade
and position construction, persistence.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Context, Decimal, InvalidOperation
from typing import Any, Iterable

ZERO = Decimal(0)
ONE_HUNDRED = Decimal(100)

# Wide enough that products of two 8-scale values never round before quantize.
_CONTEXT = Context(prec=34, rounding=ROUND_HALF_EVEN)


def to_decimal(value: Any) -> Decimal:
    """Convert *value* to Decimal without going through binary float arithmetic."""
    if isinstance(value, bool):
        raise TypeError("bool is not a numeric ledger value")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        result = Decimal(repr(value))
    elif isinstance(value, str):
        text = value.strip().replace(",", "")
        if not text:
            raise ValueError("empty numeric value")
        try:
            result = Decimal(text)
        except InvalidOperation as exc:
            raise ValueError(f"not a number: {value!r}") from exc
    elif value is None:
        raise ValueError("missing numeric value")
    else:
        raise TypeError(f"unsupported numeric type: {type(value).__name__}")
    if not result.is_finite():
        raise ValueError(f"non-finite numeric value: {value!r}")
    return result


def quantize(value: Decimal, scale: int, rounding: str = ROUND_HALF_EVEN) -> Decimal:
    """Round *value* to *scale* fractional digits."""
    return value.quantize(Decimal(1).scaleb(-scale), rounding=rounding, context=_CONTEXT)


def divide(numerator: Decimal, denominator: Decimal, scale: int, rounding: str = ROUND_HALF_EVEN) -> Decimal:
    if denominator == 0:
        raise ZeroDivisionError("ledger division by zero")
    return quantize(_CONTEXT.divide(numerator, denominator), scale, rounding)


def weighted_average(
    pairs: Iterable[tuple[Decimal, Decimal]],
    scale: int,
    rounding: str = ROUND_HALF_EVEN,
) -> Decimal:
    """Quantity-weighted mean price of ``(quantity, price)`` pairs (absolute quantities)."""
    total_qty = ZERO
    total_cost = ZERO
    for qty, price in pairs:
        total_qty += abs(qty)
        total_cost += abs(qty) * price
    return divide(total_cost, total_qty, scale, rounding)


def is_close(a: Decimal, b: Decimal, epsilon: Decimal) -> bool:
    return abs(a - b) <= epsilon


def canonical(value: Decimal) -> str:
    """Fixed-point text form used for storage (never scientific notation)."""
    text = format(value, "f")
    if not value and text.startswith("-"):
        text = text[1:]
    return text


@dataclass(frozen=True)
class NumericPolicy:
    """Scales and rounding rule shared by every ledger computation."""

    quantity_scale: int = 8
    price_scale: int = 8
    money_scale: int = 4
    percent_scale: int = 4
    rounding: str = ROUND_HALF_EVEN

    def quantity(self, value: Any) -> Decimal:
        return quantize(to_decimal(value), self.quantity_scale, self.rounding)

    def price(self, value: Any) -> Decimal:
        return quantize(to_decimal(value), self.price_scale, self.rounding)

    def money(self, value: Any) -> Decimal:
        return quantize(to_decimal(value), self.money_scale, self.rounding)

    def percent(self, value: Any) -> Decimal:
        return quantize(to_decimal(value), self.percent_scale, self.rounding)

    def divide_price(self, numerator: Decimal, denominator: Decimal) -> Decimal:
        return divide(numerator, denominator, self.price_scale, self.rounding)

    def average_price(self, pairs: Iterable[tuple[Decimal, Decimal]]) -> Decimal:
        return weighted_average(pairs, self.price_scale, self.rounding)


DEFAULT_POLICY = NumericPolicy()
