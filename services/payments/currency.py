# services/payments/currency.py
"""
NPR <-> paisa conversion.

Rounding policy: ROUND_HALF_UP to the nearest paisa (10.005 -> 1001).
Values go through str() first so binary float noise (e.g. 0.1 + 0.2)
does not leak into the rounding decision.
"""

from __future__ import annotations
from decimal import Decimal, DecimalException, InvalidOperation, ROUND_HALF_UP, localcontext
from typing import Union

from babel.numbers import format_currency

CURRENCY = "NPR"
DISPLAY_LOCALE = "ne_NP"
MINOR_PER_MAJOR = 100
MAX_EXPONENT = 400

Number = Union[int, float, Decimal, str]


def _to_decimal(amount: Number) -> Decimal:
    if isinstance(amount, bool):
        raise ValueError("amount must be a number, not bool")
    try:
        d = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"not a number: {amount!r}") from e
    if not d.is_finite():
        raise ValueError(f"amount must be finite, got {amount!r}")
    return d


def _scale(d: Decimal, places: int, exp: Decimal) -> Decimal:
    # the default 28-digit context overflows on large amounts; float inputs top out near 1e308
    if d.adjusted() > MAX_EXPONENT:
        raise ValueError(f"amount out of range: {d!r}")
    with localcontext() as ctx:
        ctx.prec = max(ctx.prec, len(d.as_tuple().digits) + abs(places) + 2,
                       d.adjusted() + abs(places) + 6)
        try:
            return d.scaleb(places).quantize(exp, rounding=ROUND_HALF_UP)
        except DecimalException as e:
            raise ValueError(f"amount out of range: {d!r}") from e


def to_minor_units(amount: Number) -> int:
    """NPR -> paisa, e.g. 10.5 -> 1050."""
    return int(_scale(_to_decimal(amount), 2, Decimal("1")))


def to_major_units(minor: int) -> Decimal:
    """paisa -> NPR, exact (1050 -> Decimal('10.50'))."""
    if isinstance(minor, bool) or not isinstance(minor, int):
        raise ValueError("minor units must be an integer")
    return _scale(Decimal(minor), -2, Decimal("0.01"))


def format_amount(amount: Number, in_minor_units: bool = False,
                  locale: str = DISPLAY_LOCALE) -> str:
    """Display string only. Never compare or store the result."""
    if in_minor_units:
        d = _to_decimal(amount)
        if d != d.to_integral_value():
            raise ValueError(f"minor units must be whole paisa, got {amount!r}")
        major = to_major_units(int(d))
    else:
        major = _to_decimal(amount)
    return format_currency(major, CURRENCY, locale=locale)
