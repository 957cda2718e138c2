from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

from .errors import ValidationError

TWOPLACES = Decimal("0.01")
ZERO = Decimal("0.00")

# rates are carried in ten-thousandths of a percent
_RATE_SCALE = 10_000
_RATE_PLACES = Decimal("0.0001")


def _to_decimal(value: Any, field: str) -> Decimal:
    if value is None:
        raise ValidationError(f"{field} is required", field=field)
    if isinstance(value, bool):
        raise ValidationError(f"Invalid decimal value for {field}: {value!r}", field=field)
    try:
        d = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid decimal value for {field}: {value!r}", field=field) from e
    if d.is_nan() or d.is_infinite():
        raise ValidationError(f"{field} cannot be NaN or Infinity", field=field)
    return d


def to_money(value: Any, *, field: str = "amount", allow_negative: bool = True) -> Decimal:
    d = _to_decimal(value, field).quantize(TWOPLACES, rounding=ROUND_HALF_UP)
    if not allow_negative and d < 0:
        raise ValidationError(f"{field} cannot be negative", field=field)
    return d


def to_rate(value: Any, *, field: str = "commission_rate") -> Decimal:
    d = _to_decimal(value, field)
    try:
        rate = d.quantize(_RATE_PLACES, rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise ValidationError(f"Invalid decimal value for {field}: {value!r}", field=field) from e
    if rate != d:
        raise ValidationError(f"{field} cannot have more than four decimal places: {value!r}", field=field)
    return rate


def to_cents(amount: Decimal) -> int:
    return int(to_money(amount) * 100)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(TWOPLACES)


def _div_half_up(numerator: int, denominator: int) -> int:
    if numerator < 0:
        return -_div_half_up(-numerator, denominator)
    return (2 * numerator + denominator) // (2 * denominator)


def percent_of(base: Any, rate: Any) -> Decimal:
    """Return ``base * rate / 100`` rounded half-up to cents.

    Both operands are scaled to integers first so no intermediate value is
    ever a binary float.
    """
    base_cents = to_cents(to_money(base, field="base_amount"))
    rate_units = int(to_rate(rate) * _RATE_SCALE)
    return from_cents(_div_half_up(base_cents * rate_units, 100 * _RATE_SCALE))


def format_money(amount: Decimal, currency: str = "USD") -> str:
    value = to_money(amount)
    if currency == "USD":
        sign = "-" if value < 0 else ""
        return f"{sign}${abs(value):,.2f}"
    return f"{value:,.2f} {currency}"
