"""Currency-exact money helpers. Floats never touch an amount."""

from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Union

from app.config import settings

MoneyInput = Union[Decimal, int, str]


def minor_unit(places: int | None = None) -> Decimal:
    """Smallest representable amount, e.g. Decimal('0.01') for 2 places."""
    if places is None:
        places = settings.CURRENCY_MINOR_UNITS
    return Decimal(1).scaleb(-places)


def parse_money(value: MoneyInput) -> Decimal:
    """
    Convert input to Decimal without any rounding.

    Raises:
        ValueError: If the value is a float or not a finite number
    """
    if isinstance(value, float):
        raise ValueError("Amounts must be given as Decimal, int or string, not float")
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Not a valid amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Not a valid amount: {value!r}")
    return amount


def is_currency_exact(amount: Decimal, places: int | None = None) -> bool:
    """True when the amount has no digits below the currency's minor unit."""
    return amount == amount.quantize(minor_unit(places), rounding=ROUND_DOWN)


def truncate(amount: Decimal, places: int | None = None) -> Decimal:
    """Cut an amount down to the minor unit (no banker's rounding)."""
    return amount.quantize(minor_unit(places), rounding=ROUND_DOWN)
