"""Price and size unit conversion.

Providers disagree on units: StockX reports prices as major-unit amounts
("145.00" or 145), Alias reports integer minor units as strings ("14500").
Everything stored downstream is a Decimal in major units with two places.
"""

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

from marketsync.errors import PriceParseError

CENT = Decimal("0.01")

_CURRENCY_NOISE = re.compile(r"[\s$€£,]")
_SIZE_NUMBER = re.compile(r"(\d+(?:\.\d+)?)")


def _to_decimal(value: Any) -> Optional[Decimal]:
    """Coerce a raw JSON scalar to Decimal; None/blank become None."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise PriceParseError(f"Boolean is not a price: {value!r}")
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, int):
        amount = Decimal(value)
    elif isinstance(value, float):
        amount = Decimal(str(value))
    elif isinstance(value, str):
        cleaned = _CURRENCY_NOISE.sub("", value)
        if not cleaned:
            return None
        try:
            amount = Decimal(cleaned)
        except InvalidOperation:
            raise PriceParseError(f"Unparseable price: {value!r}") from None
    else:
        raise PriceParseError(f"Unsupported price type {type(value).__name__}: {value!r}")

    if not amount.is_finite():
        raise PriceParseError(f"Non-finite price: {value!r}")
    if amount < 0:
        raise PriceParseError(f"Negative price: {value!r}")
    return amount


def parse_major_units(value: Any) -> Optional[Decimal]:
    """
    Parse a major-unit amount ("145.00", 145, 145.5) into a Decimal.

    Returns:
        Decimal quantized to cents, or None when the value is absent

    Raises:
        PriceParseError: If the value is present but not a valid amount
    """
    amount = _to_decimal(value)
    if amount is None:
        return None
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_minor_units(value: Any, exponent: int = 2) -> Optional[Decimal]:
    """
    Parse an integer minor-unit amount ("14500") into major units.

    Args:
        value: Minor units as int or numeric string
        exponent: Currency exponent (2 for USD/EUR/GBP)

    Returns:
        Decimal in major units, or None when the value is absent

    Raises:
        PriceParseError: If the value is not a whole number of minor units
    """
    amount = _to_decimal(value)
    if amount is None:
        return None
    if amount != amount.to_integral_value():
        raise PriceParseError(f"Minor-unit price has a fractional part: {value!r}")
    quantum = Decimal(1).scaleb(-exponent)
    return amount.scaleb(-exponent).quantize(quantum)


def parse_count(value: Any) -> Optional[int]:
    """Parse a listing/offer count; absent or malformed counts are None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def format_size_key(value: Any) -> Optional[str]:
    """Canonical size key: 10.0 -> "10", 10.5 -> "10.5", "10.5W" unchanged."""
    if value is None:
        return None
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        number = Decimal(str(value)).normalize()
        return format(number, "f")
    key = str(value).strip()
    return key or None


def parse_size_numeric(size_key: Optional[str]) -> Optional[Decimal]:
    """Leading numeric part of a size key, used for sorting sizes."""
    if not size_key:
        return None
    match = _SIZE_NUMBER.search(size_key)
    if not match:
        return None
    return Decimal(match.group(1))
