"""Conversion between human token amounts and base units."""
from decimal import Decimal, InvalidOperation, ROUND_FLOOR, localcontext
from typing import Union

from .errors import StakeValidationError

DEFAULT_DECIMALS = 18

# Enough digits for any uint256 value
PRECISION = 80


def to_base_units(amount: Union[str, int, Decimal], decimals: int = DEFAULT_DECIMALS) -> int:
    """Parse a token amount into base units.

    Args:
        amount: Amount in whole tokens, e.g. "100" or "0.5"
        decimals: Token decimals

    Returns:
        Amount in base units, rounded down

    Raises:
        StakeValidationError: If the amount is not a positive number or
            rounds down to zero base units
    """
    if amount is None or (isinstance(amount, str) and not amount.strip()):
        raise StakeValidationError("Please enter an amount")
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation:
        raise StakeValidationError(f"Invalid amount: {amount!r}")
    if not value.is_finite() or value <= 0:
        raise StakeValidationError("Please enter a valid amount greater than 0")

    with localcontext() as ctx:
        ctx.prec = PRECISION
        base_units = int(value.scaleb(decimals).to_integral_value(rounding=ROUND_FLOOR))
    if base_units <= 0:
        raise StakeValidationError(f"Amount {amount} is below the token's smallest unit")
    return base_units


def format_units(value: int, decimals: int = DEFAULT_DECIMALS) -> str:
    """Format base units as a plain decimal string without float rounding."""
    with localcontext() as ctx:
        ctx.prec = PRECISION
        scaled = Decimal(value).scaleb(-decimals)
    text = format(scaled, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"
