"""
Module: ledger_kernel.db.types
Responsibility: Annotated type aliases and rounding helpers shared by models,
    engines and services, so that every amount and weight is stored and
    rounded identically.
Architecture position: Kernel > DB.  MUST NOT import from models/, domain/,
    services/ or selectors/.

Invariants enforced:
    - No floats anywhere: amounts and weights are Decimal end to end.
    - round_money() is the only rounding function for presented amounts;
      stored values keep full 9-place precision.

Failure modes:
    - decimal.InvalidOperation on non-numeric input to to_decimal().
    - ValueError from validate_currency() on a malformed code.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated, Any

from sqlalchemy import BigInteger, String

from ledger_kernel.db.base import DecimalString

# Monetary amount, exact decimal
Money = Annotated[Decimal, DecimalString()]

# Stock weight, exact decimal
Weight = Annotated[Decimal, DecimalString()]

# ISO 4217 currency code (e.g., "BDT", "USD")
Currency = Annotated[str, String(3)]

# Monotonic sequence number for ordering
Sequence = Annotated[int, BigInteger]

ShortCode = Annotated[str, String(50)]
LongText = Annotated[str, String(1000)]

MONEY_DECIMAL_PLACES = 2
ZERO = Decimal("0")


def to_decimal(value: Any) -> Decimal:
    """
    Convert user or payload input to Decimal without passing through float.

    Floats are converted through ``repr`` so that 0.1 becomes Decimal("0.1"),
    not its binary expansion.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(str(value))


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = ROUND_HALF_UP,
) -> Decimal:
    """
    Round a monetary value to the given number of decimal places.

    Args:
        value: The Decimal value to round.
        decimal_places: Number of decimal places to round to.
        rounding: Rounding mode (default: ROUND_HALF_UP).

    Returns:
        Rounded Decimal value.
    """
    quantum = Decimal(1).scaleb(-decimal_places)
    return value.quantize(quantum, rounding=rounding)


def validate_currency(currency: str) -> str:
    """
    Validate and normalize a three-letter currency code.

    Returns:
        The uppercase, trimmed code.

    Raises:
        ValueError: If the code is not three ASCII letters.
    """
    if not currency or not isinstance(currency, str):
        raise ValueError(f"Invalid currency code: {currency!r}")
    normalized = currency.strip().upper()
    if len(normalized) != 3 or not normalized.isascii() or not normalized.isalpha():
        raise ValueError(f"Invalid currency code: {currency!r}")
    return normalized
