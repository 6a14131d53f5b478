"""
Module: ledger_kernel.db.types
Responsibility: Column types and helper functions for financial values.
    Centralizes precision and rounding so that every model and service uses
    identical definitions.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/, and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    - Monetary amounts are fixed-point with MONEY_DECIMAL_PLACES fractional
      digits, stored as scaled integers so every backend sums them exactly.
    - round_money() is the ONLY sanctioned rounding function for monetary
      values; it is applied at display/conversion boundaries, never between
      intermediate additions.
    - No floats anywhere.  Inputs are converted via to_decimal(), which
      refuses float.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from sqlalchemy import BigInteger
from sqlalchemy.types import TypeDecorator

MONEY_DECIMAL_PLACES = 2
RATE_DECIMAL_PLACES = 6
DEFAULT_ROUNDING = ROUND_HALF_UP

ZERO = Decimal("0")


class ScaledDecimal(TypeDecorator):
    """
    Decimal stored as an integer count of 10**-places units.

    Contract:
        process_bind_param: Decimal -> int (value * 10**places).  In strict
        mode a value with more fractional digits than ``places`` is rejected
        instead of being rounded.
        process_result_value: int -> Decimal with exactly ``places`` digits.
    """

    impl = BigInteger
    cache_ok = True

    def __init__(self, places: int, strict: bool = True):
        super().__init__()
        self.places = places
        self.strict = strict

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = to_decimal(value)
        scaled = value.scaleb(self.places)
        integral = scaled.to_integral_value(rounding=DEFAULT_ROUNDING)
        if self.strict and integral != scaled:
            raise ValueError(
                f"{value} has more than {self.places} fractional digits"
            )
        return int(integral)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(int(value)).scaleb(-self.places)


# Fixed-point monetary column type (2 fractional digits)
MoneyType = ScaledDecimal(MONEY_DECIMAL_PLACES)

# Exchange-rate column type; extra digits are rounded half-up
RateType = ScaledDecimal(RATE_DECIMAL_PLACES, strict=False)


def to_decimal(value) -> Decimal:
    """
    Convert an int, str or Decimal to Decimal.

    Raises:
        TypeError: If value is a float (binary floats are never accepted).
        ValueError: If value is not a number.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError(f"Monetary values must not be {type(value).__name__}: {value!r}")
    try:
        return Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"Not a number: {value!r}") from None


def fractional_digits(value: Decimal) -> int:
    """Number of significant fractional digits in value."""
    normalized = value.normalize()
    exponent = normalized.as_tuple().exponent
    return -exponent if isinstance(exponent, int) and exponent < 0 else 0


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to the given number of decimal places.

    This is the ONLY sanctioned rounding function for monetary values.
    """
    quantize_str = "1" if decimal_places == 0 else "0." + "0" * decimal_places
    return value.quantize(Decimal(quantize_str), rounding=rounding)
