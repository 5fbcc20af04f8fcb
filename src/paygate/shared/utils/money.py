"""Minor-unit money conversions.

Amounts are carried as integers in the currency's minor unit (cents for USD,
yen for JPY, fils for KWD). Vendors that expect decimal strings get them through
``format_major`` / ``from_major_units``, which go through ``Decimal`` so the
conversion is exact in both directions.
"""

from decimal import Decimal, InvalidOperation
from typing import Union

from ..exceptions.base import ValidationError

# ISO 4217 currencies whose minor unit is not 1/100.
_ZERO_DECIMAL = {
    "BIF", "CLP", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW", "PYG",
    "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
}
_THREE_DECIMAL = {"BHD", "IQD", "JOD", "KWD", "LYD", "OMR", "TND"}


def normalize_currency(currency: str) -> str:
    """Return the upper-case ISO 4217 code or raise ValidationError."""
    code = (currency or "").strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValidationError(f"Invalid currency code: {currency!r}")
    return code


def currency_exponent(currency: str) -> int:
    """Number of decimal places of the currency's minor unit."""
    code = normalize_currency(currency)
    if code in _ZERO_DECIMAL:
        return 0
    if code in _THREE_DECIMAL:
        return 3
    return 2


def to_major_units(amount: int, currency: str) -> Decimal:
    """Convert a minor-unit integer to a Decimal in major units."""
    exponent = currency_exponent(currency)
    return Decimal(amount).scaleb(-exponent)


def from_major_units(value: Union[str, int, Decimal], currency: str) -> int:
    """Convert a major-unit value into a minor-unit integer.

    Raises ValidationError when the value carries more precision than the
    currency's minor unit, instead of silently rounding.
    """
    if isinstance(value, float):
        raise ValidationError("Float amounts are not accepted, use str or Decimal")
    try:
        major = Decimal(str(value))
    except InvalidOperation as e:
        raise ValidationError(f"Invalid amount: {value!r}") from e
    if not major.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")

    minor = major.scaleb(currency_exponent(currency))
    if minor != minor.to_integral_value():
        raise ValidationError(
            f"Amount {value} has more precision than {normalize_currency(currency)} allows"
        )
    return int(minor)


def format_major(amount: int, currency: str) -> str:
    """Render a minor-unit amount as a fixed-point major-unit string ("20.00")."""
    exponent = currency_exponent(currency)
    quantum = Decimal(1).scaleb(-exponent)
    return str(to_major_units(amount, currency).quantize(quantum))

