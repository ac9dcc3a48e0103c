"""Money and token amount conversions."""
from decimal import ROUND_DOWN, ROUND_HALF_UP, Context, Decimal, InvalidOperation
from typing import Union

from payrail.core.enums import Currency
from payrail.core.exceptions import ExternalServiceError, ValidationError

# Decimal exponent of each currency's minor unit.
MINOR_UNIT_EXPONENTS = {
    Currency.USD: 2,
    Currency.JPY: 0,
}

# Token amounts are stored as DECIMAL(20, 6).
DISPLAY_QUANTUM = Decimal("0.000001")

_TOKEN_CONTEXT = Context(prec=80)


def to_decimal(value: Union[Decimal, int, float, str]) -> Decimal:
    """Coerce a user-supplied amount to Decimal without float artefacts."""
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value))
        except InvalidOperation as e:
            raise ValidationError(f"Invalid amount: {value!r}") from e
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return amount


def to_minor_units(amount: Decimal, currency: Currency) -> int:
    """
    Convert a major-unit amount to the processor's integer minor units.

    Args:
        amount: Amount in major units (e.g. dollars)
        currency: Currency of the amount

    Returns:
        int: Amount in minor units (e.g. cents)

    Raises:
        ValidationError: If the currency has no known minor unit
    """
    try:
        exponent = MINOR_UNIT_EXPONENTS[Currency(currency)]
    except (KeyError, ValueError) as e:
        raise ValidationError(f"Unsupported currency: {currency}") from e
    scaled = to_decimal(amount).scaleb(exponent)
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int, currency: Currency) -> Decimal:
    """Convert integer minor units back to a major-unit Decimal."""
    exponent = MINOR_UNIT_EXPONENTS[Currency(currency)]
    return Decimal(amount).scaleb(-exponent)


def scale_token_value(raw_value: str, decimals: Union[int, str]) -> Decimal:
    """
    Convert a raw integer token value into a display Decimal.

    The raw value is divided by 10**decimals exactly, then narrowed to six
    places rounding down so a transfer is never reported larger than it was.

    Raises:
        ExternalServiceError: If either value is not an integer string
    """
    try:
        value = int(str(raw_value).strip())
        places = int(str(decimals).strip())
    except ValueError as e:
        raise ExternalServiceError(
            f"Cannot parse token value {raw_value!r} with {decimals!r} decimals",
            rail="CRYPTO",
            error_type="decode",
            original_error=e,
        ) from e
    exact = Decimal(value).scaleb(-places, context=_TOKEN_CONTEXT)
    return exact.quantize(DISPLAY_QUANTUM, rounding=ROUND_DOWN, context=_TOKEN_CONTEXT)
