"""
Unit tests for money and token amount conversions.
"""
from decimal import Decimal

import pytest

from payrail.core.amounts import (
    from_minor_units,
    scale_token_value,
    to_decimal,
    to_minor_units,
)
from payrail.core.enums import Currency
from payrail.core.exceptions import ExternalServiceError, ValidationError


class TestAmounts:
    """Test suite for amount conversions."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "amount,currency,expected",
        [
            (Decimal("100"), Currency.USD, 10000),
            (Decimal("10.005"), Currency.USD, 1001),
            (Decimal("0.01"), Currency.USD, 1),
            (Decimal("1500"), Currency.JPY, 1500),
        ],
    )
    def test_to_minor_units(self, amount: Decimal, currency: Currency, expected: int) -> None:
        """Test major to minor unit conversion per currency."""
        assert to_minor_units(amount, currency) == expected

    @pytest.mark.unit
    def test_from_minor_units(self) -> None:
        """Test minor units convert back exactly."""
        assert from_minor_units(12345, Currency.USD) == Decimal("123.45")
        assert from_minor_units(500, Currency.JPY) == Decimal("500")

    @pytest.mark.unit
    def test_to_decimal_avoids_float_artefacts(self) -> None:
        """Test floats are converted through their string form."""
        assert to_decimal(0.1) == Decimal("0.1")
        assert to_decimal("2.50") == Decimal("2.50")

        with pytest.raises(ValidationError):
            to_decimal("ten")

    @pytest.mark.unit
    def test_scale_token_value(self) -> None:
        """Test large raw values scale exactly and truncate to six places."""
        assert scale_token_value("1000000000000000000", 18) == Decimal("1")
        assert scale_token_value("123456789123456789123", "18") == Decimal("123.456789")
        assert scale_token_value("2500000", 6) == Decimal("2.5")
        assert scale_token_value("1", 18) == Decimal("0")

    @pytest.mark.unit
    def test_scale_token_value_rejects_garbage(self) -> None:
        """Test non-integer raw values."""
        with pytest.raises(ExternalServiceError) as exc_info:
            scale_token_value("1.5e18", 18)
        assert exc_info.value.error_type == "decode"

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "value", ["NaN", "Infinity", "-Infinity", Decimal("NaN"), float("inf")]
    )
    def test_to_decimal_rejects_non_finite(self, value: object) -> None:
        """Test NaN and infinities are not amounts."""
        with pytest.raises(ValidationError, match="Invalid amount"):
            to_decimal(value)
