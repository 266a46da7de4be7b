"""
Unit tests for platform fee calculations.

Tests fee accuracy, rounding behavior, amount bounds and unit conversion.
"""

import pytest
from decimal import Decimal

from bounty_escrow.config.loader import FeeConfig
from bounty_escrow.core.errors import OutOfRange, ValidationError
from bounty_escrow.core.fees import (
    business_total,
    calculate_fees,
    creator_earnings,
    from_minor_units,
    platform_fee,
    round2,
    to_minor_units,
    validate_amount,
)


class TestFeeScenarios:
    """Worked funding examples."""

    def test_single_creator(self):
        """100.00 for one creator costs the business 105.00."""
        breakdown = calculate_fees("100.00", 1)
        assert breakdown.platform_fee == Decimal("5.00")
        assert breakdown.business_total == Decimal("105.00")
        assert breakdown.creator_earnings == Decimal("100.00")

    def test_three_creators(self):
        """50.00 for three creators costs 157.50."""
        breakdown = calculate_fees("50.00", 3)
        assert breakdown.total_bounty_amount == Decimal("150.00")
        assert breakdown.platform_fee == Decimal("7.50")
        assert breakdown.business_total == Decimal("157.50")
        assert breakdown.creator_earnings == Decimal("50.00")

    @pytest.mark.parametrize("per_creator,count", [
        ("10.00", 1), ("10.01", 7), ("33.33", 3), ("99.99", 11), ("1234.56", 2), ("10000", 1),
    ])
    def test_total_minus_fee_is_bounty_amount(self, per_creator, count):
        """The business total is exactly the bounty plus its fee."""
        breakdown = calculate_fees(per_creator, count)
        assert breakdown.business_total - breakdown.platform_fee == breakdown.total_bounty_amount


class TestRounding:
    """Test half-up rounding to cents."""

    def test_half_cent_rounds_up(self):
        assert round2(Decimal("0.005")) == Decimal("0.01")
        assert round2(Decimal("0.015")) == Decimal("0.02")
        assert round2(Decimal("0.025")) == Decimal("0.03")

    def test_fee_on_odd_amount(self):
        """5% of 10.10 is 0.505, which rounds up."""
        assert platform_fee("10.10") == Decimal("0.51")

    def test_float_input_goes_through_str(self):
        """Floats do not leak binary noise into the result."""
        assert business_total(19.99, 1) == Decimal("20.99")


class TestCustomRate:
    """Fee rate and bounds come from configuration."""

    def test_custom_rate(self):
        fees = FeeConfig(platform_fee_rate=Decimal("0.10"))
        assert platform_fee("200", fees) == Decimal("20.00")
        assert business_total("200", 2, fees) == Decimal("440.00")

    def test_zero_rate(self):
        fees = FeeConfig(platform_fee_rate=Decimal("0"))
        assert business_total("25.00", 4, fees) == Decimal("100.00")

    def test_custom_bounds(self):
        fees = FeeConfig(min_bounty_amount=Decimal("1"), max_bounty_amount=Decimal("5"))
        assert validate_amount("1", fees) == Decimal("1.00")
        with pytest.raises(OutOfRange):
            validate_amount("5.01", fees)


class TestValidation:
    """Test amount validation."""

    def test_below_minimum(self):
        with pytest.raises(OutOfRange, match="Minimum bounty amount is \\$10.00"):
            validate_amount("9.99")

    def test_above_maximum(self):
        with pytest.raises(OutOfRange, match="Maximum bounty amount is \\$10,000.00"):
            validate_amount("10000.01")

    def test_bounds_are_inclusive(self):
        assert validate_amount("10") == Decimal("10.00")
        assert validate_amount("10000") == Decimal("10000.00")

    def test_out_of_range_message_is_public(self):
        with pytest.raises(OutOfRange) as exc_info:
            validate_amount("1")
        assert exc_info.value.public_message == str(exc_info.value)

    @pytest.mark.parametrize("bad", ["abc", "", None, "NaN", "Infinity"])
    def test_non_numeric_amount(self, bad):
        with pytest.raises(ValidationError, match="Invalid bounty amount"):
            validate_amount(bad)

    @pytest.mark.parametrize("count", [0, -1, 1.5, "2", True])
    def test_invalid_creator_count(self, count):
        with pytest.raises(ValidationError, match="creator_count"):
            calculate_fees("100", count)

    def test_creator_earnings_never_reduced_by_fee(self):
        assert creator_earnings("250.00") == Decimal("250.00")


class TestMinorUnits:
    """Test conversion between dollars and cents."""

    def test_to_minor_units(self):
        assert to_minor_units(Decimal("157.50")) == 15750
        assert to_minor_units("0.01") == 1
        assert to_minor_units("10.005") == 1001

    def test_from_minor_units(self):
        assert from_minor_units(10500) == Decimal("105.00")
        assert from_minor_units(1) == Decimal("0.01")
