"""
Platform fee calculations.

The platform fee is charged on top of the bounty: a business pays the
per-creator amount for every creator slot plus the fee on that total, and
each creator receives the full per-creator amount.

Amounts are ``Decimal`` major units (dollars) rounded half-up to cents.
Persisted amounts are integer minor units; ``to_minor_units`` converts.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

from bounty_escrow.config.loader import DEFAULT_CONFIG, FeeConfig
from .errors import OutOfRange, ValidationError

CENT = Decimal("0.01")

Amount = Union[Decimal, int, str]


@dataclass(frozen=True)
class FeeBreakdown:
    """Every figure a business sees before funding a bounty."""
    per_creator_amount: Decimal
    creator_count: int
    total_bounty_amount: Decimal
    platform_fee: Decimal
    business_total: Decimal
    creator_earnings: Decimal


def round2(amount: Decimal) -> Decimal:
    """Round half-up to two decimal places."""
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def _as_decimal(amount: Amount) -> Decimal:
    if isinstance(amount, float):
        # Floats carry binary noise; go through str like the config loader does
        amount = str(amount)
    return Decimal(amount)


def platform_fee(total_bounty_amount: Amount, fees: FeeConfig = DEFAULT_CONFIG.fees) -> Decimal:
    """Fee on the total bounty amount."""
    return round2(_as_decimal(total_bounty_amount) * fees.platform_fee_rate)


def business_total(
    per_creator_amount: Amount,
    creator_count: int = 1,
    fees: FeeConfig = DEFAULT_CONFIG.fees,
) -> Decimal:
    """What the business is charged for ``creator_count`` slots."""
    total_bounty_amount = _as_decimal(per_creator_amount) * creator_count
    return round2(total_bounty_amount + platform_fee(total_bounty_amount, fees))


def creator_earnings(per_creator_amount: Amount) -> Decimal:
    """What one creator receives; the fee is never deducted from it."""
    return round2(_as_decimal(per_creator_amount))


def validate_amount(per_creator_amount: Amount, fees: FeeConfig = DEFAULT_CONFIG.fees) -> Decimal:
    """Check a per-creator amount against the configured bounds.

    Args:
        per_creator_amount: Amount each creator would receive
        fees: Fee configuration holding the bounds

    Returns:
        The amount as a Decimal rounded to cents

    Raises:
        ValidationError: If the amount is not a finite number
        OutOfRange: If the amount is below the minimum or above the maximum
    """
    try:
        amount = _as_decimal(per_creator_amount)
    except (ArithmeticError, ValueError, TypeError):
        raise ValidationError(f"Invalid bounty amount: {per_creator_amount!r}")
    if not amount.is_finite():
        raise ValidationError(f"Invalid bounty amount: {per_creator_amount!r}")

    if amount < fees.min_bounty_amount:
        raise OutOfRange(f"Minimum bounty amount is ${fees.min_bounty_amount:,.2f} per creator")
    if amount > fees.max_bounty_amount:
        raise OutOfRange(f"Maximum bounty amount is ${fees.max_bounty_amount:,.2f} per creator")
    return round2(amount)


def calculate_fees(
    per_creator_amount: Amount,
    creator_count: int = 1,
    fees: FeeConfig = DEFAULT_CONFIG.fees,
) -> FeeBreakdown:
    """Validate the inputs and compute the full fee breakdown.

    Raises:
        ValidationError: If creator_count is not a positive integer
        OutOfRange: If the per-creator amount is out of bounds
    """
    if isinstance(creator_count, bool) or not isinstance(creator_count, int) or creator_count < 1:
        raise ValidationError(f"creator_count must be a positive integer, got {creator_count!r}")

    amount = validate_amount(per_creator_amount, fees)
    total_bounty_amount = amount * creator_count
    return FeeBreakdown(
        per_creator_amount=amount,
        creator_count=creator_count,
        total_bounty_amount=total_bounty_amount,
        platform_fee=platform_fee(total_bounty_amount, fees),
        business_total=business_total(amount, creator_count, fees),
        creator_earnings=creator_earnings(amount),
    )


def to_minor_units(amount: Amount) -> int:
    """Convert major units to integer cents."""
    return int(round2(_as_decimal(amount)) * 100)


def from_minor_units(cents: int) -> Decimal:
    """Convert integer cents to major units."""
    return round2(Decimal(cents) / 100)
