from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from marketplace_ledger.services.errors import ValidationFailed

HUNDRED = Decimal("100")
CENT = Decimal("0.01")


@dataclass(frozen=True)
class FeeSplit:
    platform_fee: Decimal
    donation: Decimal
    seller_payout: Decimal

    @property
    def total(self) -> Decimal:
        return self.platform_fee + self.donation + self.seller_payout


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value if value is not None else 0)


def split_shop_subtotal(
    shop_subtotal,
    donation_percentage,
    platform_fee_rate,
) -> FeeSplit:
    """Split one shop's share of an order into fee, donation and payout.

    ``donation_percentage`` is on a 0-100 scale, ``platform_fee_rate`` is a
    fraction (0.065 for 6.5%). Nothing is rounded here: the three parts add up
    to the subtotal exactly.
    """
    subtotal = to_decimal(shop_subtotal)
    percentage = to_decimal(donation_percentage)
    fee_rate = to_decimal(platform_fee_rate)

    if subtotal < 0:
        raise ValidationFailed("Shop subtotal cannot be negative")
    if percentage < 0 or percentage > HUNDRED:
        raise ValidationFailed("Donation percentage must be between 0 and 100")
    if fee_rate < 0 or fee_rate > 1:
        raise ValidationFailed("Platform fee rate must be between 0 and 1")

    donation = subtotal * percentage / HUNDRED
    platform_fee = subtotal * fee_rate
    seller_payout = subtotal - platform_fee - donation
    if seller_payout < 0:
        raise ValidationFailed("Platform fee and donation exceed the shop subtotal")

    return FeeSplit(platform_fee=platform_fee, donation=donation, seller_payout=seller_payout)


def to_cents(amount) -> int:
    """Round a ledger amount to whole cents for submission to the payout rail."""
    return int(to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP) * 100)


def format_money(amount) -> str:
    return f"{to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP):.2f}"


def money(amount) -> Decimal:
    """Quantize to cents for display and reporting; ledger rows keep full precision."""
    return to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)
