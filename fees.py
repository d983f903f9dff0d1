"""Platform fee math in integer cents."""
from typing import NamedTuple

MAX_FEE_BPS = 10000


class FeeBreakdown(NamedTuple):
    platform_fee_cents: int
    seller_net_cents: int


def validate_fee_bps(fee_bps: int) -> int:
    if isinstance(fee_bps, bool) or not isinstance(fee_bps, int):
        raise ValueError(f"fee_bps must be an integer, got {fee_bps!r}")
    if not 0 <= fee_bps <= MAX_FEE_BPS:
        raise ValueError(f"fee_bps must be within [0, {MAX_FEE_BPS}], got {fee_bps}")
    return fee_bps


def compute_fee(amount_cents: int, fee_bps: int) -> FeeBreakdown:
    """Split a gross amount into the platform fee and the seller's net.

    The fee is rounded down, so any fractional cent stays with the seller.
    """
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise ValueError(f"amount_cents must be a positive integer, got {amount_cents!r}")
    validate_fee_bps(fee_bps)

    platform_fee_cents = amount_cents * fee_bps // MAX_FEE_BPS
    return FeeBreakdown(platform_fee_cents, amount_cents - platform_fee_cents)
