"""
Tests for platform fee math.
"""
import pytest

from fees import compute_fee


def test_listing_price_scenario():
    fee = compute_fee(125000, 800)
    assert fee.platform_fee_cents == 10000
    assert fee.seller_net_cents == 115000


@pytest.mark.parametrize("amount_cents,fee_bps", [
    (1, 800),
    (99, 800),
    (12345, 1),
    (125000, 0),
    (125000, 10000),
    (999999999, 333),
])
def test_fee_and_net_add_up(amount_cents, fee_bps):
    fee = compute_fee(amount_cents, fee_bps)
    assert fee.platform_fee_cents + fee.seller_net_cents == amount_cents
    assert 0 <= fee.platform_fee_cents <= amount_cents


def test_fractional_cents_stay_with_seller():
    # 8% of 99 cents is 7.92 cents
    assert compute_fee(99, 800) == (7, 92)


@pytest.mark.parametrize("amount_cents", [0, -100, 10.5, True])
def test_rejects_non_positive_or_non_integer_amounts(amount_cents):
    with pytest.raises(ValueError):
        compute_fee(amount_cents, 800)


@pytest.mark.parametrize("fee_bps", [-1, 10001, 8.0])
def test_rejects_out_of_range_rates(fee_bps):
    with pytest.raises(ValueError):
        compute_fee(1000, fee_bps)
