"""
Tests for the order repository's conditional updates and active-order index.
"""
import pytest
from sqlalchemy.exc import IntegrityError

from database import Order, OrderStatus
from errors import AlreadyReserved


@pytest.mark.asyncio
async def test_create_pending_sets_initial_state(orders):
    order = await orders.create_pending("o-1", "listing-1", "buyer-1", 5000, "mock")

    stored = await orders.get("o-1")
    assert stored.status == OrderStatus.PENDING
    assert stored.delivery_status == "UNSHIPPED"
    assert stored.amount_cents == 5000
    assert stored.created_at is not None
    assert order.paid_at is None
    assert [e.type for e in await orders.list_events("o-1")] == ["order_created"]


@pytest.mark.asyncio
async def test_second_active_order_for_listing_is_rejected(orders):
    await orders.create_pending("o-1", "listing-1", "buyer-1", 5000, "mock")

    with pytest.raises(AlreadyReserved):
        await orders.create_pending("o-2", "listing-1", "buyer-2", 5000, "mock")


@pytest.mark.asyncio
async def test_unique_index_blocks_active_duplicates(session_factory):
    async with session_factory() as session:
        session.add(Order(id="o-1", listing_id="listing-1", buyer_id="b1", amount_cents=100, status="HELD"))
        await session.commit()

    async with session_factory() as session:
        session.add(Order(id="o-2", listing_id="listing-1", buyer_id="b2", amount_cents=100, status="PENDING"))
        with pytest.raises(IntegrityError):
            await session.commit()


@pytest.mark.asyncio
async def test_refunded_order_does_not_block_new_purchase(orders):
    await orders.create_pending("o-1", "listing-1", "buyer-1", 5000, "mock")
    await orders.update_if("o-1", {"status": OrderStatus.REFUNDED}, statuses=[OrderStatus.PENDING])

    order = await orders.create_pending("o-2", "listing-1", "buyer-2", 5000, "mock")
    assert order.status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_update_if_only_applies_from_expected_status(orders):
    await orders.create_pending("o-1", "listing-1", "buyer-1", 5000, "mock")

    held = await orders.update_if("o-1", {"status": OrderStatus.HELD}, statuses=[OrderStatus.PENDING], event_type="order_held")
    again = await orders.update_if("o-1", {"status": OrderStatus.HELD}, statuses=[OrderStatus.PENDING], event_type="order_held")

    assert held.status == OrderStatus.HELD
    assert again is None
    assert [e.type for e in await orders.list_events("o-1")] == ["order_created", "order_held"]


@pytest.mark.asyncio
async def test_update_if_missing_order_returns_none(orders):
    assert await orders.update_if("missing", {"status": OrderStatus.HELD}, statuses=[OrderStatus.PENDING]) is None


@pytest.mark.asyncio
async def test_discard_pending_only_removes_unpaid_orders(orders):
    await orders.create_pending("o-1", "listing-1", "buyer-1", 5000, "mock")
    await orders.create_pending("o-2", "listing-2", "buyer-1", 5000, "mock")
    await orders.update_if("o-2", {"status": OrderStatus.HELD, "payment_reference": "pi_1"}, statuses=[OrderStatus.PENDING])

    assert await orders.discard_pending("o-1") is True
    assert await orders.discard_pending("o-2") is False
    assert await orders.get("o-1") is None
    assert (await orders.get("o-2")).status == OrderStatus.HELD


@pytest.mark.asyncio
async def test_find_by_payment_reference(orders):
    await orders.create_pending("o-1", "listing-1", "buyer-1", 5000, "mock")
    await orders.update_if("o-1", {"payment_reference": "pi_abc"}, statuses=[OrderStatus.PENDING])

    assert (await orders.find_by_payment_reference("pi_abc")).id == "o-1"
    assert await orders.find_by_payment_reference("pi_other") is None
