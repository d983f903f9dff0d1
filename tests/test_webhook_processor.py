"""
Tests for webhook-driven order transitions.
"""
import asyncio

import pytest
from unittest.mock import AsyncMock

from conftest import (
    BUYER, checkout_completed_event, encode, payment_succeeded_event, sign_payload,
)
from database import OrderStatus
from errors import CollaboratorUnavailable, SignatureVerificationFailed
from gateway import EventKind, GatewayEvent
from webhook_processor import WebhookProcessor


def completed(order_id, payment_reference="pi_1", event_id="evt_1"):
    return GatewayEvent(
        event_id=event_id, type="checkout.session.completed", kind=EventKind.CHECKOUT_COMPLETED,
        order_id=order_id, payment_reference=payment_reference, session_id="cs_1",
    )


def confirmed(payment_reference, order_id=None, event_id="evt_2"):
    return GatewayEvent(
        event_id=event_id, type="payment_intent.succeeded", kind=EventKind.PAYMENT_CONFIRMED,
        order_id=order_id, payment_reference=payment_reference,
    )


@pytest.fixture
def pending_order(listings, checkout_service):
    async def create(listing_id="listing-1", price_cents=125000):
        listings.add(listing_id, price_cents)
        result = await checkout_service.start_checkout(listing_id, BUYER.id)
        return result.order
    return create


@pytest.mark.asyncio
async def test_checkout_completed_holds_order_and_marks_listing_sold(orders, listings, webhook_processor, pending_order):
    order = await pending_order()

    outcome = await webhook_processor.handle_event(completed(order.id, "pi_live_1"))

    held = await orders.get(order.id)
    assert outcome.applied
    assert held.status == OrderStatus.HELD
    assert held.payment_reference == "pi_live_1"
    assert held.paid_at is not None
    assert listings.unavailable_calls == ["listing-1"]
    assert listings.listings["listing-1"].available is False


@pytest.mark.asyncio
async def test_duplicate_checkout_completed_is_a_noop(orders, listings, webhook_processor, pending_order):
    order = await pending_order()

    first = await webhook_processor.handle_event(completed(order.id))
    after_first = await orders.get(order.id)
    second = await webhook_processor.handle_event(completed(order.id))
    after_second = await orders.get(order.id)

    assert first.applied and not first.duplicate
    assert second.acknowledged and second.duplicate and not second.applied
    assert after_second.status == after_first.status == OrderStatus.HELD
    assert after_second.paid_at == after_first.paid_at
    assert listings.unavailable_calls == ["listing-1"]


@pytest.mark.asyncio
async def test_concurrent_duplicate_deliveries_fire_side_effect_once(orders, listings, webhook_processor, pending_order):
    order = await pending_order()

    outcomes = await asyncio.gather(*[
        webhook_processor.handle_event(completed(order.id, event_id=f"evt_{i}")) for i in range(3)
    ])

    assert sum(1 for o in outcomes if o.applied) == 1
    assert sum(1 for o in outcomes if o.duplicate) == 2
    assert listings.unavailable_calls == ["listing-1"]
    assert [e.type for e in await orders.list_events(order.id)].count("order_held") == 1


@pytest.mark.asyncio
async def test_payment_confirmed_first_promotes_when_reference_known(orders, webhook_processor, pending_order):
    order = await pending_order()
    # Mock gateway hands out the payment reference with the session
    assert order.payment_reference

    outcome = await webhook_processor.handle_event(confirmed(order.payment_reference))
    late_completion = await webhook_processor.handle_event(completed(order.id, order.payment_reference))

    assert outcome.applied
    assert late_completion.duplicate
    assert (await orders.get(order.id)).status == OrderStatus.HELD


@pytest.mark.asyncio
async def test_payment_confirmed_without_known_reference_is_a_noop(orders, webhook_processor, pending_order):
    order = await pending_order()
    # Only the completion event knows the reference here
    await orders.update_if(order.id, {"payment_reference": None}, statuses=[OrderStatus.PENDING])

    outcome = await webhook_processor.handle_event(confirmed("pi_unknown", order_id=order.id))

    assert outcome.acknowledged and not outcome.applied
    assert (await orders.get(order.id)).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_payment_confirmed_with_mismatched_reference_is_ignored(orders, webhook_processor, pending_order):
    order = await pending_order()

    outcome = await webhook_processor.handle_event(confirmed("pi_other", order_id=order.id))

    assert not outcome.applied
    assert (await orders.get(order.id)).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_payment_confirmed_after_hold_is_a_noop(orders, webhook_processor, pending_order):
    order = await pending_order()
    await webhook_processor.handle_event(completed(order.id, "pi_live_1"))

    outcome = await webhook_processor.handle_event(confirmed("pi_live_1"))

    assert outcome.duplicate
    assert outcome.status == OrderStatus.HELD


@pytest.mark.asyncio
async def test_unmatched_event_is_acknowledged(webhook_processor):
    outcome = await webhook_processor.handle_event(completed("no-such-order", "pi_ghost"))

    assert outcome.acknowledged
    assert outcome.unmatched
    assert not outcome.applied


@pytest.mark.asyncio
async def test_unhandled_event_types_are_ignored(webhook_processor):
    event = GatewayEvent(event_id="evt_x", type="charge.updated", kind=EventKind.OTHER)
    outcome = await webhook_processor.handle_event(event)
    assert outcome.acknowledged and not outcome.applied and not outcome.unmatched


@pytest.mark.asyncio
async def test_listing_failure_keeps_hold_and_schedules_reconciliation(orders, listings, gateway, checkout_service):
    reconciler = AsyncMock()
    processor = WebhookProcessor(orders, listings, gateway, reconciler)
    listings.add("listing-1", 5000)
    order = (await checkout_service.start_checkout("listing-1", BUYER.id)).order
    listings.fail_updates = True

    outcome = await processor.handle_event(completed(order.id))

    assert outcome.applied
    assert (await orders.get(order.id)).status == OrderStatus.HELD
    reconciler.schedule_mark_unavailable.assert_awaited_once_with(order.id, "listing-1")
    assert "listing_reconcile_scheduled" in [e.type for e in await orders.list_events(order.id)]


@pytest.mark.asyncio
async def test_reconciler_outage_does_not_undo_hold(orders, listings, gateway, checkout_service):
    reconciler = AsyncMock()
    reconciler.schedule_mark_unavailable.side_effect = CollaboratorUnavailable("Temporal down")
    processor = WebhookProcessor(orders, listings, gateway, reconciler)
    listings.add("listing-1", 5000)
    order = (await checkout_service.start_checkout("listing-1", BUYER.id)).order
    listings.fail_updates = True

    outcome = await processor.handle_event(completed(order.id))

    assert outcome.applied
    assert (await orders.get(order.id)).status == OrderStatus.HELD


@pytest.mark.asyncio
async def test_ingest_verifies_signature_and_applies(orders, webhook_processor, pending_order):
    order = await pending_order()
    payload = encode(checkout_completed_event(order.id, "pi_signed"))

    outcome = await webhook_processor.ingest(payload, sign_payload(payload))

    assert outcome.applied
    assert (await orders.get(order.id)).payment_reference == "pi_signed"


@pytest.mark.asyncio
async def test_ingest_correlates_payment_intent_by_reference(orders, webhook_processor, pending_order):
    order = await pending_order()
    payload = encode(payment_succeeded_event(order.payment_reference))

    outcome = await webhook_processor.ingest(payload, sign_payload(payload))

    assert outcome.applied
    assert outcome.order_id == order.id


@pytest.mark.asyncio
async def test_ingest_rejects_bad_signature_without_interpreting(orders, webhook_processor, pending_order):
    order = await pending_order()
    payload = encode(checkout_completed_event(order.id, "pi_forged"))

    with pytest.raises(SignatureVerificationFailed):
        await webhook_processor.ingest(payload, sign_payload(payload, secret="whsec_wrong"))
    with pytest.raises(SignatureVerificationFailed):
        await webhook_processor.ingest(payload, None)

    assert (await orders.get(order.id)).status == OrderStatus.PENDING
