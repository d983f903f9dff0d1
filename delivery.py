"""
Fulfillment tracking: UNSHIPPED -> SHIPPED -> DELIVERED -> CONFIRMED.

The seller ships and delivers, the buyer confirms. The delivery axis never
gates release or refund, but it only advances while the funds are captured
(HELD or PAID); a refunded order's delivery record is frozen.
"""
import logging
from typing import NamedTuple

from collaborators import Actor, ListingDirectory
from database import DeliveryStatus, Order, OrderRepository, OrderStatus
from database.models import utcnow
from errors import InvalidState, InvalidTransition, NotFound, Unauthorized


class DeliveryStep(NamedTuple):
    source: DeliveryStatus
    target: DeliveryStatus
    timestamp_field: str
    performed_by: str
    event_type: str
    action: str


SHIP = DeliveryStep(DeliveryStatus.UNSHIPPED, DeliveryStatus.SHIPPED, "shipped_at", "seller", "order_shipped", "shipping")
DELIVER = DeliveryStep(DeliveryStatus.SHIPPED, DeliveryStatus.DELIVERED, "delivered_at", "seller", "order_delivered", "delivery")
CONFIRM = DeliveryStep(DeliveryStatus.DELIVERED, DeliveryStatus.CONFIRMED, "confirmed_at", "buyer", "delivery_confirmed", "delivery confirmation")

# Funds must be captured, and not refunded, for delivery to advance
SHIPPABLE_STATUSES = (OrderStatus.HELD, OrderStatus.PAID)


class DeliveryTracker:
    def __init__(self, orders: OrderRepository, listings: ListingDirectory):
        self._orders = orders
        self._listings = listings

    async def mark_shipped(self, order_id: str, actor: Actor) -> Order:
        return await self._advance(order_id, actor, SHIP)

    async def mark_delivered(self, order_id: str, actor: Actor) -> Order:
        return await self._advance(order_id, actor, DELIVER)

    async def confirm_delivery(self, order_id: str, actor: Actor) -> Order:
        return await self._advance(order_id, actor, CONFIRM)

    async def _advance(self, order_id: str, actor: Actor, step: DeliveryStep) -> Order:
        order = await self._orders.get(order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")

        await self._check_actor(order, actor, step)

        if order.delivery_status != step.source:
            raise InvalidTransition(
                f"Cannot move delivery from {order.delivery_status} to {step.target.value}; "
                f"order must be {step.source.value} first"
            )
        if order.status not in SHIPPABLE_STATUSES:
            raise InvalidState(step.action, order.status)

        updated = await self._orders.update_if(
            order.id,
            {"delivery_status": step.target, step.timestamp_field: utcnow()},
            statuses=SHIPPABLE_STATUSES,
            delivery_statuses=[step.source],
            event_type=step.event_type,
            event_payload={"actor_id": actor.id},
        )
        if updated is None:
            current = await self._orders.get(order.id)
            if current is not None and current.status not in SHIPPABLE_STATUSES:
                raise InvalidState(step.action, current.status)
            raise InvalidTransition(
                f"Order {order_id} delivery moved to {current.delivery_status if current else 'unknown'} concurrently"
            )

        logging.info(f"Order {order_id} delivery {step.source.value} -> {step.target.value} by {actor.id}")
        return updated

    async def _check_actor(self, order: Order, actor: Actor, step: DeliveryStep) -> None:
        if step.performed_by == "buyer":
            if actor.id != order.buyer_id:
                raise Unauthorized("Only the buyer can confirm delivery")
            return

        listing = await self._listings.get_listing(order.listing_id)
        if listing is None:
            raise NotFound(f"Listing {order.listing_id} for order {order.id} not found")
        if actor.id != listing.seller_id:
            raise Unauthorized(f"Only the seller can mark an order as {step.target.value.lower()}")
