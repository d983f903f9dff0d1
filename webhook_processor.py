"""
Applies asynchronous payment gateway events to orders exactly once.

Events may be redelivered or arrive out of order, so every transition is
guarded by the order's current status: a second "checkout completed" for an
order that is already HELD is acknowledged as a no-op rather than an error.
"""
import logging
import time
from dataclasses import dataclass
from typing import Optional, Protocol

from collaborators import ListingDirectory
from database import Order, OrderRepository, OrderStatus
from database.models import utcnow
from errors import CollaboratorUnavailable
from gateway import EventKind, GatewayEvent, PaymentGateway


class ListingReconciler(Protocol):
    async def schedule_mark_unavailable(self, order_id: str, listing_id: str) -> None: ...


@dataclass(frozen=True)
class WebhookOutcome:
    acknowledged: bool = True
    applied: bool = False
    duplicate: bool = False
    unmatched: bool = False
    order_id: Optional[str] = None
    status: Optional[str] = None
    detail: str = ""

    def to_dict(self) -> dict:
        return {
            "received": self.acknowledged,
            "applied": self.applied,
            "duplicate": self.duplicate,
            "unmatched": self.unmatched,
            "order_id": self.order_id,
            "status": self.status,
            "detail": self.detail,
        }


class WebhookProcessor:
    def __init__(
        self,
        orders: OrderRepository,
        listings: ListingDirectory,
        gateway: PaymentGateway,
        reconciler: Optional[ListingReconciler] = None,
    ):
        self._orders = orders
        self._listings = listings
        self._gateway = gateway
        self._reconciler = reconciler

    async def ingest(self, payload: bytes, signature: Optional[str]) -> WebhookOutcome:
        """Verify and handle a raw webhook delivery.

        Raises SignatureVerificationFailed before anything is interpreted.
        """
        event = self._gateway.parse_event(payload, signature)
        return await self.handle_event(event)

    async def handle_event(self, event: GatewayEvent) -> WebhookOutcome:
        start_time = time.time()
        logging.info(f"Processing {event.type} ({event.event_id})")

        if event.kind == EventKind.OTHER:
            logging.info(f"Unhandled event type: {event.type}")
            return WebhookOutcome(detail="ignored")

        order = await self._correlate(event)
        if order is None:
            logging.warning(
                f"Unmatched {event.type} event {event.event_id} "
                f"(order_id={event.order_id}, payment_reference={event.payment_reference})"
            )
            return WebhookOutcome(unmatched=True, detail="no matching order")

        if event.kind == EventKind.CHECKOUT_COMPLETED:
            outcome = await self._on_checkout_completed(order, event)
        else:
            outcome = await self._on_payment_confirmed(order, event)

        elapsed = time.time() - start_time
        logging.info(f"Event {event.event_id} for order {order.id}: {outcome.detail} (took {elapsed:.3f}s)")
        return outcome

    async def _correlate(self, event: GatewayEvent) -> Optional[Order]:
        if event.order_id:
            order = await self._orders.get(event.order_id)
            if order is not None:
                return order
        if event.payment_reference:
            return await self._orders.find_by_payment_reference(event.payment_reference)
        return None

    async def _on_checkout_completed(self, order: Order, event: GatewayEvent) -> WebhookOutcome:
        values = {"status": OrderStatus.HELD, "paid_at": utcnow()}
        if event.payment_reference:
            values["payment_reference"] = event.payment_reference
        return await self._promote_to_held(order, values, event)

    async def _on_payment_confirmed(self, order: Order, event: GatewayEvent) -> WebhookOutcome:
        if order.status != OrderStatus.PENDING:
            return WebhookOutcome(duplicate=True, order_id=order.id, status=order.status, detail="already applied")
        if not order.payment_reference:
            # The completion event will carry the reference and promote the order
            return WebhookOutcome(order_id=order.id, status=order.status, detail="payment reference not yet known")
        if event.payment_reference and event.payment_reference != order.payment_reference:
            logging.warning(
                f"Order {order.id} has payment reference {order.payment_reference}, "
                f"event {event.event_id} carries {event.payment_reference}"
            )
            return WebhookOutcome(order_id=order.id, status=order.status, detail="payment reference mismatch")
        return await self._promote_to_held(order, {"status": OrderStatus.HELD, "paid_at": utcnow()}, event)

    async def _promote_to_held(self, order: Order, values: dict, event: GatewayEvent) -> WebhookOutcome:
        held = await self._orders.update_if(
            order.id,
            values,
            statuses=[OrderStatus.PENDING],
            event_type="order_held",
            event_payload={"event_id": event.event_id, "event_type": event.type,
                           "payment_reference": values.get("payment_reference", order.payment_reference)},
        )
        if held is None:
            current = await self._orders.get(order.id)
            status = current.status if current else order.status
            return WebhookOutcome(duplicate=True, order_id=order.id, status=status, detail="already applied")

        logging.info(f"Order {held.id} updated to HELD with payment reference {held.payment_reference}")
        await self._mark_listing_unavailable(held)
        return WebhookOutcome(applied=True, order_id=held.id, status=held.status, detail="held")

    async def _mark_listing_unavailable(self, order: Order) -> None:
        # The HELD transition is already durable; listing state is reconciled separately on failure
        try:
            await self._listings.mark_unavailable(order.listing_id)
            return
        except CollaboratorUnavailable as e:
            logging.warning(f"Could not mark listing {order.listing_id} unavailable for order {order.id}: {e}")

        if self._reconciler is None:
            logging.error(f"Listing {order.listing_id} needs manual reconciliation (order {order.id})")
            return
        try:
            await self._reconciler.schedule_mark_unavailable(order.id, order.listing_id)
        except CollaboratorUnavailable as e:
            logging.error(f"Could not schedule reconciliation for listing {order.listing_id}: {e}")
            return
        await self._orders.record_event(order.id, "listing_reconcile_scheduled", {"listing_id": order.listing_id})
