"""
Checkout session initiation: reserve a listing for one buyer and open an
escrow hold with the payment gateway.
"""
import asyncio
import logging
import time
import uuid
import weakref
from dataclasses import dataclass
from typing import List, Optional

from collaborators import Actor, Authorization, ListingDirectory, RoleAuthorization
from database import Order, OrderRepository, OrderStatus
from errors import (
    ConfigurationError, NotAvailable, NotFound,
    SelfPurchaseForbidden, Unauthorized, ValidationError,
)
from fees import compute_fee, validate_fee_bps
from gateway import PaymentGateway


@dataclass(frozen=True)
class CheckoutResult:
    order: Order
    checkout_url: str
    session_id: str
    platform_fee_cents: int


class CheckoutService:
    def __init__(
        self,
        orders: OrderRepository,
        listings: ListingDirectory,
        gateway: PaymentGateway,
        fee_bps: int,
        authorization: Optional[Authorization] = None,
    ):
        try:
            self._fee_bps = validate_fee_bps(fee_bps)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        self._orders = orders
        self._listings = listings
        self._gateway = gateway
        self._authorization = authorization or RoleAuthorization()
        self._listing_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, listing_id: str) -> asyncio.Lock:
        lock = self._listing_locks.get(listing_id)
        if lock is None:
            lock = asyncio.Lock()
            self._listing_locks[listing_id] = lock
        return lock

    async def start_checkout(self, listing_id: str, buyer_id: str) -> CheckoutResult:
        """Create a PENDING order for the listing and open a hold session for it.

        Raises NotFound, NotAvailable, SelfPurchaseForbidden or AlreadyReserved
        when the purchase is not eligible, CollaboratorUnavailable when the
        listing service cannot be reached and GatewayError when the hold
        session cannot be opened. No order is left behind when the hold call
        fails or is cancelled.
        """
        start_time = time.time()
        if not listing_id or not buyer_id:
            raise ValidationError("listing_id and buyer_id are required")

        listing = await self._listings.get_listing(listing_id)
        if listing is None:
            raise NotFound(f"Listing {listing_id} not found")
        if not listing.available:
            raise NotAvailable(f"Listing {listing_id} is not available for purchase")
        if listing.seller_id == buyer_id:
            raise SelfPurchaseForbidden("Cannot purchase your own listing")
        if listing.price_cents <= 0:
            raise ValidationError(f"Listing {listing_id} has no valid price")

        # The unique index on active orders backs this up across processes
        async with self._lock_for(listing_id):
            order = await self._orders.create_pending(
                order_id=uuid.uuid4().hex,
                listing_id=listing_id,
                buyer_id=buyer_id,
                amount_cents=listing.price_cents,
                payment_method=self._gateway.name,
            )

        fee = compute_fee(order.amount_cents, self._fee_bps)
        metadata = {
            "orderId": order.id,
            "listingId": listing_id,
            "sellerId": listing.seller_id,
            "buyerId": buyer_id,
            "platformFee": str(fee.platform_fee_cents),
        }
        try:
            session = await self._gateway.open_hold_session(order.amount_cents, metadata, description=listing.title)
        except BaseException as e:
            await self._orders.discard_pending(order.id)
            logging.warning(f"Hold session for order {order.id} did not open ({type(e).__name__}); pending order discarded")
            raise

        values = {"gateway_session_id": session.session_id}
        if session.payment_reference:
            values["payment_reference"] = session.payment_reference
        updated = await self._orders.update_if(
            order.id,
            values,
            statuses=[OrderStatus.PENDING],
        )
        # A completion event may already have moved the order on
        if updated is None:
            updated = await self._orders.get(order.id) or order

        elapsed = time.time() - start_time
        logging.info(f"Checkout started for listing {listing_id}: order {order.id} (took {elapsed:.3f}s)")
        return CheckoutResult(
            order=updated,
            checkout_url=session.url,
            session_id=session.session_id,
            platform_fee_cents=fee.platform_fee_cents,
        )

    async def get_order(self, order_id: str, actor: Actor) -> Order:
        """Return the order to its buyer, the listing's seller or an actor with orders.read."""
        order = await self._orders.get(order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        if actor.id == order.buyer_id or self._authorization.is_authorized(actor, "read", order_id):
            return order

        listing = await self._listings.get_listing(order.listing_id)
        if listing is not None and listing.seller_id == actor.id:
            return order
        raise Unauthorized("Not authorized to view this order")

    async def list_orders_for_user(self, user_id: str) -> List[Order]:
        return await self._orders.list_for_buyer(user_id)

