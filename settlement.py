"""
Settlement of held funds: release to the seller or refund to the buyer.

Neither operation has an intermediate status. The gateway call happens while
the order is still HELD (or PAID for refunds) and the status only moves once
the gateway has confirmed, so a failed or timed-out call leaves the order
exactly as it was. Every gateway call carries an idempotency key derived from
the order id.

Release and refund of one order run under the same per-order lock and read
the status inside it, so neither acts on a status the other is about to move.
"""
import asyncio
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from collaborators import Actor, Authorization, ListingDirectory, PayoutDirectory
from database import Order, OrderRepository, OrderStatus
from database.models import utcnow
from errors import (
    CollaboratorUnavailable, ConfigurationError, InvalidState, NoPaymentToRefund, NotFound,
    SellerNotOnboarded, Unauthorized, ValidationError,
)
from fees import compute_fee, validate_fee_bps
from gateway import REFUND_REASONS, PaymentGateway


@dataclass(frozen=True)
class ReleaseResult:
    order: Order
    transfer_id: str
    amount_cents: int
    platform_fee_cents: int
    seller_net_cents: int
    released_at: Optional[datetime]


@dataclass(frozen=True)
class RefundResult:
    order: Order
    refund_id: str
    amount_cents: int
    status: str
    reason: str


class OrderLocks:
    """Registry of asyncio locks keyed by order id."""

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def lock_for(self, order_id: str) -> asyncio.Lock:
        lock = self._locks.get(order_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[order_id] = lock
        return lock


# Used by services constructed without an explicit registry
_settlement_locks = OrderLocks()


async def _load(orders: OrderRepository, order_id: str) -> Order:
    order = await orders.get(order_id)
    if order is None:
        raise NotFound(f"Order {order_id} not found")
    return order


class FundReleaseService:
    def __init__(
        self,
        orders: OrderRepository,
        listings: ListingDirectory,
        payouts: PayoutDirectory,
        authorization: Authorization,
        gateway: PaymentGateway,
        fee_bps: int,
        locks: Optional[OrderLocks] = None,
    ):
        try:
            self._fee_bps = validate_fee_bps(fee_bps)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        self._orders = orders
        self._listings = listings
        self._payouts = payouts
        self._authorization = authorization
        self._gateway = gateway
        self._locks = locks or _settlement_locks

    async def release_funds(self, order_id: str, actor: Actor) -> ReleaseResult:
        if not self._authorization.is_authorized(actor, "release", order_id):
            raise Unauthorized("Only platform administrators can release funds")

        async with self._locks.lock_for(order_id):
            order = await _load(self._orders, order_id)
            if order.status != OrderStatus.HELD:
                raise InvalidState("fund release", order.status)

            listing = await self._listings.get_listing(order.listing_id)
            if listing is None:
                raise NotFound(f"Listing {order.listing_id} for order {order_id} not found")
            destination = await self._payouts.get_payout_destination(listing.seller_id)
            if not destination:
                raise SellerNotOnboarded("Seller must complete payout onboarding before funds can be released")

            # Fee rate as configured now, not as it was at checkout
            fee = compute_fee(order.amount_cents, self._fee_bps)
            transfer = await self._gateway.transfer(destination, fee.seller_net_cents, trace_id=order.id)

            released = await self._orders.update_if(
                order.id,
                {"status": OrderStatus.PAID, "released_at": utcnow()},
                statuses=[OrderStatus.HELD],
                event_type="funds_released",
                event_payload={
                    "transfer_id": transfer.transfer_id,
                    "seller_net_cents": fee.seller_net_cents,
                    "platform_fee_cents": fee.platform_fee_cents,
                    "actor_id": actor.id,
                },
            )
        if released is None:
            # Only a writer outside this process can get here
            current = await _load(self._orders, order_id)
            logging.error(
                f"Order {order_id} moved to {current.status} while transfer {transfer.transfer_id} was in flight"
            )
            raise InvalidState("fund release", current.status)

        logging.info(
            f"Released {fee.seller_net_cents} cents to {destination} for order {order_id} "
            f"(fee {fee.platform_fee_cents}, transfer {transfer.transfer_id})"
        )
        return ReleaseResult(
            order=released,
            transfer_id=transfer.transfer_id,
            amount_cents=order.amount_cents,
            platform_fee_cents=fee.platform_fee_cents,
            seller_net_cents=fee.seller_net_cents,
            released_at=released.released_at,
        )


class RefundService:
    def __init__(
        self,
        orders: OrderRepository,
        authorization: Authorization,
        gateway: PaymentGateway,
        listings: Optional[ListingDirectory] = None,
        relist_on_refund: bool = False,
        locks: Optional[OrderLocks] = None,
    ):
        self._orders = orders
        self._authorization = authorization
        self._gateway = gateway
        self._listings = listings
        self._relist_on_refund = relist_on_refund
        self._locks = locks or _settlement_locks

    async def refund(
        self,
        order_id: str,
        actor: Actor,
        amount_cents: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """Reverse the captured payment in full or in part.

        A partial refund still leaves the order REFUNDED; the reversed
        amount is kept in refunded_cents.
        """
        if not self._authorization.is_authorized(actor, "refund", order_id):
            raise Unauthorized("Only platform administrators can process refunds")

        reason = reason or "requested_by_customer"
        if reason not in REFUND_REASONS:
            raise ValidationError(f"Refund reason must be one of {', '.join(REFUND_REASONS)}")

        async with self._locks.lock_for(order_id):
            order = await _load(self._orders, order_id)
            if amount_cents is not None:
                if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
                    raise ValidationError("Refund amount must be a positive integer number of cents")
                if amount_cents > order.amount_cents:
                    raise ValidationError(f"Refund amount exceeds order total of {order.amount_cents} cents")

            if order.status == OrderStatus.PENDING:
                raise NoPaymentToRefund(f"Order {order_id} has no captured payment to refund")
            if order.status not in (OrderStatus.HELD, OrderStatus.PAID):
                raise InvalidState("refund", order.status)
            if not order.payment_reference:
                raise NoPaymentToRefund(f"No payment reference found for order {order_id}")

            reversal = await self._gateway.reverse(order.payment_reference, amount_cents, reason, trace_id=order.id)
            refunded_cents = reversal.amount_cents or amount_cents or order.amount_cents

            refunded = await self._orders.update_if(
                order.id,
                {"status": OrderStatus.REFUNDED, "refunded_cents": refunded_cents, "refunded_at": utcnow()},
                statuses=[OrderStatus.HELD, OrderStatus.PAID],
                event_type="order_refunded",
                event_payload={
                    "refund_id": reversal.reversal_id,
                    "amount_cents": refunded_cents,
                    "reason": reason,
                    "previous_status": order.status,
                    "actor_id": actor.id,
                },
            )
        if refunded is None:
            current = await _load(self._orders, order_id)
            logging.error(f"Order {order_id} moved to {current.status} while refund {reversal.reversal_id} was in flight")
            raise InvalidState("refund", current.status)

        logging.info(f"Refunded {refunded_cents} cents for order {order_id} ({reversal.reversal_id}, {reason})")

        if self._relist_on_refund and self._listings is not None:
            try:
                await self._listings.mark_available(order.listing_id)
            except CollaboratorUnavailable as e:
                logging.warning(f"Refund for order {order_id} stands but listing {order.listing_id} was not relisted: {e}")

        return RefundResult(
            order=refunded,
            refund_id=reversal.reversal_id,
            amount_cents=refunded_cents,
            status=reversal.status,
            reason=reason,
        )
