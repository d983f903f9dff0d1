"""
Payment gateway adapters.
StripeGateway talks to Stripe Checkout/Connect; MockGateway stands in for it
when no real secret key is configured (local development and tests).
Funds are always captured to the platform account first; sellers are paid
later with an explicit transfer.
"""
import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol

import stripe
from pydantic import BaseModel

from errors import GatewayError, SignatureVerificationFailed


class EventKind(str, Enum):
    CHECKOUT_COMPLETED = "CHECKOUT_COMPLETED"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    OTHER = "OTHER"


STRIPE_EVENT_KINDS = {
    "checkout.session.completed": EventKind.CHECKOUT_COMPLETED,
    "payment_intent.succeeded": EventKind.PAYMENT_CONFIRMED,
}

REFUND_REASONS = ("requested_by_customer", "duplicate", "fraudulent")


def refund_idempotency_key(trace_id: str, amount_cents: Optional[int]) -> str:
    """One key per order and amount; a retry with a different partial amount is a new request."""
    return f"refund-{trace_id}-{amount_cents or 'full'}"


class GatewayEvent(BaseModel):
    event_id: str
    type: str
    kind: EventKind
    payment_reference: Optional[str] = None
    order_id: Optional[str] = None
    session_id: Optional[str] = None


@dataclass(frozen=True)
class HoldSession:
    session_id: str
    url: str
    payment_reference: Optional[str] = None


@dataclass(frozen=True)
class TransferReceipt:
    transfer_id: str
    amount_cents: int
    destination: str


@dataclass(frozen=True)
class ReversalReceipt:
    reversal_id: str
    amount_cents: Optional[int]
    status: str


class PaymentGateway(Protocol):
    name: str

    async def open_hold_session(self, amount_cents: int, metadata: Dict[str, str], description: str = "") -> HoldSession: ...

    async def transfer(self, destination: str, amount_cents: int, trace_id: str) -> TransferReceipt: ...

    async def reverse(self, payment_reference: str, amount_cents: Optional[int], reason: str, trace_id: str) -> ReversalReceipt: ...

    def parse_event(self, payload: bytes, signature: Optional[str]) -> GatewayEvent: ...


def event_from_stripe_payload(data: Dict[str, Any]) -> GatewayEvent:
    """Map a Stripe event body onto the engine's gateway event."""
    event_type = data.get("type", "")
    obj = (data.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}
    kind = STRIPE_EVENT_KINDS.get(event_type, EventKind.OTHER)

    if kind == EventKind.CHECKOUT_COMPLETED:
        payment_reference = obj.get("payment_intent")
        session_id = obj.get("id")
    elif kind == EventKind.PAYMENT_CONFIRMED:
        payment_reference = obj.get("id")
        session_id = None
    else:
        payment_reference = None
        session_id = None

    return GatewayEvent(
        event_id=data.get("id") or f"evt_unknown_{uuid.uuid4().hex}",
        type=event_type,
        kind=kind,
        payment_reference=payment_reference,
        order_id=metadata.get("orderId"),
        session_id=session_id,
    )


def parse_stripe_event(payload: bytes, signature: Optional[str], webhook_secret: str) -> GatewayEvent:
    """Verify the Stripe-Signature header, then interpret the body."""
    if not webhook_secret:
        raise SignatureVerificationFailed("Webhook secret not configured")
    if not signature:
        raise SignatureVerificationFailed("Missing Stripe-Signature header")
    try:
        stripe.Webhook.construct_event(payload, signature, webhook_secret)
    except stripe.SignatureVerificationError as e:
        raise SignatureVerificationFailed(f"Webhook signature verification failed: {e}") from e
    except ValueError as e:
        raise SignatureVerificationFailed(f"Webhook payload is not valid JSON: {e}") from e
    return event_from_stripe_payload(json.loads(payload))


class StripeGateway:
    name = "stripe"

    def __init__(self, secret_key: str, webhook_secret: str, frontend_origin: str, currency: str = "usd"):
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._frontend_origin = frontend_origin.rstrip("/")
        self._currency = currency

    async def open_hold_session(self, amount_cents: int, metadata: Dict[str, str], description: str = "") -> HoldSession:
        # No transfer_data: funds land on the platform account
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                api_key=self._secret_key,
                payment_method_types=["card"],
                mode="payment",
                line_items=[{
                    "price_data": {
                        "currency": self._currency,
                        "product_data": {"name": description or f"Order {metadata.get('orderId')}"},
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }],
                success_url=f"{self._frontend_origin}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{self._frontend_origin}/checkout/cancel",
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
                idempotency_key=f"hold-{metadata.get('orderId')}",
            )
        except stripe.StripeError as e:
            logging.error(f"Stripe checkout session failed for order {metadata.get('orderId')}: {e}")
            raise GatewayError(f"Failed to open hold session: {e}") from e
        return HoldSession(session_id=session.id, url=session.url, payment_reference=session.payment_intent)

    async def transfer(self, destination: str, amount_cents: int, trace_id: str) -> TransferReceipt:
        try:
            transfer = await asyncio.to_thread(
                stripe.Transfer.create,
                api_key=self._secret_key,
                amount=amount_cents,
                currency=self._currency,
                destination=destination,
                transfer_group=trace_id,
                description=f"Payment for order {trace_id}",
                metadata={"orderId": trace_id, "type": "seller_payment"},
                idempotency_key=f"release-{trace_id}",
            )
        except stripe.StripeError as e:
            logging.error(f"Stripe transfer failed for order {trace_id}: {e}")
            raise GatewayError(f"Failed to release funds: {e}") from e
        return TransferReceipt(transfer_id=transfer.id, amount_cents=transfer.amount, destination=destination)

    async def reverse(self, payment_reference: str, amount_cents: Optional[int], reason: str, trace_id: str) -> ReversalReceipt:
        params: Dict[str, Any] = {
            "payment_intent": payment_reference,
            "reason": reason,
            "metadata": {"orderId": trace_id, "type": "order_refund"},
        }
        if amount_cents:
            params["amount"] = amount_cents
        try:
            refund = await asyncio.to_thread(
                stripe.Refund.create,
                api_key=self._secret_key,
                idempotency_key=refund_idempotency_key(trace_id, amount_cents),
                **params,
            )
        except stripe.StripeError as e:
            logging.error(f"Stripe refund failed for order {trace_id}: {e}")
            raise GatewayError(f"Failed to process refund: {e}") from e
        return ReversalReceipt(reversal_id=refund.id, amount_cents=refund.amount, status=refund.status or "pending")

    def parse_event(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        return parse_stripe_event(payload, signature, self._webhook_secret)


class MockGateway:
    """In-process gateway for test mode. Events still use Stripe's signature scheme."""

    name = "mock"

    def __init__(self, webhook_secret: str = "", frontend_origin: str = "http://localhost:5173"):
        self._webhook_secret = webhook_secret
        self._frontend_origin = frontend_origin.rstrip("/")
        self.sessions: Dict[str, Dict[str, str]] = {}
        self.transfers: Dict[str, TransferReceipt] = {}
        self.reversals: Dict[str, ReversalReceipt] = {}

    async def open_hold_session(self, amount_cents: int, metadata: Dict[str, str], description: str = "") -> HoldSession:
        session_id = f"cs_test_mock_{uuid.uuid4().hex[:16]}"
        payment_reference = f"pi_mock_{uuid.uuid4().hex[:16]}"
        self.sessions[session_id] = dict(metadata)
        logging.info(f"MOCK: opened hold session {session_id} for {amount_cents} cents")
        return HoldSession(
            session_id=session_id,
            url=f"{self._frontend_origin}/mock-checkout?session_id={session_id}&order_id={metadata.get('orderId')}",
            payment_reference=payment_reference,
        )

    async def transfer(self, destination: str, amount_cents: int, trace_id: str) -> TransferReceipt:
        # Same trace id returns the same transfer, like an idempotency key
        if trace_id in self.transfers:
            return self.transfers[trace_id]
        receipt = TransferReceipt(transfer_id=f"tr_mock_{uuid.uuid4().hex[:16]}", amount_cents=amount_cents, destination=destination)
        self.transfers[trace_id] = receipt
        logging.info(f"MOCK: transferred {amount_cents} cents to {destination} for order {trace_id}")
        return receipt

    async def reverse(self, payment_reference: str, amount_cents: Optional[int], reason: str, trace_id: str) -> ReversalReceipt:
        key = refund_idempotency_key(trace_id, amount_cents)
        if key in self.reversals:
            return self.reversals[key]
        receipt = ReversalReceipt(reversal_id=f"re_mock_{uuid.uuid4().hex[:16]}", amount_cents=amount_cents, status="succeeded")
        self.reversals[key] = receipt
        logging.info(f"MOCK: reversed {amount_cents or 'full amount'} on {payment_reference} for order {trace_id}")
        return receipt

    def parse_event(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        return parse_stripe_event(payload, signature, self._webhook_secret)


def build_gateway(test_mode: bool, secret_key: str, webhook_secret: str, frontend_origin: str) -> PaymentGateway:
    if test_mode:
        logging.info("Payment gateway running in test mode (mock)")
        return MockGateway(webhook_secret=webhook_secret, frontend_origin=frontend_origin)
    return StripeGateway(secret_key=secret_key, webhook_secret=webhook_secret, frontend_origin=frontend_origin)
