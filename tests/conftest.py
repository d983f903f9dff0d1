"""
Shared fixtures: a throwaway SQLite database, in-memory collaborators and
the mock payment gateway.
"""
import hashlib
import hmac
import json
import time
from dataclasses import replace
from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy import event

from checkout import CheckoutService
from collaborators import Actor, Listing, RoleAuthorization
from database import OrderRepository, create_session_factory, init_db
from delivery import DeliveryTracker
from errors import CollaboratorUnavailable
from gateway import MockGateway
from settlement import FundReleaseService, RefundService
from webhook_processor import WebhookProcessor

FEE_BPS = 800
WEBHOOK_SECRET = "whsec_test_secret"

SELLER = Actor(id="seller-1", roles=frozenset({"USER"}))
BUYER = Actor(id="buyer-1", roles=frozenset({"USER"}))
OTHER_BUYER = Actor(id="buyer-2", roles=frozenset({"USER"}))
ADMIN = Actor(id="admin-1", roles=frozenset({"ADMIN"}))


class FakeListingDirectory:
    def __init__(self):
        self.listings: Dict[str, Listing] = {}
        self.unavailable_calls: List[str] = []
        self.available_calls: List[str] = []
        self.fail_updates = False
        self.fail_lookups = False

    def add(self, listing_id: str, price_cents: int, seller_id: str = SELLER.id, available: bool = True) -> Listing:
        listing = Listing(id=listing_id, price_cents=price_cents, seller_id=seller_id, available=available, title=f"Item {listing_id}")
        self.listings[listing_id] = listing
        return listing

    async def get_listing(self, listing_id: str) -> Optional[Listing]:
        if self.fail_lookups:
            raise CollaboratorUnavailable("Listing service unreachable")
        return self.listings.get(listing_id)

    async def mark_unavailable(self, listing_id: str) -> None:
        self.unavailable_calls.append(listing_id)
        if self.fail_updates:
            raise CollaboratorUnavailable("Listing service unreachable")
        self.listings[listing_id] = replace(self.listings[listing_id], available=False)

    async def mark_available(self, listing_id: str) -> None:
        self.available_calls.append(listing_id)
        if self.fail_updates:
            raise CollaboratorUnavailable("Listing service unreachable")
        self.listings[listing_id] = replace(self.listings[listing_id], available=True)


class FakePayoutDirectory:
    def __init__(self, destinations: Optional[Dict[str, str]] = None):
        self.destinations = destinations or {}

    async def get_payout_destination(self, seller_id: str) -> Optional[str]:
        return self.destinations.get(seller_id)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    ts = timestamp or int(time.time())
    digest = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def checkout_completed_event(order_id: Optional[str], payment_intent: str, event_id: str = "evt_checkout_1") -> dict:
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": "cs_test_1",
            "payment_intent": payment_intent,
            "metadata": {"orderId": order_id} if order_id else {},
        }},
    }


def payment_succeeded_event(payment_intent: str, order_id: Optional[str] = None, event_id: str = "evt_pi_1") -> dict:
    return {
        "id": event_id,
        "type": "payment_intent.succeeded",
        "data": {"object": {
            "id": payment_intent,
            "metadata": {"orderId": order_id} if order_id else {},
        }},
    }


def encode(event_body: dict) -> bytes:
    return json.dumps(event_body).encode("utf-8")


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine, factory = create_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}")

    # Take the write lock at BEGIN so concurrent sessions queue instead of failing
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    await init_db(engine)
    yield factory
    await engine.dispose()


@pytest.fixture
def orders(session_factory):
    return OrderRepository(session_factory)


@pytest.fixture
def listings():
    return FakeListingDirectory()


@pytest.fixture
def payouts():
    return FakePayoutDirectory({SELLER.id: "acct_seller_1"})


@pytest.fixture
def gateway():
    return MockGateway(webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def authorization():
    return RoleAuthorization()


@pytest.fixture
def checkout_service(orders, listings, gateway, authorization):
    return CheckoutService(orders, listings, gateway, FEE_BPS, authorization)


@pytest.fixture
def webhook_processor(orders, listings, gateway):
    return WebhookProcessor(orders, listings, gateway)


@pytest.fixture
def release_service(orders, listings, payouts, authorization, gateway):
    return FundReleaseService(orders, listings, payouts, authorization, gateway, FEE_BPS)


@pytest.fixture
def refund_service(orders, authorization, gateway, listings):
    return RefundService(orders, authorization, gateway, listings)


@pytest.fixture
def delivery_tracker(orders, listings):
    return DeliveryTracker(orders, listings)


@pytest_asyncio.fixture
async def held_order(listings, checkout_service, webhook_processor):
    """An order for a 1250.00 listing whose checkout has completed."""
    listings.add("listing-1", 125000)
    result = await checkout_service.start_checkout("listing-1", BUYER.id)
    event_body = checkout_completed_event(result.order.id, "pi_live_1")
    await webhook_processor.ingest(encode(event_body), sign_payload(encode(event_body)))
    return result.order.id
