"""
FastAPI surface of the escrow engine.
Authentication happens upstream; the caller's identity arrives in the
X-User-Id and X-User-Roles headers.
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from checkout import CheckoutService
from collaborators import Actor, HttpListingDirectory, HttpPayoutDirectory, RoleAuthorization
from database import OrderRepository, close_db, init_db
from delivery import DeliveryTracker
from errors import EscrowError, Unauthorized
from gateway import build_gateway
from reconciliation import TemporalListingReconciler
from settlement import FundReleaseService, OrderLocks, RefundService
from webhook_processor import WebhookProcessor
import settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the order tables on startup and release the pool on shutdown."""
    await init_db()
    logging.info("Order store ready")
    yield
    await close_db()


app = FastAPI(
    title="Escrow Settlement API",
    description="Order lifecycle, webhook handling and escrow settlement for the marketplace",
    version="1.0.0",
    lifespan=lifespan,
)


# Request/Response Models
class RefundRequest(BaseModel):
    amount_cents: Optional[int] = Field(default=None, gt=0)
    reason: Optional[str] = None


class OrderResponse(BaseModel):
    success: bool = True
    order: dict


@dataclass
class EscrowEngine:
    checkout: CheckoutService
    webhooks: WebhookProcessor
    release: FundReleaseService
    refunds: RefundService
    delivery: DeliveryTracker


def build_engine() -> EscrowEngine:
    orders = OrderRepository()
    listings = HttpListingDirectory(settings.LISTING_SERVICE_URL)
    payouts = HttpPayoutDirectory(settings.USER_SERVICE_URL)
    authorization = RoleAuthorization()
    gateway = build_gateway(
        settings.GATEWAY_TEST_MODE,
        settings.STRIPE_SECRET_KEY,
        settings.STRIPE_WEBHOOK_SECRET,
        settings.FRONTEND_ORIGIN,
    )
    reconciler = TemporalListingReconciler(
        settings.TEMPORAL_ADDRESS, settings.TEMPORAL_NAMESPACE, settings.LISTING_TASK_QUEUE
    )
    settlement_locks = OrderLocks()
    return EscrowEngine(
        checkout=CheckoutService(orders, listings, gateway, settings.PLATFORM_FEE_BPS, authorization),
        webhooks=WebhookProcessor(orders, listings, gateway, reconciler),
        release=FundReleaseService(orders, listings, payouts, authorization, gateway, settings.PLATFORM_FEE_BPS, settlement_locks),
        refunds=RefundService(orders, authorization, gateway, listings, settings.RELIST_ON_REFUND, settlement_locks),
        delivery=DeliveryTracker(orders, listings),
    )


# Cached engine
_engine: Optional[EscrowEngine] = None


def get_engine() -> EscrowEngine:
    """Get or create the escrow engine."""
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def get_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_roles: Optional[str] = Header(None),
) -> Actor:
    if not x_user_id:
        raise Unauthorized("Authentication required")
    roles = frozenset(r.strip().upper() for r in (x_user_roles or "").split(",") if r.strip())
    return Actor(id=x_user_id, roles=roles)


@app.exception_handler(EscrowError)
async def escrow_error_handler(request: Request, exc: EscrowError):
    if exc.retryable:
        logging.warning(f"{request.method} {request.url.path} failed (retryable): {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.message,
            "code": type(exc).__name__,
            "retryable": exc.retryable,
        },
    )


@app.get("/health")
async def health():
    return {"ok": True}


@app.post("/orders/{listing_id}/checkout")
async def start_checkout(listing_id: str, actor: Actor = Depends(get_actor), engine: EscrowEngine = Depends(get_engine)):
    """Create a pending order and a gateway hold session for the listing."""
    result = await engine.checkout.start_checkout(listing_id, actor.id)
    return {
        "success": True,
        "checkoutUrl": result.checkout_url,
        "sessionId": result.session_id,
        "order": {
            "id": result.order.id,
            "status": result.order.status,
            "amountCents": result.order.amount_cents,
            "platformFee": result.platform_fee_cents,
        },
    }


@app.get("/orders/user/me")
async def my_orders(actor: Actor = Depends(get_actor), engine: EscrowEngine = Depends(get_engine)):
    orders = await engine.checkout.list_orders_for_user(actor.id)
    return {"success": True, "orders": {"asBuyer": [o.to_dict() for o in orders]}}


@app.get("/orders/{order_id}", response_model=OrderResponse)
async def get_order(order_id: str, actor: Actor = Depends(get_actor), engine: EscrowEngine = Depends(get_engine)):
    order = await engine.checkout.get_order(order_id, actor)
    return OrderResponse(order=order.to_dict())


@app.post("/orders/{order_id}/release-funds")
async def release_funds(order_id: str, actor: Actor = Depends(get_actor), engine: EscrowEngine = Depends(get_engine)):
    result = await engine.release.release_funds(order_id, actor)
    return {
        "success": True,
        "message": "Funds released successfully",
        "transfer": {
            "transferId": result.transfer_id,
            "sellerAmount": result.seller_net_cents,
            "platformFee": result.platform_fee_cents,
            "totalAmount": result.amount_cents,
            "releasedAt": result.released_at.isoformat() if result.released_at else None,
        },
        "order": result.order.to_dict(),
    }


@app.post("/orders/{order_id}/refund")
async def refund(
    order_id: str,
    request: RefundRequest,
    actor: Actor = Depends(get_actor),
    engine: EscrowEngine = Depends(get_engine),
):
    result = await engine.refunds.refund(order_id, actor, request.amount_cents, request.reason)
    return {
        "success": True,
        "message": "Refund processed successfully",
        "refund": {"refundId": result.refund_id, "amount": result.amount_cents, "status": result.status},
        "order": result.order.to_dict(),
    }


@app.post("/orders/{order_id}/mark-shipped", response_model=OrderResponse)
async def mark_shipped(order_id: str, actor: Actor = Depends(get_actor), engine: EscrowEngine = Depends(get_engine)):
    order = await engine.delivery.mark_shipped(order_id, actor)
    return OrderResponse(order=order.to_dict())


@app.post("/orders/{order_id}/mark-delivered", response_model=OrderResponse)
async def mark_delivered(order_id: str, actor: Actor = Depends(get_actor), engine: EscrowEngine = Depends(get_engine)):
    order = await engine.delivery.mark_delivered(order_id, actor)
    return OrderResponse(order=order.to_dict())


@app.post("/orders/{order_id}/confirm-delivery", response_model=OrderResponse)
async def confirm_delivery(order_id: str, actor: Actor = Depends(get_actor), engine: EscrowEngine = Depends(get_engine)):
    order = await engine.delivery.confirm_delivery(order_id, actor)
    return OrderResponse(order=order.to_dict())


@app.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    engine: EscrowEngine = Depends(get_engine),
):
    """Gateway events; the raw body is needed for signature verification."""
    payload = await request.body()
    outcome = await engine.webhooks.ingest(payload, stripe_signature)
    return outcome.to_dict()


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')
    uvicorn.run(app, host="0.0.0.0", port=8000)
