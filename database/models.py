import enum
from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, DateTime, JSON, ForeignKey, Index, text
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    HELD = "HELD"
    PAID = "PAID"
    REFUNDED = "REFUNDED"


class DeliveryStatus(str, enum.Enum):
    UNSHIPPED = "UNSHIPPED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CONFIRMED = "CONFIRMED"


# A listing can have at most one order in these states
ACTIVE_STATUSES = (OrderStatus.PENDING, OrderStatus.HELD, OrderStatus.PAID)

_ACTIVE_PREDICATE = text("status IN ('PENDING', 'HELD', 'PAID')")


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True)
    listing_id = Column(String, nullable=False, index=True)
    buyer_id = Column(String, nullable=False, index=True)
    amount_cents = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=OrderStatus.PENDING.value)
    delivery_status = Column(String, nullable=False, default=DeliveryStatus.UNSHIPPED.value)
    payment_method = Column(String, nullable=False, default="stripe")
    payment_reference = Column(String, nullable=True, index=True)
    gateway_session_id = Column(String, nullable=True)
    refunded_cents = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    released_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    shipped_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "uq_orders_listing_active",
            "listing_id",
            unique=True,
            postgresql_where=_ACTIVE_PREDICATE,
            sqlite_where=_ACTIVE_PREDICATE,
        ),
    )

    def to_dict(self) -> dict:
        def iso(value):
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "listing_id": self.listing_id,
            "buyer_id": self.buyer_id,
            "amount_cents": self.amount_cents,
            "status": self.status,
            "delivery_status": self.delivery_status,
            "payment_method": self.payment_method,
            "payment_reference": self.payment_reference,
            "refunded_cents": self.refunded_cents,
            "created_at": iso(self.created_at),
            "paid_at": iso(self.paid_at),
            "released_at": iso(self.released_at),
            "refunded_at": iso(self.refunded_at),
            "shipped_at": iso(self.shipped_at),
            "delivered_at": iso(self.delivered_at),
            "confirmed_at": iso(self.confirmed_at),
        }


class OrderEvent(Base):
    """Audit trail of applied transitions. Not needed for correctness."""

    __tablename__ = "order_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    type = Column(String, nullable=False)
    payload_json = Column(JSON, nullable=True)
    ts = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
