"""
Order persistence boundary.
All mutations go through conditional updates keyed by order id and the
expected current status, so concurrent writers can never both win.
"""
import enum
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from errors import AlreadyReserved
from .connection import AsyncSessionLocal
from .models import ACTIVE_STATUSES, DeliveryStatus, Order, OrderEvent, OrderStatus

# Reduce SQLAlchemy logging noise - show errors but not all SQL
logging.getLogger("sqlalchemy.engine").setLevel(logging.ERROR)
logging.getLogger("sqlalchemy.pool").setLevel(logging.ERROR)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, enum.Enum) else value


class OrderRepository:
    def __init__(self, session_factory=None):
        self._session_factory = session_factory or AsyncSessionLocal

    async def get(self, order_id: str) -> Optional[Order]:
        async with self._session_factory() as session:
            return await session.get(Order, order_id)

    async def find_by_payment_reference(self, payment_reference: str) -> Optional[Order]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Order).where(Order.payment_reference == payment_reference)
            )
            return result.scalars().first()

    async def find_active_for_listing(self, listing_id: str) -> Optional[Order]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Order).where(
                    Order.listing_id == listing_id,
                    Order.status.in_([s.value for s in ACTIVE_STATUSES]),
                )
            )
            return result.scalars().first()

    async def list_for_buyer(self, buyer_id: str) -> List[Order]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Order).where(Order.buyer_id == buyer_id).order_by(Order.created_at.desc())
            )
            return list(result.scalars().all())

    async def create_pending(
        self,
        order_id: str,
        listing_id: str,
        buyer_id: str,
        amount_cents: int,
        payment_method: str,
    ) -> Order:
        """Insert a PENDING order, failing with AlreadyReserved if the listing has an active one."""
        async with self._session_factory() as session:
            existing = await session.execute(
                select(Order.id).where(
                    Order.listing_id == listing_id,
                    Order.status.in_([s.value for s in ACTIVE_STATUSES]),
                )
            )
            if existing.scalar():
                raise AlreadyReserved(f"Listing {listing_id} is already being purchased or has been sold")

            order = Order(
                id=order_id,
                listing_id=listing_id,
                buyer_id=buyer_id,
                amount_cents=amount_cents,
                status=OrderStatus.PENDING.value,
                delivery_status=DeliveryStatus.UNSHIPPED.value,
                payment_method=payment_method,
            )
            session.add(order)
            try:
                await session.flush()
                session.add(OrderEvent(
                    order_id=order_id,
                    type="order_created",
                    payload_json={"listing_id": listing_id, "amount_cents": amount_cents},
                ))
                await session.commit()
            except IntegrityError:
                # Lost the race on uq_orders_listing_active
                await session.rollback()
                logging.info(f"Concurrent checkout on listing {listing_id} lost to another order")
                raise AlreadyReserved(f"Listing {listing_id} is already being purchased or has been sold")
            return order

    async def discard_pending(self, order_id: str) -> bool:
        """Remove a PENDING order whose hold session was never opened."""
        async with self._session_factory() as session:
            await session.execute(delete(OrderEvent).where(OrderEvent.order_id == order_id))
            result = await session.execute(
                delete(Order).where(
                    Order.id == order_id,
                    Order.status == OrderStatus.PENDING.value,
                    Order.payment_reference.is_(None),
                )
            )
            if result.rowcount != 1:
                await session.rollback()
                return False
            await session.commit()
            return True

    async def update_if(
        self,
        order_id: str,
        values: Dict[str, Any],
        *,
        statuses: Optional[Iterable[OrderStatus]] = None,
        delivery_statuses: Optional[Iterable[DeliveryStatus]] = None,
        event_type: Optional[str] = None,
        event_payload: Optional[Dict[str, Any]] = None,
    ) -> Optional[Order]:
        """Apply values only if the order is currently in one of the expected states.

        Returns the updated order, or None if the guard did not match (the
        order is missing or another writer already moved it).
        """
        stmt = update(Order).where(Order.id == order_id)
        if statuses is not None:
            stmt = stmt.where(Order.status.in_([_plain(s) for s in statuses]))
        if delivery_statuses is not None:
            stmt = stmt.where(Order.delivery_status.in_([_plain(s) for s in delivery_statuses]))
        stmt = stmt.values({key: _plain(value) for key, value in values.items()})
        stmt = stmt.execution_options(synchronize_session=False)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                await session.rollback()
                return None
            if event_type:
                session.add(OrderEvent(order_id=order_id, type=event_type, payload_json=event_payload))
            await session.commit()
            return await session.get(Order, order_id)

    async def record_event(self, order_id: str, event_type: str, payload: Optional[Dict[str, Any]] = None) -> None:
        async with self._session_factory() as session:
            session.add(OrderEvent(order_id=order_id, type=event_type, payload_json=payload))
            await session.commit()

    async def list_events(self, order_id: str) -> List[OrderEvent]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(OrderEvent).where(OrderEvent.order_id == order_id).order_by(OrderEvent.id)
            )
            return list(result.scalars().all())
