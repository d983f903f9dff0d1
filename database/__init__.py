from .connection import init_db, close_db, create_session_factory, AsyncSessionLocal, DATABASE_URL
from .models import Order, OrderEvent, OrderStatus, DeliveryStatus, ACTIVE_STATUSES, Base
from .repository import OrderRepository

__all__ = [
    "init_db", "close_db", "create_session_factory", "AsyncSessionLocal", "DATABASE_URL",
    "Order", "OrderEvent", "OrderStatus", "DeliveryStatus", "ACTIVE_STATUSES", "Base",
    "OrderRepository",
]
