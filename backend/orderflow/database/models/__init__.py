"""
Database models package initialization.

Models are imported here so they register with the Base metadata for
Alembic and relationship resolution.
"""

from orderflow.database.base import Base, BaseModel, TimestampMixin, UUIDMixin
from orderflow.database.models.order import Order, OrderItem, OrderStatus, PaymentMethod
from orderflow.database.models.payment import Payment, PaymentStatus
from orderflow.database.models.product import Product
from orderflow.database.models.voucher import DiscountType, Voucher

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "UUIDMixin",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentMethod",
    "Payment",
    "PaymentStatus",
    "Product",
    "DiscountType",
    "Voucher",
]
