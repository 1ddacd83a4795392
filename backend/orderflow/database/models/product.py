"""
Product model read by the pricing validator.

Catalog CRUD is owned by a separate service; this module maps only the
columns the checkout pipeline needs to price an order.
"""

from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from orderflow.database.base import BaseModel


class Product(BaseModel):
    """
    Catalog product.

    Attributes:
        name: Display name copied onto order lines
        price: Current unit price
        is_active: Whether the product can be ordered
        stock_quantity: Units on hand, or None when stock is not tracked
    """

    __tablename__ = "products"

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Product display name",
    )

    price: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
        comment="Current unit price",
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        index=True,
        comment="Whether the product is currently sold",
    )

    stock_quantity: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Units on hand; NULL means stock is not tracked",
    )

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_products_price_non_negative"),
        CheckConstraint(
            "stock_quantity IS NULL OR stock_quantity >= 0",
            name="ck_products_stock_non_negative",
        ),
        {"comment": "Catalog products available for checkout"},
    )

    @property
    def tracks_stock(self) -> bool:
        return self.stock_quantity is not None
