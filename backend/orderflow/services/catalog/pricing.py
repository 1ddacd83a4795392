"""
Server-side order pricing.

The pricing validator turns a list of ``(product_id, quantity)`` requests
into priced lines using the catalog as the only source of prices. Client
supplied prices are never read. It runs on the order transaction's session
so the prices it returns are the ones visible when the order commits.

Stock checks are advisory: quantities are compared against the current
stock level but nothing is reserved or decremented.
"""

import uuid
from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
from typing import Sequence

from orderflow.core.exceptions import InsufficientStockError, InvalidProductError
from orderflow.core.logging import get_logger
from orderflow.core.money import ZERO, to_money
from orderflow.services.catalog.repository import CatalogRepository

logger = get_logger(__name__)


@dataclass(frozen=True)
class LineRequest:
    """Requested product and quantity."""

    product_id: uuid.UUID
    quantity: int


@dataclass(frozen=True)
class PricedLine:
    """Order line priced from the catalog."""

    product_id: uuid.UUID
    product_name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class PricedOrder:
    """Priced lines and their subtotal."""

    lines: list[PricedLine]
    subtotal: Decimal


class PricingValidator:
    """Recompute order lines from authoritative catalog prices."""

    def __init__(self, catalog: CatalogRepository):
        self.catalog = catalog

    async def price_items(self, items: Sequence[LineRequest]) -> PricedOrder:
        """
        Price requested items.

        Args:
            items: Requested lines, in display order

        Returns:
            Priced lines with a subtotal

        Raises:
            InvalidProductError: If a product is unknown, inactive, or a
                quantity is not a positive integer
            InsufficientStockError: If tracked stock is below the total
                requested quantity for a product
        """
        if not items:
            raise InvalidProductError("Order must contain at least one item")

        requested: "OrderedDict[uuid.UUID, int]" = OrderedDict()
        for item in items:
            if item.quantity <= 0:
                raise InvalidProductError(
                    "Quantity must be a positive integer",
                    product_id=str(item.product_id),
                    quantity=item.quantity,
                )
            requested[item.product_id] = requested.get(item.product_id, 0) + item.quantity

        products = await self.catalog.get_products(requested.keys())

        for product_id, quantity in requested.items():
            product = products.get(product_id)
            if product is None:
                raise InvalidProductError("Product not found", product_id=str(product_id))
            if not product.is_active:
                raise InvalidProductError(
                    f"Product '{product.name}' is not available",
                    product_id=str(product_id),
                )
            if product.stock_quantity is not None and product.stock_quantity < quantity:
                raise InsufficientStockError(
                    f"Insufficient stock for '{product.name}'",
                    product_id=str(product_id),
                    requested=quantity,
                    available=product.stock_quantity,
                )

        lines = []
        subtotal = ZERO
        for item in items:
            product = products[item.product_id]
            unit_price = to_money(product.price)
            line_total = to_money(unit_price * item.quantity)
            lines.append(
                PricedLine(
                    product_id=product.id,
                    product_name=product.name,
                    quantity=item.quantity,
                    unit_price=unit_price,
                    line_total=line_total,
                )
            )
            subtotal += line_total

        logger.debug("Order priced", line_count=len(lines), subtotal=str(subtotal))
        return PricedOrder(lines=lines, subtotal=to_money(subtotal))
