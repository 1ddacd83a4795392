"""Read-only catalog data access used by checkout pricing."""

import uuid
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.logging import get_logger
from orderflow.database.models.product import Product

logger = get_logger(__name__)


class CatalogRepositoryError(Exception):
    """Raised when a catalog query fails."""

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.context = context


class CatalogRepository:
    """Catalog lookups executed on the caller's session and transaction."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_product(self, product_id: uuid.UUID) -> Optional[Product]:
        try:
            return await self.session.get(Product, product_id)
        except SQLAlchemyError as e:
            logger.error("Failed to fetch product", product_id=str(product_id), error=str(e))
            raise CatalogRepositoryError(
                "Failed to fetch product", product_id=str(product_id), error=str(e)
            ) from e

    async def get_products(self, product_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, Product]:
        """
        Fetch several products in one round trip.

        Args:
            product_ids: Product identifiers; duplicates are ignored

        Returns:
            Mapping of product id to product for the ids that exist
        """
        ids = list(set(product_ids))
        if not ids:
            return {}
        try:
            result = await self.session.execute(select(Product).where(Product.id.in_(ids)))
            return {product.id: product for product in result.scalars().all()}
        except SQLAlchemyError as e:
            logger.error("Failed to fetch products", product_count=len(ids), error=str(e))
            raise CatalogRepositoryError(
                "Failed to fetch products", product_count=len(ids), error=str(e)
            ) from e
