"""Catalog lookups and server-side order pricing."""

from orderflow.services.catalog.pricing import (
    LineRequest,
    PricedLine,
    PricedOrder,
    PricingValidator,
)
from orderflow.services.catalog.repository import CatalogRepository

__all__ = [
    "CatalogRepository",
    "LineRequest",
    "PricedLine",
    "PricedOrder",
    "PricingValidator",
]
