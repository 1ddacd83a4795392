"""
API v1 package initialization.

Exports the v1 routers mounted by the application factory.
"""

from orderflow.api.v1.orders import router as orders_router
from orderflow.api.v1.payments import router as payments_router
from orderflow.api.v1.vouchers import router as vouchers_router

__all__ = ["orders_router", "payments_router", "vouchers_router"]
