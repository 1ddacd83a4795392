"""
FastAPI dependencies for database sessions, services, and authentication.

The database handle and gateway client are created once in the application
lifespan and stored on ``app.state``; the dependencies here read them from
the request so tests can override them with ``app.dependency_overrides``.
"""

from typing import Annotated, AsyncGenerator, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.config import Settings, get_settings
from orderflow.core.logging import get_logger, set_user_id
from orderflow.core.security import Principal, TokenError, decode_access_token
from orderflow.database.connection import Database
from orderflow.services.orders.service import OrderService
from orderflow.services.payments.gateway import GatewayClient
from orderflow.services.payments.service import PaymentService
from orderflow.services.vouchers.service import VoucherService

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a session from the application's database handle.

    Yields:
        Async database session
    """
    database: Database = request.app.state.database
    async with database.session() as session:
        yield session


def get_gateway_client(request: Request) -> GatewayClient:
    return request.app.state.gateway_client


DatabaseSession = Annotated[AsyncSession, Depends(get_db)]
AppSettings = Annotated[Settings, Depends(get_settings)]


async def get_optional_principal(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    settings: AppSettings,
) -> Optional[Principal]:
    """
    Decode the bearer token if one was sent.

    Returns:
        Principal, or None for guests

    Raises:
        HTTPException: 401 if a token was sent and is invalid
    """
    if credentials is None:
        return None
    try:
        principal = decode_access_token(credentials.credentials, settings)
    except TokenError as e:
        logger.warning("Authentication failed", code=e.code)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    set_user_id(str(principal.customer_id))
    return principal


async def get_current_principal(
    principal: Annotated[Optional[Principal], Depends(get_optional_principal)],
) -> Principal:
    if principal is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal


async def require_admin(
    principal: Annotated[Principal, Depends(get_current_principal)],
) -> Principal:
    if not principal.is_admin:
        logger.warning("Admin access denied", customer_id=str(principal.customer_id))
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return principal


OptionalPrincipal = Annotated[Optional[Principal], Depends(get_optional_principal)]
CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]
AdminPrincipal = Annotated[Principal, Depends(require_admin)]


def get_order_service(db: DatabaseSession, settings: AppSettings) -> OrderService:
    return OrderService(db, settings=settings)


def get_payment_service(
    db: DatabaseSession,
    settings: AppSettings,
    gateway: Annotated[GatewayClient, Depends(get_gateway_client)],
) -> PaymentService:
    return PaymentService(db, gateway, settings=settings)


def get_voucher_service(db: DatabaseSession, settings: AppSettings) -> VoucherService:
    return VoucherService(db, settings=settings)
