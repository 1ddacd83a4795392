"""
Order API endpoints.

Checkout, order reads, customer cancellation, and operator listing, stats
and status changes.
Domain errors propagate to the application's CheckoutError handler.
"""

from datetime import datetime
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from orderflow.api.deps import (
    AdminPrincipal,
    CurrentPrincipal,
    OptionalPrincipal,
    get_order_service,
)
from orderflow.core.logging import get_logger
from orderflow.database.models.order import OrderStatus
from orderflow.schemas.orders import (
    OrderCancelRequest,
    OrderCreateRequest,
    OrderListResponse,
    OrderResponse,
    OrderStatsResponse,
    OrderStatusUpdateRequest,
)
from orderflow.services.orders.service import OrderService

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])

OrderServiceDep = Annotated[OrderService, Depends(get_order_service)]


@router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create order",
    description="Price items from the catalog, apply a voucher, and persist the order",
)
async def create_order(
    request: OrderCreateRequest,
    principal: OptionalPrincipal,
    service: OrderServiceDep,
) -> OrderResponse:
    order = await service.create_order(request, principal)
    return OrderResponse.model_validate(order)


@router.get(
    "/mine",
    response_model=OrderListResponse,
    summary="List my orders",
)
async def list_my_orders(
    principal: CurrentPrincipal,
    service: OrderServiceDep,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
) -> OrderListResponse:
    orders, total = await service.list_customer_orders(
        principal.customer_id, limit=limit, offset=offset
    )
    return OrderListResponse(
        items=[OrderResponse.model_validate(order) for order in orders],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get(
    "",
    response_model=OrderListResponse,
    summary="List orders",
    description="Operator listing with status, customer and creation-date filters",
)
async def list_orders(
    admin: AdminPrincipal,
    service: OrderServiceDep,
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    customer_id: Optional[UUID] = Query(None),
    created_from: Optional[datetime] = Query(None),
    created_to: Optional[datetime] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
) -> OrderListResponse:
    orders, total = await service.list_orders(
        status=status_filter,
        customer_id=customer_id,
        created_from=created_from,
        created_to=created_to,
        limit=limit,
        offset=offset,
    )
    return OrderListResponse(
        items=[OrderResponse.model_validate(order) for order in orders],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/stats",
    response_model=OrderStatsResponse,
    summary="Order statistics",
)
async def order_stats(
    admin: AdminPrincipal,
    service: OrderServiceDep,
    created_from: Optional[datetime] = Query(None),
    created_to: Optional[datetime] = Query(None),
) -> OrderStatsResponse:
    stats = await service.get_stats(created_from=created_from, created_to=created_to)
    return OrderStatsResponse(**stats)


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order",
)
async def get_order(
    order_id: UUID,
    principal: OptionalPrincipal,
    service: OrderServiceDep,
) -> OrderResponse:
    order = await service.get_order(order_id, principal)
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/cancel",
    response_model=OrderResponse,
    summary="Cancel order",
    description="Cancel a pending or confirmed order that has not been paid online",
)
async def cancel_order(
    order_id: UUID,
    principal: OptionalPrincipal,
    service: OrderServiceDep,
    request: OrderCancelRequest | None = None,
) -> OrderResponse:
    order = await service.cancel_order(
        order_id, principal, reason=request.reason if request else None
    )
    return OrderResponse.model_validate(order)


@router.patch(
    "/{order_id}/status",
    response_model=OrderResponse,
    summary="Update order status",
    description="Operator status change: forward only, or cancel",
)
async def update_order_status(
    order_id: UUID,
    request: OrderStatusUpdateRequest,
    admin: AdminPrincipal,
    service: OrderServiceDep,
) -> OrderResponse:
    logger.info(
        "Operator status change requested",
        order_id=str(order_id),
        target=request.status.value,
        admin_id=str(admin.customer_id),
    )
    order = await service.update_status(order_id, request.status, reason=request.reason)
    return OrderResponse.model_validate(order)
