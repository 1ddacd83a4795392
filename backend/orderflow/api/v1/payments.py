"""
Payment API endpoints.

The callback endpoint is public and always answers HTTP 200: the gateway
retries on any other status, and duplicate or unmatched callbacks are
absorbed and logged here rather than bounced back.
"""

from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import ValidationError

from orderflow.api.deps import OptionalPrincipal, get_payment_service
from orderflow.core.exceptions import CheckoutError
from orderflow.core.logging import get_logger
from orderflow.database.models.order import Order
from orderflow.database.models.payment import Payment
from orderflow.schemas.payments import (
    CallbackAcknowledgement,
    GatewayCallback,
    PaymentInitiateRequest,
    PaymentInitiateResponse,
    PaymentStatusResponse,
)
from orderflow.services.payments.service import PaymentService

logger = get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])

PaymentServiceDep = Annotated[PaymentService, Depends(get_payment_service)]


def _status_response(payment: Payment, order: Order) -> PaymentStatusResponse:
    return PaymentStatusResponse(
        payment_id=payment.id,
        order_id=order.id,
        order_status=order.status,
        status=payment.status,
        method=payment.method,
        amount=payment.amount,
        currency=payment.currency,
        payment_url=payment.payment_url,
        gateway_reference=payment.gateway_reference,
        needs_review=payment.needs_review,
        created_at=payment.created_at,
        updated_at=payment.updated_at,
        completed_at=payment.completed_at,
    )


@router.post(
    "/initiate",
    response_model=PaymentInitiateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start gateway payment",
    description="Create or resume a hosted payment page for a pending gateway order",
)
async def initiate_payment(
    request: PaymentInitiateRequest,
    principal: OptionalPrincipal,
    service: PaymentServiceDep,
) -> PaymentInitiateResponse:
    result = await service.initiate_payment(
        order_id=request.order_id,
        amount=request.amount,
        principal=principal,
        customer_name=request.customer_name,
        customer_email=request.customer_email,
        customer_mobile=request.customer_mobile,
    )
    return PaymentInitiateResponse(
        payment_id=result.payment.id,
        order_id=result.payment.order_id,
        payment_url=result.payment_url,
        product_code=result.product_code,
        status=result.payment.status,
    )


@router.post(
    "/callback",
    response_model=CallbackAcknowledgement,
    status_code=status.HTTP_200_OK,
    summary="Gateway callback",
    description="Server-to-server payment notification; always acknowledged",
)
async def payment_callback(
    request: Request,
    service: PaymentServiceDep,
) -> CallbackAcknowledgement:
    try:
        payload: Any = await request.json()
    except ValueError:
        logger.error("Gateway callback body is not JSON")
        return CallbackAcknowledgement(success=False, message="Invalid payload")

    if not isinstance(payload, dict):
        logger.error("Gateway callback body is not an object", body_type=type(payload).__name__)
        return CallbackAcknowledgement(success=False, message="Invalid payload")

    try:
        callback = GatewayCallback.model_validate(payload)
    except ValidationError as e:
        logger.error("Gateway callback failed validation", errors=e.errors())
        return CallbackAcknowledgement(success=False, message="Invalid payload")

    try:
        outcome = await service.handle_callback(callback, raw_payload=payload)
    except CheckoutError as e:
        logger.warning(
            "Gateway callback not applied",
            error_code=e.code,
            reason=e.message,
            context=e.context,
        )
        return CallbackAcknowledgement(success=False, message=e.message)
    except Exception:
        logger.exception("Gateway callback processing failed")
        return CallbackAcknowledgement(success=False, message="Callback received")

    return CallbackAcknowledgement(
        success=True,
        message=outcome.message,
        payment_id=outcome.payment.id,
        order_id=outcome.payment.order_id,
        status=outcome.payment.status,
        matched_by=outcome.strategy,
    )


@router.get(
    "/redirect",
    response_model=PaymentStatusResponse,
    summary="Payment status after hosted page redirect",
)
async def payment_redirect(
    service: PaymentServiceDep,
    customer_reference: str = Query(..., alias="customerReference", min_length=1),
) -> PaymentStatusResponse:
    payment, order = await service.get_by_customer_reference(customer_reference)
    return _status_response(payment, order)


@router.get(
    "/order/{order_id}",
    response_model=PaymentStatusResponse,
    summary="Payment status by order",
)
async def get_order_payment_status(
    order_id: UUID,
    principal: OptionalPrincipal,
    service: PaymentServiceDep,
) -> PaymentStatusResponse:
    payment, order = await service.get_order_payment_status(order_id, principal)
    return _status_response(payment, order)


@router.get(
    "/{payment_id}",
    response_model=PaymentStatusResponse,
    summary="Payment status",
)
async def get_payment_status(
    payment_id: UUID,
    principal: OptionalPrincipal,
    service: PaymentServiceDep,
) -> PaymentStatusResponse:
    payment, order = await service.get_payment_status(payment_id, principal)
    return _status_response(payment, order)


@router.post(
    "/{payment_id}/cancel",
    response_model=PaymentStatusResponse,
    summary="Cancel pending payment",
)
async def cancel_payment(
    payment_id: UUID,
    principal: OptionalPrincipal,
    service: PaymentServiceDep,
) -> PaymentStatusResponse:
    payment = await service.cancel_payment(payment_id, principal)
    payment, order = await service.get_payment_status(payment.id, principal)
    return _status_response(payment, order)
