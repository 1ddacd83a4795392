"""
Payment service orchestrating the hosted gateway and reconciliation.

This module implements the PaymentService class for starting gateway
payments, processing gateway callbacks, answering payment status reads (each
of which runs the pending-payment expirer first), and customer cancels.
"""

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.config import Settings, get_settings
from orderflow.core.exceptions import (
    AlreadyPaidError,
    AmountMismatchError,
    GatewayTimeoutError,
    InvalidCallbackSignatureError,
    InvalidStatusTransitionError,
    OrderNotFoundError,
    OrderNotPayableError,
    PaymentNotFoundError,
)
from orderflow.core.logging import get_logger
from orderflow.core.money import to_money
from orderflow.core.security import Principal
from orderflow.database.models.order import Order, OrderStatus, PaymentMethod
from orderflow.database.models.payment import Payment, PaymentStatus
from orderflow.schemas.payments import GatewayCallback
from orderflow.services.orders.repository import OrderRepository
from orderflow.services.orders.service import ensure_order_access
from orderflow.services.payments.expiry import StatusExpirer
from orderflow.services.payments.gateway import GatewayClient, GatewayPaymentRequest
from orderflow.services.payments.matching import (
    CallbackMatcher,
    encode_correlation_token,
    parse_correlation_token,
    search_criteria,
)
from orderflow.services.payments.reconciler import CallbackReconciler, map_gateway_status
from orderflow.services.payments.repository import PaymentRepository
from orderflow.services.payments.signature import SignatureVerdict, check_signature

logger = get_logger(__name__)

PAID_ORDER_STATUSES = (OrderStatus.CONFIRMED, OrderStatus.SHIPPED, OrderStatus.DELIVERED)


@dataclass(frozen=True)
class PaymentInitiation:
    payment: Payment
    payment_url: str
    product_code: Optional[str]


@dataclass(frozen=True)
class CallbackOutcome:
    """Result of processing one gateway callback."""

    payment: Payment
    strategy: str
    applied: bool
    message: str


class PaymentService:
    """
    Payment service for gateway payments.

    Attributes:
        session: Session whose transaction this service commits
        gateway: Hosted payment gateway client
        repository: Payment repository
        reconciler: Status transition and side-effect handler
        expirer: Lazy pending-payment expirer
    """

    def __init__(
        self,
        session: AsyncSession,
        gateway: GatewayClient,
        settings: Optional[Settings] = None,
        repository: Optional[PaymentRepository] = None,
        orders: Optional[OrderRepository] = None,
        reconciler: Optional[CallbackReconciler] = None,
    ):
        """
        Initialize payment service.

        Args:
            session: Async database session
            gateway: Gateway client
            settings: Application settings (defaults to cached settings)
            repository: Payment repository (built from session if None)
            orders: Order repository (built from session if None)
            reconciler: Reconciler (built from session if None)
        """
        self.session = session
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.repository = repository or PaymentRepository(session)
        self.orders = orders or OrderRepository(session)
        self.reconciler = reconciler or CallbackReconciler(
            session, payments=self.repository, orders=self.orders
        )
        self.expirer = StatusExpirer(
            self.reconciler,
            timeout_minutes=self.settings.pending_payment_timeout_minutes,
            orders=self.orders,
        )
        self.matcher = CallbackMatcher(self.repository)

    # ------------------------------------------------------------------
    # Initiation
    # ------------------------------------------------------------------

    async def initiate_payment(
        self,
        order_id: uuid.UUID,
        amount: Decimal,
        principal: Optional[Principal] = None,
        customer_name: Optional[str] = None,
        customer_email: Optional[str] = None,
        customer_mobile: Optional[str] = None,
    ) -> PaymentInitiation:
        """
        Start or resume a hosted gateway payment for an order.

        The payment row is committed before the gateway is called so that a
        gateway timeout leaves a pending payment behind for the expirer.

        Args:
            order_id: Order to pay
            amount: Amount the client expects; must equal the order total
            principal: Authenticated caller, None for guests
            customer_name: Contact name override
            customer_email: Contact email override
            customer_mobile: Contact phone override

        Returns:
            Payment row, hosted page URL, and gateway product code

        Raises:
            OrderNotFoundError: Unknown order or not visible to the caller
            OrderNotPayableError: Order is not a pending gateway order
            AlreadyPaidError: Order already has a completed payment
            AmountMismatchError: Amount differs from the order total
            GatewayError: The gateway rejected or failed the request
        """
        order = await self.orders.get_order(order_id, lock=True)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        ensure_order_access(order, principal)

        if order.payment_method != PaymentMethod.GATEWAY:
            raise OrderNotPayableError(
                "Order is not paid through the payment gateway",
                order_id=str(order.id),
                payment_method=order.payment_method.value,
            )

        if order.is_paid_by_gateway or order.status in PAID_ORDER_STATUSES:
            raise AlreadyPaidError("Order is already paid", order_id=str(order.id))

        if order.status != OrderStatus.PENDING:
            raise OrderNotPayableError(
                "Order cannot be paid in its current status",
                order_id=str(order.id),
                status=order.status.value,
            )

        requested = to_money(amount)
        if requested != to_money(order.total):
            logger.warning(
                "Payment amount does not match order total",
                order_id=str(order.id),
                requested=str(requested),
                total=str(order.total),
            )
            raise AmountMismatchError(
                "Payment amount does not match order total",
                order_id=str(order.id),
                requested=str(requested),
                total=str(order.total),
            )

        if await self.expirer.check_order(order):
            await self.session.commit()
            raise OrderNotPayableError(
                "Payment window expired and the order was cancelled",
                order_id=str(order.id),
            )

        payment = await self.repository.find_active_for_order(order.id, PaymentMethod.GATEWAY)

        if payment is None:
            payment_id = uuid.uuid4()
            payment = Payment(
                id=payment_id,
                order_id=order.id,
                method=PaymentMethod.GATEWAY,
                amount=to_money(order.total),
                currency=self.settings.gateway_currency,
                status=PaymentStatus.PENDING,
                correlation_token=encode_correlation_token(
                    order.id, payment_id, order.customer_id
                ),
            )
            await self.repository.add(payment)
        else:
            logger.info(
                "Reusing pending gateway payment",
                payment_id=str(payment.id),
                order_id=str(order.id),
            )

        await self.session.commit()

        request = GatewayPaymentRequest(
            amount=payment.amount,
            customer_name=customer_name or order.customer_name,
            customer_email=customer_email or order.customer_email or "",
            customer_mobile=customer_mobile or order.customer_phone,
            correlation_token=payment.correlation_token,
        )
        try:
            page = await self.gateway.create_payment_page(request)
        except GatewayTimeoutError:
            logger.warning(
                "Gateway timed out, payment stays pending",
                payment_id=str(payment.id),
                order_id=str(order.id),
            )
            raise

        await self.repository.update_fields(
            payment,
            {"payment_url": page.payment_url, "gateway_product_code": page.product_code},
        )
        await self.session.commit()

        logger.info(
            "Gateway payment initiated",
            payment_id=str(payment.id),
            order_id=str(order.id),
            product_code=page.product_code,
        )
        return PaymentInitiation(
            payment=payment,
            payment_url=page.payment_url,
            product_code=page.product_code,
        )

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    async def handle_callback(
        self,
        callback: GatewayCallback,
        raw_payload: Optional[dict[str, Any]] = None,
    ) -> CallbackOutcome:
        """
        Reconcile a gateway callback with the payment it belongs to.

        Args:
            callback: Parsed callback
            raw_payload: Payload as received, stored for audit

        Returns:
            Matched payment and whether a transition was applied

        Raises:
            PaymentNotFoundError: No matcher found a payment
            InvalidCallbackSignatureError: Signature present and wrong; the
                matched payment is not modified
        """
        verdict = check_signature(callback, self.settings.gateway_hmac_secret)

        match = await self.matcher.match(callback)
        if match is None:
            logger.error(
                "Unresolved gateway callback",
                gateway_status=callback.status,
                signature=verdict.value,
                **search_criteria(callback),
            )
            raise PaymentNotFoundError(
                "No payment matches this callback", **search_criteria(callback)
            )

        payment = match.payment

        # Unsigned callbacks proceed; only the transition table guards them.
        if verdict == SignatureVerdict.INVALID:
            logger.error(
                "Rejected callback with invalid signature",
                payment_id=str(payment.id),
                order_id=str(payment.order_id),
                strategy=match.strategy,
            )
            raise InvalidCallbackSignatureError(
                "Callback signature is invalid",
                payment_id=str(payment.id),
            )

        needs_review = payment.needs_review or match.low_confidence
        callback_amount = callback.amount_decimal
        if callback.amount and callback_amount is None:
            logger.warning(
                "Callback amount is not a valid money value",
                payment_id=str(payment.id),
                callback_amount=callback.amount,
            )
            needs_review = True
        elif callback_amount is not None and callback_amount != to_money(payment.amount):
            logger.error(
                "Callback amount differs from payment amount",
                payment_id=str(payment.id),
                callback_amount=callback.amount,
                payment_amount=str(payment.amount),
            )
            needs_review = True

        fields: dict[str, Any] = {
            "callback_payload": raw_payload
            if raw_payload is not None
            else callback.model_dump(by_alias=True, exclude_none=True),
            "matched_by": match.strategy,
            "needs_review": needs_review,
        }
        if callback.easykash_ref:
            fields["gateway_reference"] = callback.easykash_ref
        if callback.product_code and not payment.gateway_product_code:
            fields["gateway_product_code"] = callback.product_code
        if callback.payment_method:
            fields["gateway_payment_method"] = callback.payment_method
        if callback.voucher:
            fields["gateway_voucher"] = callback.voucher

        target = map_gateway_status(callback.status)
        if target in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
            fields["failure_reason"] = f"Gateway reported {callback.status}"

        result = await self.reconciler.apply(payment, target, source="callback", fields=fields)
        if not result.applied and result.reason in ("duplicate", "not_allowed", "late_success"):
            # Keep audit fields current even when the status is unchanged.
            audit = {
                key: value
                for key, value in fields.items()
                if key not in ("failure_reason",)
            }
            if result.reason == "late_success":
                audit["needs_review"] = True
            await self.repository.update_fields(payment, audit)

        await self.session.commit()

        message = "Payment updated" if result.applied else f"No change ({result.reason})"
        logger.info(
            "Gateway callback processed",
            payment_id=str(payment.id),
            order_id=str(payment.order_id),
            strategy=match.strategy,
            signature=verdict.value,
            gateway_status=callback.status,
            applied=result.applied,
            status=payment.status.value,
        )
        return CallbackOutcome(
            payment=payment,
            strategy=match.strategy,
            applied=result.applied,
            message=message,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _load_with_order(
        self,
        payment: Payment,
        principal: Optional[Principal],
    ) -> tuple[Payment, Order]:
        order = await self.orders.get_order(payment.order_id)
        if order is None:
            raise PaymentNotFoundError("Payment not found", payment_id=str(payment.id))
        ensure_order_access(order, principal)
        if await self.expirer.check(payment, order=order):
            await self.session.commit()
        return payment, order

    async def get_payment_status(
        self,
        payment_id: uuid.UUID,
        principal: Optional[Principal] = None,
    ) -> tuple[Payment, Order]:
        """
        Read a payment, expiring it first if it was abandoned.

        Raises:
            PaymentNotFoundError: Unknown payment
            OrderNotFoundError: Payment's order is not visible to the caller
        """
        payment = await self.repository.get_by_id(payment_id)
        if payment is None:
            raise PaymentNotFoundError("Payment not found", payment_id=str(payment_id))
        return await self._load_with_order(payment, principal)

    async def get_order_payment_status(
        self,
        order_id: uuid.UUID,
        principal: Optional[Principal] = None,
    ) -> tuple[Payment, Order]:
        """Read the newest payment of an order, expiring it first if needed."""
        payment = await self.repository.get_latest_for_order(order_id)
        if payment is None:
            raise PaymentNotFoundError("No payment for this order", order_id=str(order_id))
        return await self._load_with_order(payment, principal)

    async def get_by_customer_reference(self, reference: str) -> tuple[Payment, Order]:
        """
        Read payment state for the customer's return from the hosted page.

        The redirect's own status parameter is never trusted; this returns
        what callbacks and the expirer have recorded.
        """
        token = parse_correlation_token(reference)
        if token is None:
            raise PaymentNotFoundError("Unrecognized payment reference")

        payment = None
        if token.payment_id is not None:
            payment = await self.repository.get_by_id(token.payment_id)
            if payment is not None and payment.order_id != token.order_id:
                payment = None
        if payment is None:
            payment = await self.repository.get_latest_for_order(
                token.order_id, method=PaymentMethod.GATEWAY
            )
        if payment is None:
            raise PaymentNotFoundError(
                "No payment for this reference", order_id=str(token.order_id)
            )

        order = await self.orders.get_order(payment.order_id)
        if order is None:
            raise PaymentNotFoundError("Payment not found", payment_id=str(payment.id))
        if await self.expirer.check(payment, order=order):
            await self.session.commit()
        return payment, order

    # ------------------------------------------------------------------
    # Customer cancel
    # ------------------------------------------------------------------

    async def cancel_payment(
        self,
        payment_id: uuid.UUID,
        principal: Optional[Principal] = None,
        reason: Optional[str] = None,
    ) -> Payment:
        """
        Cancel a pending payment the customer abandoned.

        Raises:
            PaymentNotFoundError: Unknown payment
            InvalidStatusTransitionError: Payment is no longer pending
        """
        payment = await self.repository.get_by_id(payment_id)
        if payment is None:
            raise PaymentNotFoundError("Payment not found", payment_id=str(payment_id))

        order = await self.orders.get_order(payment.order_id)
        if order is None:
            raise PaymentNotFoundError("Payment not found", payment_id=str(payment_id))
        ensure_order_access(order, principal)

        if payment.status != PaymentStatus.PENDING:
            raise InvalidStatusTransitionError(
                "Only pending payments can be cancelled",
                payment_id=str(payment.id),
                status=payment.status.value,
            )

        result = await self.reconciler.apply(
            payment,
            PaymentStatus.CANCELLED,
            source="customer",
            fields={"failure_reason": reason or "Cancelled by customer"},
            order=order,
        )
        await self.session.commit()

        if not result.applied:
            raise InvalidStatusTransitionError(
                "Payment status changed before it could be cancelled",
                payment_id=str(payment.id),
                status=result.current.value,
            )
        return payment
