"""
Lazy expiry of abandoned gateway checkouts.

Read paths call StatusExpirer before returning a payment or an order. A
gateway payment still pending after the configured timeout is cancelled
through the reconciler, which also cancels its order if the order is still
pending. A pending gateway order that was never sent to the gateway has no
payment to expire; once it is older than the timeout it is cancelled
directly. Pay-on-delivery payments are pending until delivery and never
expire here.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from orderflow.core.logging import get_logger
from orderflow.database.models.order import Order, OrderStatus, PaymentMethod
from orderflow.database.models.payment import Payment, PaymentStatus
from orderflow.services.orders.repository import OrderRepository
from orderflow.services.payments.reconciler import CallbackReconciler

logger = get_logger(__name__)


class StatusExpirer:
    """
    Cancel gateway checkouts left pending longer than the timeout.

    Attributes:
        reconciler: Applies payment cancellations and their order effects
        orders: Order repository, used to cancel orders that never got a
            payment row
        timeout: How long a gateway checkout may stay pending
    """

    def __init__(
        self,
        reconciler: CallbackReconciler,
        timeout_minutes: int = 30,
        orders: Optional[OrderRepository] = None,
    ):
        self.reconciler = reconciler
        self.orders = orders
        self.timeout = timedelta(minutes=timeout_minutes)

    def is_expired(self, payment: Payment, now: Optional[datetime] = None) -> bool:
        if payment.method != PaymentMethod.GATEWAY:
            return False
        if payment.status != PaymentStatus.PENDING or payment.created_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now - payment.created_at > self.timeout

    def is_abandoned(self, order: Order, now: Optional[datetime] = None) -> bool:
        """Pending gateway order with no gateway payment, older than the timeout."""
        if order.status != OrderStatus.PENDING or order.payment_method != PaymentMethod.GATEWAY:
            return False
        if order.created_at is None:
            return False
        if any(payment.method == PaymentMethod.GATEWAY for payment in order.payments):
            return False
        now = now or datetime.now(timezone.utc)
        return now - order.created_at > self.timeout

    async def check(
        self,
        payment: Payment,
        now: Optional[datetime] = None,
        order: Optional[Order] = None,
    ) -> bool:
        """
        Cancel the payment if it has been pending too long.

        Returns:
            True if the payment was cancelled by this call
        """
        if not self.is_expired(payment, now):
            return False

        logger.info(
            "Expiring abandoned gateway payment",
            payment_id=str(payment.id),
            order_id=str(payment.order_id),
            created_at=payment.created_at.isoformat(),
        )
        result = await self.reconciler.apply(
            payment,
            PaymentStatus.CANCELLED,
            source="expiry",
            fields={"failure_reason": "Payment not completed before timeout"},
            order=order,
        )
        return result.applied

    async def check_order(self, order: Order, now: Optional[datetime] = None) -> bool:
        """
        Expire an order's stale gateway payments, or the order itself when
        it never reached the gateway.

        Returns:
            True if anything was cancelled by this call
        """
        now = now or datetime.now(timezone.utc)
        expired = False
        for payment in list(order.payments):
            if await self.check(payment, now, order=order):
                expired = True

        if self.orders is not None and self.is_abandoned(order, now):
            if await self.orders.transition_status(
                order, [OrderStatus.PENDING], OrderStatus.CANCELLED
            ):
                logger.info(
                    "Cancelled gateway order that was never paid",
                    order_id=str(order.id),
                    created_at=order.created_at.isoformat(),
                    voucher_code=order.voucher_code,
                )
                expired = True
        return expired
