"""
Payment status reconciliation.

Every payment status change, whether it comes from a gateway callback, the
pending-payment expirer, a customer cancel, or an operator marking a
pay-on-delivery order delivered, goes through CallbackReconciler.apply. It
writes the new status with a compare-and-set UPDATE and applies the order
and voucher side effects in the same transaction:

- completed: order pending -> confirmed, and the order's voucher is redeemed
  unless it is already used.
- failed, cancelled, refunded: order pending -> cancelled; any other order
  status is left alone.
- pending: no order change.

A status equal to the current one, or a move the payment state machine does
not allow, changes nothing, so duplicate deliveries are absorbed. The caller
commits.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.logging import get_logger
from orderflow.database.models.order import Order, OrderStatus
from orderflow.database.models.payment import Payment, PaymentStatus
from orderflow.services.orders.repository import OrderRepository
from orderflow.services.payments.repository import PaymentRepository
from orderflow.services.vouchers.service import VoucherService

logger = get_logger(__name__)

GATEWAY_STATUS_MAP: dict[str, PaymentStatus] = {
    "success": PaymentStatus.COMPLETED,
    "completed": PaymentStatus.COMPLETED,
    "paid": PaymentStatus.COMPLETED,
    "delivered": PaymentStatus.COMPLETED,
    "failed": PaymentStatus.FAILED,
    "declined": PaymentStatus.FAILED,
    "new": PaymentStatus.PENDING,
    "pending": PaymentStatus.PENDING,
    "canceled": PaymentStatus.CANCELLED,
    "cancelled": PaymentStatus.CANCELLED,
    "expired": PaymentStatus.CANCELLED,
    "refunded": PaymentStatus.REFUNDED,
}

CANCELLING_STATUSES = (PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.REFUNDED)


def map_gateway_status(raw: Optional[str]) -> PaymentStatus:
    """
    Map a gateway status string to an internal payment status.

    Unknown or missing values map to pending with a warning.
    """
    key = (raw or "").strip().lower()
    status = GATEWAY_STATUS_MAP.get(key)
    if status is None:
        logger.warning("Unrecognized gateway status, treating as pending", gateway_status=raw)
        return PaymentStatus.PENDING
    return status


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a reconciliation attempt."""

    applied: bool
    previous: PaymentStatus
    current: PaymentStatus
    reason: str = ""


class CallbackReconciler:
    """Apply payment status changes and their order and voucher effects."""

    def __init__(
        self,
        session: AsyncSession,
        payments: Optional[PaymentRepository] = None,
        orders: Optional[OrderRepository] = None,
        vouchers: Optional[VoucherService] = None,
    ):
        self.session = session
        self.payments = payments or PaymentRepository(session)
        self.orders = orders or OrderRepository(session)
        self.vouchers = vouchers or VoucherService(session)

    async def apply(
        self,
        payment: Payment,
        target: PaymentStatus,
        source: str,
        fields: Optional[dict[str, Any]] = None,
        order: Optional[Order] = None,
    ) -> TransitionResult:
        """
        Move a payment to target and apply side effects.

        Args:
            payment: Payment to update
            target: Desired status
            source: What triggered the change (callback, expiry, customer,
                delivery), for logs
            fields: Extra payment columns written with the status change
            order: The payment's order if already loaded

        Returns:
            Whether the change was applied and the resulting status
        """
        previous = payment.status
        log = logger.bind(
            payment_id=str(payment.id),
            order_id=str(payment.order_id),
            source=source,
            from_status=previous.value,
            to_status=target.value,
        )

        if previous == target:
            log.info("Payment already in target status, nothing to apply")
            return TransitionResult(False, previous, previous, "duplicate")

        if not previous.can_transition_to(target):
            if target == PaymentStatus.COMPLETED and previous.is_terminal:
                await self.payments.update_fields(payment, {"needs_review": True})
                log.error("Success reported for a payment that is already closed")
                return TransitionResult(False, previous, previous, "late_success")
            log.warning("Payment transition not allowed, ignoring")
            return TransitionResult(False, previous, previous, "not_allowed")

        values: dict[str, Any] = dict(fields or {})
        values["status"] = target
        if target == PaymentStatus.COMPLETED:
            values["completed_at"] = datetime.now(timezone.utc)

        if not await self.payments.transition(payment, previous, values):
            log.info("Payment changed concurrently, side effects skipped")
            return TransitionResult(False, previous, payment.status, "concurrent")

        log.info("Payment status updated")

        if order is None:
            order = await self.orders.get_order(payment.order_id)
        if order is None:
            log.error("Order for payment not found, side effects skipped")
            return TransitionResult(True, previous, target, "order_missing")

        if target == PaymentStatus.COMPLETED:
            await self._on_completed(order)
        elif target in CANCELLING_STATUSES:
            await self._on_closed(order)

        return TransitionResult(True, previous, target)

    async def _on_completed(self, order: Order) -> None:
        await self.orders.transition_status(order, [OrderStatus.PENDING], OrderStatus.CONFIRMED)
        if order.voucher_code:
            await self.vouchers.redeem_by_code(order.voucher_code, order.id)

    async def _on_closed(self, order: Order) -> None:
        cancelled = await self.orders.transition_status(
            order, [OrderStatus.PENDING], OrderStatus.CANCELLED
        )
        if not cancelled:
            logger.info(
                "Order not pending, left unchanged after payment closed",
                order_id=str(order.id),
                order_status=order.status.value,
            )
