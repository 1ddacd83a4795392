"""
Order service orchestrating checkout and order lifecycle.

This module implements the OrderService class. Checkout prices the items from
the catalog, reserves the voucher under a row lock, computes the total, and
writes the order, its lines, and (for pay-on-delivery) its payment row in one
transaction. Either everything commits or nothing does.

Status changes made by customers and operators also live here; any payment
status change they imply is delegated to the payment reconciler so that
voucher redemption happens in exactly one place.
"""

import uuid
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.config import Settings, get_settings
from orderflow.core.exceptions import (
    CheckoutError,
    InvalidStatusTransitionError,
    OrderNotFoundError,
)
from orderflow.core.logging import get_logger
from orderflow.core.money import ZERO, compute_order_total, to_money
from orderflow.core.security import Principal
from orderflow.database.models.order import Order, OrderItem, OrderStatus, PaymentMethod
from orderflow.database.models.payment import Payment, PaymentStatus
from orderflow.schemas.orders import OrderCreateRequest
from orderflow.services.catalog.pricing import LineRequest, PricingValidator
from orderflow.services.catalog.repository import CatalogRepository
from orderflow.services.orders.repository import (
    OrderCreationError,
    OrderRepository,
    OrderRepositoryError,
)
from orderflow.services.orders.state_machine import (
    get_allowed_order_transitions,
    validate_order_status_transition,
)
from orderflow.services.payments.expiry import StatusExpirer
from orderflow.services.payments.reconciler import CallbackReconciler
from orderflow.services.vouchers.repository import normalize_code
from orderflow.services.vouchers.service import VoucherService, calculate_discount

logger = get_logger(__name__)


def ensure_order_access(order: Order, principal: Optional[Principal]) -> None:
    """
    Check that the caller may see an order.

    Guest orders are reachable by id alone. Customer orders are visible to
    their owner and to admins; anyone else gets a not-found error so order
    ids cannot be discovered.

    Raises:
        OrderNotFoundError: The caller may not see the order
    """
    if order.customer_id is None:
        return
    if principal is not None and (
        principal.is_admin or principal.customer_id == order.customer_id
    ):
        return
    raise OrderNotFoundError("Order not found", order_id=str(order.id))


class OrderService:
    """
    Order service for checkout and order lifecycle.

    Attributes:
        session: Session whose transaction this service commits
        repository: Order repository
        pricing: Server-side pricing validator
        vouchers: Voucher ledger
        reconciler: Payment status reconciler
        expirer: Lazy expiry of abandoned gateway checkouts
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Optional[Settings] = None,
        repository: Optional[OrderRepository] = None,
        pricing: Optional[PricingValidator] = None,
        vouchers: Optional[VoucherService] = None,
        reconciler: Optional[CallbackReconciler] = None,
    ):
        """
        Initialize order service.

        Args:
            session: Async database session
            settings: Application settings (defaults to cached settings)
            repository: Order repository (built from session if None)
            pricing: Pricing validator (built from session if None)
            vouchers: Voucher service (built from session if None)
            reconciler: Payment reconciler (built from session if None)
        """
        self.session = session
        self.settings = settings or get_settings()
        self.repository = repository or OrderRepository(session)
        self.pricing = pricing or PricingValidator(CatalogRepository(session))
        self.vouchers = vouchers or VoucherService(session, self.settings)
        self.reconciler = reconciler or CallbackReconciler(
            session, orders=self.repository, vouchers=self.vouchers
        )
        self.expirer = StatusExpirer(
            self.reconciler,
            timeout_minutes=self.settings.pending_payment_timeout_minutes,
            orders=self.repository,
        )

    async def create_order(
        self,
        request: OrderCreateRequest,
        principal: Optional[Principal] = None,
    ) -> Order:
        """
        Create an order atomically.

        Args:
            request: Checkout request (client prices are never read)
            principal: Authenticated customer, None for guest checkout

        Returns:
            Persisted order with lines and payments loaded

        Raises:
            InvalidProductError: Unknown or inactive product
            InsufficientStockError: Not enough tracked stock
            VoucherNotFoundError, VoucherNotActiveError,
            VoucherAlreadyUsedError, VoucherWrongOwnerError,
            VoucherExpiredError: Voucher not usable by this customer
            OrderCreationError: Database failure while writing
        """
        customer_id = principal.customer_id if principal else None
        log = logger.bind(
            customer_id=str(customer_id) if customer_id else None,
            item_count=len(request.items),
            payment_method=request.payment_method.value,
        )
        log.info("Creating order")

        try:
            priced = await self.pricing.price_items(
                [LineRequest(item.product_id, item.quantity) for item in request.items]
            )

            voucher = None
            discount = ZERO
            if request.voucher_code:
                await self.release_stale_voucher_holds(request.voucher_code)
                voucher = await self.vouchers.validate_and_reserve(
                    request.voucher_code, customer_id
                )
                discount = calculate_discount(
                    voucher.discount_type, voucher.discount_value, priced.subtotal
                )

            shipping_fee = to_money(request.shipping_fee)
            total = compute_order_total(priced.subtotal, shipping_fee, discount)

            order = Order(
                id=uuid.uuid4(),
                customer_id=customer_id,
                status=OrderStatus.PENDING,
                payment_method=request.payment_method,
                subtotal=priced.subtotal,
                shipping_fee=shipping_fee,
                discount_amount=discount,
                total=total,
                voucher_code=voucher.code if voucher else None,
                voucher_discount_type=voucher.discount_type.value if voucher else None,
                voucher_discount_value=voucher.discount_value if voucher else None,
                customer_name=request.customer.name,
                customer_phone=request.customer.phone,
                customer_email=request.customer.email,
                delivery_address=request.delivery_address.model_dump(exclude_none=True),
                notes=request.notes,
            )
            items = [
                OrderItem(
                    product_id=line.product_id,
                    product_name=line.product_name,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    line_total=line.line_total,
                )
                for line in priced.lines
            ]
            payment = None
            if request.payment_method == PaymentMethod.COD:
                payment = Payment(
                    method=PaymentMethod.COD,
                    amount=total,
                    currency=self.settings.gateway_currency,
                    status=PaymentStatus.PENDING,
                )

            await self.repository.create_order_with_items(order, items, payment)
            await self.session.commit()

        except CheckoutError as e:
            await self.session.rollback()
            log.info("Order rejected", error_code=e.code, reason=e.message)
            raise
        except OrderRepositoryError:
            await self.session.rollback()
            raise
        except SQLAlchemyError as e:
            await self.session.rollback()
            log.error("Order creation failed - database error", error=str(e))
            raise OrderCreationError(
                "Order creation failed due to database error", error=str(e)
            ) from e

        await self.session.refresh(order)
        log.info(
            "Order created",
            order_id=str(order.id),
            subtotal=str(order.subtotal),
            discount=str(order.discount_amount),
            total=str(order.total),
            voucher_code=order.voucher_code,
        )
        return order

    async def get_order(
        self,
        order_id: uuid.UUID,
        principal: Optional[Principal] = None,
    ) -> Order:
        """
        Get an order visible to the caller.

        Raises:
            OrderNotFoundError: Unknown order or not visible to the caller
        """
        order = await self.repository.get_order(order_id)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        ensure_order_access(order, principal)
        await self._expire_stale([order])
        return order

    async def list_customer_orders(
        self,
        customer_id: uuid.UUID,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Order], int]:
        orders, total = await self.repository.list_for_customer(
            customer_id, limit=limit, offset=offset
        )
        await self._expire_stale(orders)
        return orders, total

    async def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        customer_id: Optional[uuid.UUID] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Order], int]:
        """
        List orders for operators with optional filters, newest first.

        Stale gateway checkouts on the page are expired before it is returned,
        so a status filter matches stored state as of the query.
        """
        orders, total = await self.repository.list_orders(
            status=status,
            customer_id=customer_id,
            created_from=created_from,
            created_to=created_to,
            limit=limit,
            offset=offset,
        )
        await self._expire_stale(orders)
        return orders, total

    async def get_stats(
        self,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Order counts per status with delivered revenue, rounded to money."""
        stats = await self.repository.get_stats(created_from=created_from, created_to=created_to)
        stats["total_revenue"] = to_money(stats["total_revenue"] or ZERO)
        stats["average_order_value"] = to_money(stats["average_order_value"] or ZERO)
        return stats

    async def release_stale_voucher_holds(self, voucher_code: str) -> int:
        """
        Expire abandoned gateway checkouts that still hold a voucher code.

        Runs inside the checkout transaction, before the voucher row is
        locked, so order rows are always locked ahead of voucher rows.

        Returns:
            Number of orders whose hold was released
        """
        code = normalize_code(voucher_code)
        released = 0
        for holder in await self.repository.list_voucher_holders(code):
            if await self.expirer.check_order(holder):
                released += 1
        if released:
            logger.info("Released stale voucher holds", voucher_code=code, released=released)
        return released

    async def _expire_stale(self, orders: Iterable[Order]) -> None:
        expired = False
        for order in orders:
            if await self.expirer.check_order(order):
                expired = True
        if expired:
            await self.session.commit()

    async def _close_pending_payments(self, order: Order, source: str, reason: str) -> None:
        for payment in list(order.payments):
            if payment.status == PaymentStatus.PENDING:
                await self.reconciler.apply(
                    payment,
                    PaymentStatus.CANCELLED,
                    source=source,
                    fields={"failure_reason": reason},
                    order=order,
                )

    async def cancel_order(
        self,
        order_id: uuid.UUID,
        principal: Optional[Principal] = None,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Cancel an order on the customer's request.

        Allowed while the order is pending or confirmed and has not been paid
        through the gateway. Pending payments are cancelled with it, which
        also releases the voucher hold.

        Raises:
            OrderNotFoundError: Unknown order or not visible to the caller
            InvalidStatusTransitionError: Order can no longer be cancelled
        """
        order = await self.repository.get_order(order_id, lock=True)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        ensure_order_access(order, principal)

        if not order.status.can_cancel:
            raise InvalidStatusTransitionError(
                "Order can no longer be cancelled",
                order_id=str(order.id),
                status=order.status.value,
            )
        if order.is_paid_by_gateway:
            raise InvalidStatusTransitionError(
                "Paid orders cannot be cancelled by the customer",
                order_id=str(order.id),
            )

        if not await self.repository.transition_status(
            order, [order.status], OrderStatus.CANCELLED
        ):
            raise InvalidStatusTransitionError(
                "Order status changed, try again", order_id=str(order.id)
            )
        await self._close_pending_payments(
            order, source="customer_cancel", reason=reason or "Order cancelled by customer"
        )
        await self.session.commit()

        logger.info("Order cancelled by customer", order_id=str(order.id), reason=reason)
        return order

    async def update_status(
        self,
        order_id: uuid.UUID,
        target: OrderStatus,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Move an order to a new status on an operator's request.

        Marking a pay-on-delivery order delivered completes its pending
        payment, which redeems the order's voucher. Cancelling an order
        cancels its pending payments.

        Args:
            order_id: Order to update
            target: New status
            reason: Operator note for logs

        Returns:
            Updated order

        Raises:
            OrderNotFoundError: Unknown order
            InvalidStatusTransitionError: Not a forward move or cancel
        """
        order = await self.repository.get_order(order_id, lock=True)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))

        current = order.status
        if not validate_order_status_transition(current, target):
            raise InvalidStatusTransitionError(
                f"Cannot change order status from {current.value} to {target.value}",
                order_id=str(order.id),
                allowed=sorted(s.value for s in get_allowed_order_transitions(current)),
            )

        if not await self.repository.transition_status(order, [current], target):
            raise InvalidStatusTransitionError(
                "Order status changed, try again", order_id=str(order.id)
            )

        if target == OrderStatus.DELIVERED and order.payment_method == PaymentMethod.COD:
            for payment in list(order.payments):
                if payment.method == PaymentMethod.COD and payment.status == PaymentStatus.PENDING:
                    await self.reconciler.apply(
                        payment, PaymentStatus.COMPLETED, source="delivery", order=order
                    )
        elif target == OrderStatus.CANCELLED:
            if order.is_paid_by_gateway:
                logger.warning(
                    "Cancelling an order with a completed gateway payment; refund separately",
                    order_id=str(order.id),
                )
            await self._close_pending_payments(
                order, source="operator_cancel", reason=reason or "Order cancelled by operator"
            )

        await self.session.commit()
        logger.info(
            "Order status changed by operator",
            order_id=str(order.id),
            from_status=current.value,
            to_status=target.value,
            reason=reason,
        )
        return order
