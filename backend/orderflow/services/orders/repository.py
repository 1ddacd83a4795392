"""
Order data access repository.

Order creation adds the order, its lines, and an optional payment row to the
caller's session and flushes; the caller owns the transaction and commits or
rolls back the whole unit. Status changes use a compare-and-set UPDATE so a
concurrent writer that already moved the order is detected instead of
overwritten.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.attributes import set_committed_value

from orderflow.core.logging import get_logger
from orderflow.database.models.order import Order, OrderItem, OrderStatus, PaymentMethod
from orderflow.database.models.payment import Payment

logger = get_logger(__name__)


class OrderRepositoryError(Exception):
    """Base exception for order repository errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class OrderCreationError(OrderRepositoryError):
    """Raised when order creation fails."""


class OrderRepository:
    """
    Repository for order data access operations.

    Every method runs on the session it was built with; none of them
    commits.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize order repository.

        Args:
            session: Async database session
        """
        self.session = session

    async def create_order_with_items(
        self,
        order: Order,
        items: Sequence[OrderItem],
        payment: Optional[Payment] = None,
    ) -> Order:
        """
        Stage an order with its lines and optional payment.

        Args:
            order: Order to insert (status pending)
            items: Order lines
            payment: Pay-on-delivery payment row, if any

        Returns:
            The flushed order

        Raises:
            OrderCreationError: If the insert fails
        """
        try:
            order.items = list(items)
            order.payments = [payment] if payment is not None else []
            self.session.add(order)
            await self.session.flush()

            logger.info(
                "Order staged",
                order_id=str(order.id),
                item_count=len(order.items),
                with_payment=payment is not None,
            )
            return order

        except IntegrityError as e:
            logger.error("Order creation failed - integrity error", error=str(e))
            raise OrderCreationError(
                "Order creation failed due to data integrity violation",
                error=str(e),
            ) from e
        except SQLAlchemyError as e:
            logger.error("Order creation failed - database error", error=str(e))
            raise OrderCreationError(
                "Order creation failed due to database error",
                error=str(e),
            ) from e

    async def get_order(self, order_id: uuid.UUID, lock: bool = False) -> Optional[Order]:
        """
        Get an order with its lines and payments.

        Args:
            order_id: Order identifier
            lock: Read the order row FOR UPDATE

        Returns:
            Order if found, None otherwise
        """
        stmt = (
            select(Order)
            .where(Order.id == order_id)
            .options(selectinload(Order.items), selectinload(Order.payments))
        )
        if lock:
            stmt = stmt.with_for_update(of=Order)
        try:
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Failed to fetch order", order_id=str(order_id), error=str(e))
            raise OrderRepositoryError(
                "Failed to fetch order", order_id=str(order_id), error=str(e)
            ) from e

    async def list_for_customer(
        self,
        customer_id: uuid.UUID,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Order], int]:
        """
        List a customer's orders, newest first.

        Returns:
            Tuple of (orders page, total count)
        """
        try:
            total = (
                await self.session.execute(
                    select(func.count()).select_from(Order).where(Order.customer_id == customer_id)
                )
            ).scalar_one()
            result = await self.session.execute(
                select(Order)
                .where(Order.customer_id == customer_id)
                .options(selectinload(Order.items), selectinload(Order.payments))
                .order_by(Order.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all()), total
        except SQLAlchemyError as e:
            logger.error("Failed to list orders", customer_id=str(customer_id), error=str(e))
            raise OrderRepositoryError(
                "Failed to list orders", customer_id=str(customer_id), error=str(e)
            ) from e

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
        List orders for operators, newest first.

        Args:
            status: Only orders in this status
            customer_id: Only this customer's orders
            created_from: Created at or after this time
            created_to: Created at or before this time
            limit: Page size
            offset: Rows to skip

        Returns:
            Tuple of (orders page, total matching count)
        """
        conditions = []
        if status is not None:
            conditions.append(Order.status == status)
        if customer_id is not None:
            conditions.append(Order.customer_id == customer_id)
        if created_from is not None:
            conditions.append(Order.created_at >= created_from)
        if created_to is not None:
            conditions.append(Order.created_at <= created_to)

        try:
            total = (
                await self.session.execute(
                    select(func.count()).select_from(Order).where(*conditions)
                )
            ).scalar_one()
            result = await self.session.execute(
                select(Order)
                .where(*conditions)
                .options(selectinload(Order.items), selectinload(Order.payments))
                .order_by(Order.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all()), total
        except SQLAlchemyError as e:
            logger.error("Failed to list orders", status=status, error=str(e))
            raise OrderRepositoryError("Failed to list orders", error=str(e)) from e

    async def list_voucher_holders(self, voucher_code: str) -> list[Order]:
        """
        Lock the pending gateway orders that carry a voucher code.

        These are the only orders whose hold on a voucher can go stale: a
        pending pay-on-delivery order holds its voucher until delivery or
        cancellation.
        """
        stmt = (
            select(Order)
            .where(
                Order.voucher_code == voucher_code,
                Order.status == OrderStatus.PENDING,
                Order.payment_method == PaymentMethod.GATEWAY,
            )
            .options(selectinload(Order.payments))
            .with_for_update(of=Order)
        )
        try:
            result = await self.session.execute(stmt)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Failed to fetch voucher holders", voucher_code=voucher_code, error=str(e))
            raise OrderRepositoryError(
                "Failed to fetch voucher holders", voucher_code=voucher_code, error=str(e)
            ) from e

    async def get_stats(
        self,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """
        Count orders per status and sum delivered revenue.

        Returns:
            Dict with total_orders, one <status>_orders count per status,
            total_revenue and average_order_value (None with no deliveries)
        """
        delivered = Order.status == OrderStatus.DELIVERED
        columns = [func.count(Order.id).label("total_orders")]
        columns.extend(
            func.count(Order.id).filter(Order.status == status).label(f"{status.value}_orders")
            for status in OrderStatus
        )
        columns.append(
            func.coalesce(func.sum(Order.total).filter(delivered), Decimal("0")).label(
                "total_revenue"
            )
        )
        columns.append(func.avg(Order.total).filter(delivered).label("average_order_value"))

        stmt = select(*columns)
        if created_from is not None:
            stmt = stmt.where(Order.created_at >= created_from)
        if created_to is not None:
            stmt = stmt.where(Order.created_at <= created_to)

        try:
            row = (await self.session.execute(stmt)).one()
        except SQLAlchemyError as e:
            logger.error("Failed to compute order stats", error=str(e))
            raise OrderRepositoryError("Failed to compute order stats", error=str(e)) from e
        return dict(row._mapping)

    async def transition_status(
        self,
        order: Order,
        expected: Iterable[OrderStatus],
        target: OrderStatus,
    ) -> bool:
        """
        Move an order to target only if its stored status is in expected.

        Args:
            order: Order to update (its in-memory status is refreshed on success)
            expected: Statuses the stored row must currently have
            target: New status

        Returns:
            True if the row was updated
        """
        expected = list(expected)
        try:
            result = await self.session.execute(
                update(Order)
                .where(Order.id == order.id, Order.status.in_(expected))
                .values(status=target)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            logger.error(
                "Failed to update order status",
                order_id=str(order.id),
                target=target.value,
                error=str(e),
            )
            raise OrderRepositoryError(
                "Failed to update order status", order_id=str(order.id), error=str(e)
            ) from e

        if result.rowcount == 0:
            logger.debug(
                "Order status unchanged, stored status not in expected set",
                order_id=str(order.id),
                expected=[status.value for status in expected],
                target=target.value,
            )
            return False

        previous = order.status
        set_committed_value(order, "status", target)
        logger.info(
            "Order status updated",
            order_id=str(order.id),
            from_status=previous.value if previous else None,
            to_status=target.value,
        )
        return True
