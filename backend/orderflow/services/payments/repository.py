"""
Payment repository.

Status changes go through ``transition``, a compare-and-set UPDATE keyed on
the payment's current status. When two deliveries of the same callback race,
only one of them sees its UPDATE match a row; the other observes the change
and applies no side effects.
"""

import uuid
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from orderflow.core.logging import get_logger
from orderflow.database.models.order import PaymentMethod
from orderflow.database.models.payment import Payment, PaymentStatus

logger = get_logger(__name__)


class PaymentRepositoryError(Exception):
    """Base exception for payment repository errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class PaymentRepository:
    """
    Repository for payment data access.

    Attributes:
        session: Async database session for executing queries
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _first(self, stmt, **context: Any) -> Optional[Payment]:
        try:
            result = await self.session.execute(stmt.limit(1))
            return result.scalars().first()
        except SQLAlchemyError as e:
            logger.error("Payment query failed", error=str(e), **context)
            raise PaymentRepositoryError("Payment query failed", error=str(e), **context) from e

    async def add(self, payment: Payment) -> Payment:
        """
        Stage a new payment row.

        Raises:
            PaymentRepositoryError: If the insert fails
        """
        try:
            self.session.add(payment)
            await self.session.flush()
            logger.info(
                "Payment created",
                payment_id=str(payment.id),
                order_id=str(payment.order_id),
                method=payment.method.value,
                amount=str(payment.amount),
            )
            return payment
        except IntegrityError as e:
            logger.error(
                "Payment creation failed - integrity error",
                order_id=str(payment.order_id),
                error=str(e),
            )
            raise PaymentRepositoryError(
                "An active payment already exists for this order",
                order_id=str(payment.order_id),
            ) from e
        except SQLAlchemyError as e:
            logger.error("Payment creation failed", order_id=str(payment.order_id), error=str(e))
            raise PaymentRepositoryError(
                "Payment creation failed", order_id=str(payment.order_id), error=str(e)
            ) from e

    async def get_by_id(self, payment_id: uuid.UUID) -> Optional[Payment]:
        return await self._first(
            select(Payment).where(Payment.id == payment_id),
            payment_id=str(payment_id),
        )

    async def get_latest_for_order(
        self,
        order_id: uuid.UUID,
        method: Optional[PaymentMethod] = None,
    ) -> Optional[Payment]:
        stmt = select(Payment).where(Payment.order_id == order_id)
        if method is not None:
            stmt = stmt.where(Payment.method == method)
        return await self._first(
            stmt.order_by(Payment.created_at.desc()),
            order_id=str(order_id),
        )

    async def find_by_gateway_reference(self, reference: str) -> Optional[Payment]:
        """Match a gateway transaction reference against stored reference fields."""
        return await self._first(
            select(Payment)
            .where(
                or_(
                    Payment.gateway_reference == reference,
                    Payment.gateway_product_code == reference,
                )
            )
            .order_by(Payment.created_at.desc()),
            reference=reference,
        )

    async def find_by_product_code(self, product_code: str) -> Optional[Payment]:
        return await self._first(
            select(Payment)
            .where(Payment.gateway_product_code == product_code)
            .order_by(Payment.created_at.desc()),
            product_code=product_code,
        )

    async def find_latest_pending_by_amount(self, amount: Decimal) -> Optional[Payment]:
        return await self._first(
            select(Payment)
            .where(
                Payment.method == PaymentMethod.GATEWAY,
                Payment.status == PaymentStatus.PENDING,
                Payment.amount == amount,
            )
            .order_by(Payment.created_at.desc()),
            amount=str(amount),
        )

    async def find_active_for_order(
        self,
        order_id: uuid.UUID,
        method: PaymentMethod,
    ) -> Optional[Payment]:
        """Pending or completed payment for an order and method."""
        return await self._first(
            select(Payment)
            .where(
                Payment.order_id == order_id,
                Payment.method == method,
                Payment.status.in_([PaymentStatus.PENDING, PaymentStatus.COMPLETED]),
            )
            .order_by(Payment.created_at.desc()),
            order_id=str(order_id),
        )

    async def transition(
        self,
        payment: Payment,
        expected: PaymentStatus,
        values: dict[str, Any],
    ) -> bool:
        """
        Update a payment only if its stored status still equals expected.

        Args:
            payment: Payment to update; in-memory attributes are refreshed
                on success without marking the instance dirty
            expected: Status the stored row must currently have
            values: Column values to write, normally including ``status``

        Returns:
            True if the row was updated
        """
        try:
            result = await self.session.execute(
                update(Payment)
                .where(Payment.id == payment.id, Payment.status == expected)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            logger.error(
                "Failed to update payment",
                payment_id=str(payment.id),
                error=str(e),
            )
            raise PaymentRepositoryError(
                "Failed to update payment", payment_id=str(payment.id), error=str(e)
            ) from e

        if result.rowcount == 0:
            return False

        for key, value in values.items():
            set_committed_value(payment, key, value)
        return True

    async def update_fields(self, payment: Payment, values: dict[str, Any]) -> None:
        """Write non-status fields (gateway codes, payload, audit flags)."""
        try:
            await self.session.execute(
                update(Payment)
                .where(Payment.id == payment.id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            logger.error("Failed to update payment", payment_id=str(payment.id), error=str(e))
            raise PaymentRepositoryError(
                "Failed to update payment", payment_id=str(payment.id), error=str(e)
            ) from e
        for key, value in values.items():
            set_committed_value(payment, key, value)
