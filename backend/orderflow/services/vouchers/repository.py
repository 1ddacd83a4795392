"""
Voucher data access with row-level locking support.

Lookups that take part in a reservation or redemption pass ``lock=True`` so
the row is read with ``SELECT ... FOR UPDATE`` inside the caller's
transaction. A concurrent transaction locking the same voucher blocks until
the first one commits or rolls back and then observes its outcome.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Select, and_, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.logging import get_logger
from orderflow.database.models.order import Order, OrderStatus
from orderflow.database.models.voucher import Voucher

logger = get_logger(__name__)


class VoucherRepositoryError(Exception):
    """Raised when a voucher query fails."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


def normalize_code(code: str) -> str:
    """Voucher codes are compared upper-case without surrounding whitespace."""
    return code.strip().upper()


def build_code_lookup(code: str, lock: bool = False) -> Select:
    """
    Build the voucher-by-code query.

    Args:
        code: Voucher code in any case
        lock: Read the row FOR UPDATE

    Returns:
        Select statement for the voucher row
    """
    stmt = select(Voucher).where(Voucher.code == normalize_code(code))
    if lock:
        stmt = stmt.with_for_update()
    return stmt


class VoucherRepository:
    """Repository for voucher persistence."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_code(self, code: str, lock: bool = False) -> Optional[Voucher]:
        try:
            result = await self.session.execute(build_code_lookup(code, lock=lock))
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Failed to fetch voucher", code=normalize_code(code), error=str(e))
            raise VoucherRepositoryError(
                "Failed to fetch voucher", code=normalize_code(code), error=str(e)
            ) from e

    async def get_by_id(self, voucher_id: uuid.UUID, lock: bool = False) -> Optional[Voucher]:
        stmt = select(Voucher).where(Voucher.id == voucher_id)
        if lock:
            stmt = stmt.with_for_update()
        try:
            result = await self.session.execute(stmt)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("Failed to fetch voucher", voucher_id=str(voucher_id), error=str(e))
            raise VoucherRepositoryError(
                "Failed to fetch voucher", voucher_id=str(voucher_id), error=str(e)
            ) from e

    async def has_open_order(
        self,
        code: str,
        exclude_order_id: Optional[uuid.UUID] = None,
    ) -> bool:
        """
        Check whether a non-cancelled order already carries this voucher code.

        Args:
            code: Voucher code
            exclude_order_id: Order to ignore (the one being redeemed for)

        Returns:
            True if another live order holds the voucher
        """
        conditions = [
            Order.voucher_code == normalize_code(code),
            Order.status != OrderStatus.CANCELLED,
        ]
        if exclude_order_id is not None:
            conditions.append(Order.id != exclude_order_id)
        try:
            result = await self.session.execute(
                select(func.count()).select_from(Order).where(and_(*conditions))
            )
            return result.scalar_one() > 0
        except SQLAlchemyError as e:
            logger.error("Failed to check voucher orders", code=normalize_code(code), error=str(e))
            raise VoucherRepositoryError(
                "Failed to check voucher orders", code=normalize_code(code), error=str(e)
            ) from e

    async def add(self, voucher: Voucher) -> Voucher:
        try:
            self.session.add(voucher)
            await self.session.flush()
            return voucher
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Failed to create voucher", code=voucher.code, error=str(e))
            raise VoucherRepositoryError(
                "Failed to create voucher", code=voucher.code, error=str(e)
            ) from e

    async def delete(self, voucher_id: uuid.UUID) -> None:
        try:
            await self.session.execute(delete(Voucher).where(Voucher.id == voucher_id))
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Failed to delete voucher", voucher_id=str(voucher_id), error=str(e))
            raise VoucherRepositoryError(
                "Failed to delete voucher", voucher_id=str(voucher_id), error=str(e)
            ) from e

    async def list_for_customer(
        self,
        customer_id: uuid.UUID,
        usable_only: bool,
        now: datetime,
    ) -> list[Voucher]:
        stmt = select(Voucher).where(Voucher.customer_id == customer_id)
        if usable_only:
            stmt = stmt.where(
                Voucher.is_active.is_(True),
                Voucher.is_used.is_(False),
                or_(Voucher.expires_at.is_(None), Voucher.expires_at > now),
            )
        stmt = stmt.order_by(Voucher.created_at.desc())
        try:
            result = await self.session.execute(stmt)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(
                "Failed to list customer vouchers", customer_id=str(customer_id), error=str(e)
            )
            raise VoucherRepositoryError(
                "Failed to list customer vouchers", customer_id=str(customer_id), error=str(e)
            ) from e

    async def list_vouchers(
        self,
        is_active: Optional[bool] = None,
        is_used: Optional[bool] = None,
        customer_id: Optional[uuid.UUID] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Voucher], int]:
        """
        List vouchers for operators, newest first.

        Args:
            is_active: Filter on the active flag
            is_used: Filter on the used flag
            customer_id: Only this customer's vouchers
            search: Case-insensitive substring of the code or phone number
            limit: Page size
            offset: Rows to skip

        Returns:
            Tuple of (vouchers page, total matching count)
        """
        conditions = []
        if is_active is not None:
            conditions.append(Voucher.is_active.is_(is_active))
        if is_used is not None:
            conditions.append(Voucher.is_used.is_(is_used))
        if customer_id is not None:
            conditions.append(Voucher.customer_id == customer_id)
        if search:
            pattern = f"%{search.strip()}%"
            conditions.append(
                or_(Voucher.code.ilike(pattern), Voucher.phone_number.ilike(pattern))
            )

        try:
            total = (
                await self.session.execute(
                    select(func.count()).select_from(Voucher).where(*conditions)
                )
            ).scalar_one()
            result = await self.session.execute(
                select(Voucher)
                .where(*conditions)
                .order_by(Voucher.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all()), total
        except SQLAlchemyError as e:
            logger.error("Failed to list vouchers", error=str(e))
            raise VoucherRepositoryError("Failed to list vouchers", error=str(e)) from e

    async def deactivate_unused(self) -> int:
        """Deactivate every active voucher that has not been used."""
        stmt = (
            update(Voucher)
            .where(Voucher.is_active.is_(True), Voucher.is_used.is_(False))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Failed to deactivate vouchers", error=str(e))
            raise VoucherRepositoryError("Failed to deactivate vouchers", error=str(e)) from e
        return result.rowcount

    async def delete_unused(self) -> int:
        """
        Delete unused vouchers that no live order carries.

        A voucher on a pending or confirmed order is not yet marked used but
        will be redeemed when that order is paid, so it is kept.
        """
        held_codes = select(Order.voucher_code).where(
            Order.voucher_code.is_not(None),
            Order.status != OrderStatus.CANCELLED,
        )
        stmt = (
            delete(Voucher)
            .where(Voucher.is_used.is_(False), Voucher.code.not_in(held_codes))
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("Failed to delete unused vouchers", error=str(e))
            raise VoucherRepositoryError("Failed to delete unused vouchers", error=str(e)) from e
        return result.rowcount

    async def count_stats(self) -> dict[str, int]:
        """Count vouchers by lifecycle bucket."""
        stmt = select(
            func.count(Voucher.id),
            func.count(Voucher.id).filter(
                Voucher.is_active.is_(True), Voucher.is_used.is_(False)
            ),
            func.count(Voucher.id).filter(Voucher.is_used.is_(True)),
            func.count(Voucher.id).filter(
                Voucher.is_active.is_(False), Voucher.is_used.is_(False)
            ),
        )
        try:
            total, active, used, inactive = (await self.session.execute(stmt)).one()
        except SQLAlchemyError as e:
            logger.error("Failed to count vouchers", error=str(e))
            raise VoucherRepositoryError("Failed to count vouchers", error=str(e)) from e
        return {"total": total, "active": active, "used": used, "inactive": inactive}
