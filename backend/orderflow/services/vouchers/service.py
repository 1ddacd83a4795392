"""
Voucher ledger: eligibility, reservation, redemption, and administration.

Vouchers are validated at checkout to price the order and redeemed only when
the order's payment is confirmed. Checkout calls ``validate_and_reserve``,
which locks the voucher row inside the order transaction so two concurrent
orders cannot both claim it. Redemption runs inside the payment confirmation
transaction and is a no-op when the voucher was already redeemed for the
same order, so a duplicate callback never burns it twice.
"""

import secrets
import string
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.config import Settings, get_settings
from orderflow.core.exceptions import (
    VoucherAlreadyUsedError,
    VoucherExpiredError,
    VoucherNotActiveError,
    VoucherNotFoundError,
    VoucherValidationError,
    VoucherWrongOwnerError,
)
from orderflow.core.logging import get_logger
from orderflow.core.money import ZERO, to_money
from orderflow.database.models.voucher import DiscountType, Voucher
from orderflow.schemas.vouchers import VoucherRecipient
from orderflow.services.vouchers.repository import VoucherRepository, normalize_code

logger = get_logger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_RANDOM_LENGTH = 8
BULK_CODE_RANDOM_LENGTH = 6
MAX_CODE_ATTEMPTS = 5


def calculate_discount(
    discount_type: DiscountType,
    discount_value: Decimal,
    subtotal: Decimal,
) -> Decimal:
    """
    Calculate the discount a voucher gives on a subtotal.

    Percentage vouchers give ``subtotal * value / 100``; fixed vouchers give
    ``min(value, subtotal)``. The result never exceeds the subtotal.

    Args:
        discount_type: Percentage or fixed
        discount_value: Voucher value
        subtotal: Order subtotal

    Returns:
        Discount rounded to cents
    """
    subtotal = to_money(subtotal)
    if subtotal <= ZERO:
        return ZERO
    if discount_type == DiscountType.PERCENTAGE:
        discount = to_money(subtotal * Decimal(discount_value) / Decimal(100))
    else:
        discount = to_money(discount_value)
    return min(discount, subtotal)


@dataclass(frozen=True)
class VoucherQuote:
    """Voucher together with the discount it gives on a subtotal."""

    voucher: Voucher
    discount: Decimal


@dataclass(frozen=True)
class BulkVoucherFailure:
    customer_id: uuid.UUID
    reason: str


@dataclass
class BulkVoucherResult:
    """Outcome of a bulk voucher run: one entry per recipient."""

    vouchers: list[Voucher] = field(default_factory=list)
    failures: list[BulkVoucherFailure] = field(default_factory=list)

    @property
    def created(self) -> int:
        return len(self.vouchers)

    @property
    def failed(self) -> int:
        return len(self.failures)


class VoucherService:
    """
    Service for voucher eligibility and lifecycle.

    Checkout and payment confirmation pass in their own session so that
    voucher reads and writes join the caller's transaction. Administrative
    operations commit their own unit of work.
    """

    def __init__(self, session: AsyncSession, settings: Optional[Settings] = None):
        self.session = session
        self.repository = VoucherRepository(session)
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------

    @staticmethod
    def check_eligibility(
        voucher: Optional[Voucher],
        code: str,
        customer_id: Optional[uuid.UUID],
        now: Optional[datetime] = None,
    ) -> Voucher:
        """
        Apply eligibility rules in a fixed order.

        Raises:
            VoucherNotFoundError: No voucher with this code
            VoucherNotActiveError: Voucher is deactivated
            VoucherAlreadyUsedError: Voucher was redeemed
            VoucherWrongOwnerError: Voucher belongs to another customer
                (guests cannot use vouchers)
            VoucherExpiredError: Voucher is past its expiry
        """
        if voucher is None:
            raise VoucherNotFoundError("Voucher not found", code=normalize_code(code))
        if not voucher.is_active:
            raise VoucherNotActiveError("Voucher is not active", code=voucher.code)
        if voucher.is_used:
            raise VoucherAlreadyUsedError("Voucher has already been used", code=voucher.code)
        if customer_id is None or voucher.customer_id != customer_id:
            raise VoucherWrongOwnerError(
                "Voucher does not belong to this customer",
                code=voucher.code,
            )
        if voucher.is_expired(now):
            raise VoucherExpiredError(
                "Voucher has expired",
                code=voucher.code,
                expires_at=voucher.expires_at.isoformat() if voucher.expires_at else None,
            )
        return voucher

    async def validate(self, code: str, customer_id: Optional[uuid.UUID]) -> Voucher:
        """
        Validate a voucher without locking it.

        Args:
            code: Voucher code in any case
            customer_id: Customer attempting to use it

        Returns:
            The eligible voucher
        """
        voucher = await self.repository.get_by_code(code)
        return self.check_eligibility(voucher, code, customer_id)

    async def validate_and_reserve(
        self,
        code: str,
        customer_id: Optional[uuid.UUID],
    ) -> Voucher:
        """
        Validate a voucher under a row lock inside the caller's transaction.

        The row stays locked until the caller commits or rolls back. Besides
        the usual eligibility checks, the voucher is refused when another
        non-cancelled order already carries its code; nothing is marked used
        here.

        Args:
            code: Voucher code in any case
            customer_id: Customer placing the order

        Returns:
            The locked, eligible voucher

        Raises:
            VoucherAlreadyUsedError: If used or held by another live order
        """
        voucher = await self.repository.get_by_code(code, lock=True)
        voucher = self.check_eligibility(voucher, code, customer_id)

        if await self.repository.has_open_order(voucher.code):
            logger.info(
                "Voucher reservation refused, held by another order",
                code=voucher.code,
                customer_id=str(customer_id),
            )
            raise VoucherAlreadyUsedError(
                "Voucher is already applied to another order",
                code=voucher.code,
            )

        logger.debug("Voucher reserved", code=voucher.code, voucher_id=str(voucher.id))
        return voucher

    async def quote(
        self,
        code: str,
        customer_id: Optional[uuid.UUID],
        subtotal: Decimal,
    ) -> VoucherQuote:
        """Validate a code and report the discount it would give."""
        voucher = await self.validate(code, customer_id)
        discount = calculate_discount(voucher.discount_type, voucher.discount_value, subtotal)
        return VoucherQuote(voucher=voucher, discount=discount)

    # ------------------------------------------------------------------
    # Redemption
    # ------------------------------------------------------------------

    async def redeem(self, voucher_id: uuid.UUID, order_id: uuid.UUID) -> bool:
        """
        Mark a voucher used by an order, inside the caller's transaction.

        Args:
            voucher_id: Voucher to redeem
            order_id: Order whose payment was confirmed

        Returns:
            True if the voucher was redeemed by this call
        """
        voucher = await self.repository.get_by_id(voucher_id, lock=True)
        return self._mark_used(voucher, order_id, voucher_ref=str(voucher_id))

    async def redeem_by_code(self, code: str, order_id: uuid.UUID) -> bool:
        """Redeem the voucher an order carries by its snapshot code."""
        voucher = await self.repository.get_by_code(code, lock=True)
        return self._mark_used(voucher, order_id, voucher_ref=normalize_code(code))

    def _mark_used(
        self,
        voucher: Optional[Voucher],
        order_id: uuid.UUID,
        voucher_ref: str,
    ) -> bool:
        if voucher is None:
            logger.warning(
                "Voucher to redeem no longer exists",
                voucher=voucher_ref,
                order_id=str(order_id),
            )
            return False

        if voucher.is_used:
            if voucher.used_order_id == order_id:
                logger.info(
                    "Voucher already redeemed for this order",
                    code=voucher.code,
                    order_id=str(order_id),
                )
            else:
                logger.error(
                    "Voucher already redeemed by a different order",
                    code=voucher.code,
                    order_id=str(order_id),
                    used_order_id=str(voucher.used_order_id),
                )
            return False

        voucher.is_used = True
        voucher.used_at = datetime.now(timezone.utc)
        voucher.used_order_id = order_id
        logger.info("Voucher redeemed", code=voucher.code, order_id=str(order_id))
        return True

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def _validate_value(self, discount_type: DiscountType, discount_value: Decimal) -> Decimal:
        value = to_money(discount_value)
        if value <= ZERO:
            raise VoucherValidationError(
                "Discount value must be greater than zero", discount_value=str(value)
            )
        if discount_type == DiscountType.PERCENTAGE and value > Decimal(100):
            raise VoucherValidationError(
                "Percentage discount cannot exceed 100", discount_value=str(value)
            )
        if (
            discount_type == DiscountType.FIXED
            and value > Decimal(self.settings.max_fixed_voucher_value)
        ):
            raise VoucherValidationError(
                f"Fixed discount cannot exceed {self.settings.max_fixed_voucher_value}",
                discount_value=str(value),
            )
        return value

    def generate_code(self, prefix: Optional[str] = None) -> str:
        """
        Generate a random code.

        Without a prefix the code is shaped SETTINGSPREFIX-XXXXXXXX; a bulk
        run's own prefix gives PREFIX-XXXXXX.
        """
        if prefix:
            length = BULK_CODE_RANDOM_LENGTH
        else:
            prefix = self.settings.voucher_code_prefix
            length = CODE_RANDOM_LENGTH
        suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))
        return f"{prefix.upper()}-{suffix}"

    async def _unique_code(
        self,
        prefix: Optional[str] = None,
        taken: Optional[set[str]] = None,
    ) -> str:
        for _ in range(MAX_CODE_ATTEMPTS):
            candidate = self.generate_code(prefix)
            if taken and candidate in taken:
                continue
            if await self.repository.get_by_code(candidate) is None:
                return candidate
        raise VoucherValidationError("Could not generate a unique voucher code")

    @staticmethod
    def _validate_expiry(expires_at: Optional[datetime]) -> None:
        if expires_at is not None and expires_at <= datetime.now(timezone.utc):
            raise VoucherValidationError(
                "Expiry must be in the future", expires_at=expires_at.isoformat()
            )

    async def create_voucher(
        self,
        customer_id: uuid.UUID,
        discount_type: DiscountType,
        discount_value: Decimal,
        code: Optional[str] = None,
        phone_number: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        is_active: bool = True,
    ) -> Voucher:
        """
        Create a voucher for a customer.

        Args:
            customer_id: Owning customer
            discount_type: Percentage or fixed
            discount_value: Percentage in (0, 100] or amount in
                (0, max_fixed_voucher_value]
            code: Explicit code; generated when omitted
            phone_number: Owner phone number
            expires_at: Optional expiry
            is_active: Initial active flag

        Returns:
            Created voucher

        Raises:
            VoucherValidationError: Invalid value, expiry, or duplicate code
        """
        value = self._validate_value(discount_type, discount_value)
        self._validate_expiry(expires_at)

        if code:
            final_code = normalize_code(code)
            if await self.repository.get_by_code(final_code) is not None:
                raise VoucherValidationError("Voucher code already exists", code=final_code)
        else:
            final_code = await self._unique_code()

        voucher = Voucher(
            code=final_code,
            discount_type=discount_type,
            discount_value=value,
            customer_id=customer_id,
            phone_number=phone_number,
            is_active=is_active,
            is_used=False,
            expires_at=expires_at,
        )
        await self.repository.add(voucher)
        await self.session.commit()

        logger.info(
            "Voucher created",
            voucher_id=str(voucher.id),
            code=voucher.code,
            customer_id=str(customer_id),
            discount_type=discount_type.value,
            discount_value=str(value),
        )
        return voucher

    async def create_bulk(
        self,
        recipients: Sequence[VoucherRecipient],
        discount_type: DiscountType,
        discount_value: Decimal,
        expires_at: Optional[datetime] = None,
        code_prefix: Optional[str] = None,
    ) -> BulkVoucherResult:
        """
        Create one voucher per recipient with the same discount.

        The discount and expiry are validated once for the whole batch. A
        recipient for whom no unique code can be generated is reported as a
        failure and the rest of the batch continues; all created vouchers
        commit together.

        Args:
            recipients: Customers (with optional phone numbers) to issue to
            discount_type: Percentage or fixed
            discount_value: Discount for every voucher
            expires_at: Optional shared expiry
            code_prefix: Prefix for generated codes (settings prefix if None)

        Returns:
            Created vouchers and per-recipient failures

        Raises:
            VoucherValidationError: Invalid value or expiry
        """
        value = self._validate_value(discount_type, discount_value)
        self._validate_expiry(expires_at)

        result = BulkVoucherResult()
        taken: set[str] = set()
        for recipient in recipients:
            try:
                code = await self._unique_code(code_prefix, taken)
            except VoucherValidationError as e:
                logger.warning(
                    "Bulk voucher skipped recipient",
                    customer_id=str(recipient.customer_id),
                    reason=e.message,
                )
                result.failures.append(BulkVoucherFailure(recipient.customer_id, e.message))
                continue

            taken.add(code)
            voucher = Voucher(
                code=code,
                discount_type=discount_type,
                discount_value=value,
                customer_id=recipient.customer_id,
                phone_number=recipient.phone_number,
                is_active=True,
                is_used=False,
                expires_at=expires_at,
            )
            await self.repository.add(voucher)
            result.vouchers.append(voucher)

        await self.session.commit()
        logger.info(
            "Bulk vouchers created",
            created=result.created,
            failed=result.failed,
            discount_type=discount_type.value,
            discount_value=str(value),
            code_prefix=code_prefix,
        )
        return result

    async def get_voucher(self, voucher_id: uuid.UUID) -> Voucher:
        voucher = await self.repository.get_by_id(voucher_id)
        if voucher is None:
            raise VoucherNotFoundError("Voucher not found", voucher_id=str(voucher_id))
        return voucher

    async def list_vouchers(
        self,
        is_active: Optional[bool] = None,
        is_used: Optional[bool] = None,
        customer_id: Optional[uuid.UUID] = None,
        search: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Voucher], int]:
        return await self.repository.list_vouchers(
            is_active=is_active,
            is_used=is_used,
            customer_id=customer_id,
            search=search,
            limit=limit,
            offset=offset,
        )

    async def deactivate_all(self) -> int:
        """Deactivate every unused voucher; used vouchers keep their flag."""
        count = await self.repository.deactivate_unused()
        await self.session.commit()
        logger.info("Deactivated all unused vouchers", count=count)
        return count

    async def delete_all_unused(self) -> int:
        """Delete unused vouchers, keeping any still carried by a live order."""
        count = await self.repository.delete_unused()
        await self.session.commit()
        logger.info("Deleted unused vouchers", count=count)
        return count

    async def set_active(self, voucher_id: uuid.UUID, active: bool) -> Voucher:
        """Activate or deactivate a voucher."""
        voucher = await self.repository.get_by_id(voucher_id, lock=True)
        if voucher is None:
            raise VoucherNotFoundError("Voucher not found", voucher_id=str(voucher_id))
        voucher.is_active = active
        await self.session.commit()
        logger.info("Voucher active flag changed", voucher_id=str(voucher_id), is_active=active)
        return voucher

    async def delete_voucher(self, voucher_id: uuid.UUID) -> None:
        """
        Delete an unused voucher.

        Raises:
            VoucherNotFoundError: Unknown voucher
            VoucherAlreadyUsedError: Voucher is used or held by a live order
        """
        voucher = await self.repository.get_by_id(voucher_id, lock=True)
        if voucher is None:
            raise VoucherNotFoundError("Voucher not found", voucher_id=str(voucher_id))
        if voucher.is_used:
            raise VoucherAlreadyUsedError(
                "Used vouchers cannot be deleted", code=voucher.code
            )
        if await self.repository.has_open_order(voucher.code):
            raise VoucherAlreadyUsedError(
                "Voucher is applied to an open order", code=voucher.code
            )
        await self.repository.delete(voucher_id)
        await self.session.commit()
        logger.info("Voucher deleted", voucher_id=str(voucher_id), code=voucher.code)

    async def list_customer_vouchers(
        self,
        customer_id: uuid.UUID,
        usable_only: bool = True,
    ) -> list[Voucher]:
        return await self.repository.list_for_customer(
            customer_id, usable_only=usable_only, now=datetime.now(timezone.utc)
        )

    async def get_stats(self) -> dict[str, int]:
        return await self.repository.count_stats()
