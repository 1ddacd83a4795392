"""
Voucher database model for single-use customer discounts.

A voucher belongs to one customer and is redeemed at most once. Codes are
stored upper-case so lookups are case-insensitive. Once ``is_used`` is set,
``used_order_id`` records the order that consumed it and never changes.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, DateTime, Index, Numeric, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from orderflow.core.logging import get_logger
from orderflow.database.base import BaseModel, enum_column

logger = get_logger(__name__)


class DiscountType(str, Enum):
    """Enumeration of voucher discount types."""

    PERCENTAGE = "percentage"
    FIXED = "fixed"

    @classmethod
    def from_string(cls, value: str) -> "DiscountType":
        """
        Convert string to DiscountType enum.

        Args:
            value: String representation of discount type

        Returns:
            DiscountType enum value

        Raises:
            ValueError: If value is not a valid discount type
        """
        try:
            return cls(value.lower())
        except ValueError as e:
            logger.error(
                "Invalid discount type",
                value=value,
                valid_types=[t.value for t in cls],
            )
            raise ValueError(
                f"Invalid discount type: {value}. "
                f"Must be one of: {', '.join(t.value for t in cls)}"
            ) from e


class Voucher(BaseModel):
    """
    Single-use discount voucher bound to a customer.

    Attributes:
        code: Unique upper-case code
        discount_type: Percentage or fixed amount
        discount_value: Percent (0-100] or currency amount
        customer_id: Owning customer
        phone_number: Owner phone number, kept for support lookups
        is_active: Whether the voucher may be used
        is_used: Whether the voucher has been redeemed
        used_at: When it was redeemed
        used_order_id: Order that redeemed it
        expires_at: Optional expiry
    """

    __tablename__ = "vouchers"

    code: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
        index=True,
        comment="Unique upper-case voucher code",
    )

    discount_type: Mapped[DiscountType] = mapped_column(
        enum_column(DiscountType, "discount_type"),
        nullable=False,
        comment="Discount type",
    )

    discount_value: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
        comment="Percent or fixed amount",
    )

    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        index=True,
        comment="Owning customer",
    )

    phone_number: Mapped[Optional[str]] = mapped_column(
        String(32),
        nullable=True,
        comment="Owner phone number",
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="Whether the voucher may be used",
    )

    is_used: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        index=True,
        comment="Whether the voucher has been redeemed",
    )

    used_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Redemption timestamp",
    )

    used_order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        comment="Order that redeemed the voucher",
    )

    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Optional expiry",
    )

    __table_args__ = (
        Index("ix_vouchers_customer_usable", "customer_id", "is_active", "is_used"),
        CheckConstraint("discount_value > 0", name="ck_vouchers_value_positive"),
        CheckConstraint(
            "discount_type <> 'percentage' OR discount_value <= 100",
            name="ck_vouchers_percentage_max",
        ),
        CheckConstraint(
            "is_used = false OR used_order_id IS NOT NULL",
            name="ck_vouchers_used_has_order",
        ),
        {"comment": "Single-use customer discount vouchers"},
    )

    def __repr__(self) -> str:
        return (
            f"<Voucher(id={self.id}, code={self.code}, "
            f"type={self.discount_type.value}, used={self.is_used})>"
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check whether the voucher is past its expiry."""
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return self.expires_at < now
