"""
Payment model for pay-on-delivery and hosted-gateway payments.

A payment row is created at checkout for pay-on-delivery orders and at
payment initiation for gateway orders. After creation it is mutated only by
the callback reconciler and the pending-payment expirer. A completed payment
never moves anywhere except to refunded.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from orderflow.database.base import BaseModel, enum_column
from orderflow.database.models.order import PaymentMethod

if TYPE_CHECKING:
    from orderflow.database.models.order import Order


class PaymentStatus(str, Enum):
    """
    Payment status enumeration for tracking payment lifecycle.

    Attributes:
        PENDING: Payment created, outcome unknown
        COMPLETED: Funds confirmed
        FAILED: Gateway reported a failure or decline
        CANCELLED: Abandoned, expired, or cancelled by the customer
        REFUNDED: Completed payment returned to the customer
    """

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @classmethod
    def from_string(cls, value: str) -> "PaymentStatus":
        """
        Create PaymentStatus from string value.

        Raises:
            ValueError: If value is not a valid status
        """
        try:
            return cls(value.lower())
        except ValueError:
            raise ValueError(f"Invalid payment status: {value}")

    @property
    def is_terminal(self) -> bool:
        """Check if status accepts no further callback transitions."""
        return self in (
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
            PaymentStatus.REFUNDED,
        )

    def can_transition_to(self, target: "PaymentStatus") -> bool:
        """
        Check whether moving from this status to target is allowed.

        Pending may move to any other status; completed may only be
        refunded; failed, cancelled, and refunded never move.
        """
        if self == target:
            return False
        if self == PaymentStatus.PENDING:
            return True
        if self == PaymentStatus.COMPLETED:
            return target == PaymentStatus.REFUNDED
        return False


class Payment(BaseModel):
    """
    Payment attempt for an order.

    Attributes:
        order_id: Owning order
        method: Pay-on-delivery or gateway
        amount: Amount due, equal to the order total at creation
        currency: ISO 4217 currency code
        status: Current payment status
        correlation_token: Merchant reference echoed back by the gateway
        payment_url: Hosted payment page URL
        gateway_reference: Gateway transaction reference from the callback
        gateway_product_code: Gateway session/product code
        gateway_payment_method: Payment channel reported by the gateway
        gateway_voucher: Cash voucher number issued by the gateway
        callback_payload: Last raw callback payload applied
        matched_by: Callback matching strategy that resolved this payment
        needs_review: Set when the payment needs a manual audit
        completed_at: When the payment was confirmed
    """

    __tablename__ = "payments"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Owning order",
    )

    method: Mapped[PaymentMethod] = mapped_column(
        enum_column(PaymentMethod, "payment_method"),
        nullable=False,
        comment="Payment method",
    )

    amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
        comment="Amount due",
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="EGP",
        comment="Currency code (ISO 4217)",
    )

    status: Mapped[PaymentStatus] = mapped_column(
        enum_column(PaymentStatus, "payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
        index=True,
        comment="Current payment status",
    )

    # Gateway correlation
    correlation_token: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
        comment="Merchant reference sent to the gateway",
    )

    payment_url: Mapped[Optional[str]] = mapped_column(
        String(1000),
        nullable=True,
        comment="Hosted payment page URL",
    )

    gateway_reference: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
        comment="Gateway transaction reference",
    )

    gateway_product_code: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
        comment="Gateway session/product code",
    )

    gateway_payment_method: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Payment channel reported by the gateway",
    )

    gateway_voucher: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Cash voucher issued by the gateway",
    )

    callback_payload: Mapped[Optional[dict]] = mapped_column(
        JSONB,
        nullable=True,
        comment="Last applied callback payload",
    )

    # Audit
    matched_by: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        comment="Callback matching strategy",
    )

    needs_review: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
        comment="Flagged for manual reconciliation",
    )

    failure_reason: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Why the payment failed or was cancelled",
    )

    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the payment was confirmed",
    )

    order: Mapped["Order"] = relationship("Order", back_populates="payments")

    __table_args__ = (
        Index("ix_payments_order_status", "order_id", "status"),
        Index("ix_payments_method_status_created", "method", "status", "created_at"),
        Index(
            "uq_payments_order_method_active",
            "order_id",
            "method",
            unique=True,
            postgresql_where=text("status IN ('pending', 'completed')"),
        ),
        CheckConstraint("amount >= 0", name="ck_payments_amount_non_negative"),
        CheckConstraint("currency ~ '^[A-Z]{3}$'", name="ck_payments_currency_format"),
        {"comment": "Payment attempts with gateway correlation fields"},
    )

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, order_id={self.order_id}, "
            f"method={self.method.value}, status={self.status.value}, "
            f"amount={self.amount})>"
        )
