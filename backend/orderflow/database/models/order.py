"""
Order and order line models.

An order is written once at checkout together with its lines. Amounts are
always computed on the server; lines keep a snapshot of the product name and
unit price so that later catalog changes never alter a historical order.
The voucher is referenced by its code and a snapshot of its terms rather than
a foreign key, which keeps old orders readable after the voucher is deleted.
"""

import uuid
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional

from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from orderflow.database.base import BaseModel, enum_column

if TYPE_CHECKING:
    from orderflow.database.models.payment import Payment


class OrderStatus(str, Enum):
    """
    Order status enumeration for tracking order lifecycle.

    Attributes:
        PENDING: Order created, payment not yet confirmed
        CONFIRMED: Payment confirmed (or accepted for pay-on-delivery)
        SHIPPED: Order handed to delivery
        DELIVERED: Order delivered to customer
        CANCELLED: Order cancelled by customer, operator, or payment outcome
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @classmethod
    def from_string(cls, value: str) -> "OrderStatus":
        """
        Create OrderStatus from string value.

        Raises:
            ValueError: If value is not a valid status
        """
        try:
            return cls(value.lower())
        except ValueError:
            raise ValueError(f"Invalid order status: {value}")

    @property
    def is_terminal(self) -> bool:
        """Check if status is terminal (no further transitions)."""
        return self in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)

    @property
    def can_cancel(self) -> bool:
        """Check if a customer may cancel an order in this status."""
        return self in (OrderStatus.PENDING, OrderStatus.CONFIRMED)


class PaymentMethod(str, Enum):
    """
    How an order is paid.

    Attributes:
        COD: Cash collected on delivery
        GATEWAY: Hosted payment page confirmed by gateway callback
    """

    COD = "cod"
    GATEWAY = "gateway"

    @classmethod
    def from_string(cls, value: str) -> "PaymentMethod":
        try:
            return cls(value.lower())
        except ValueError:
            raise ValueError(f"Invalid payment method: {value}")


class Order(BaseModel):
    """
    Customer order with server-computed totals.

    Attributes:
        customer_id: Authenticated customer, or None for guest checkout
        status: Current order status
        payment_method: Selected payment method
        subtotal: Sum of server-priced line totals
        shipping_fee: Delivery fee
        discount_amount: Voucher discount applied at checkout
        total: subtotal + shipping_fee - discount_amount, floored at zero
        voucher_code: Upper-case code of the voucher used, if any
        voucher_discount_type: Snapshot of the voucher discount type
        voucher_discount_value: Snapshot of the voucher discount value
        customer_name: Contact name snapshot
        customer_phone: Contact phone snapshot
        customer_email: Contact email snapshot
        delivery_address: Address snapshot
        notes: Free-form customer notes
        items: Order lines
        payments: Payment attempts for this order
    """

    __tablename__ = "orders"

    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
        index=True,
        comment="Customer identifier; NULL for guest checkout",
    )

    status: Mapped[OrderStatus] = mapped_column(
        enum_column(OrderStatus, "order_status"),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True,
        comment="Current order status",
    )

    payment_method: Mapped[PaymentMethod] = mapped_column(
        enum_column(PaymentMethod, "payment_method"),
        nullable=False,
        comment="Selected payment method",
    )

    # Amounts
    subtotal: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
        comment="Sum of line totals",
    )

    shipping_fee: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
        default=Decimal("0.00"),
        comment="Delivery fee",
    )

    discount_amount: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
        default=Decimal("0.00"),
        comment="Voucher discount",
    )

    total: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
        comment="Amount due",
    )

    # Voucher snapshot
    voucher_code: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        index=True,
        comment="Voucher code used at checkout",
    )

    voucher_discount_type: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
        comment="Voucher discount type at checkout",
    )

    voucher_discount_value: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=True,
        comment="Voucher discount value at checkout",
    )

    # Contact snapshot
    customer_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Contact name",
    )

    customer_phone: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="Contact phone",
    )

    customer_email: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Contact email",
    )

    delivery_address: Mapped[dict] = mapped_column(
        JSONB,
        nullable=False,
        comment="Delivery address snapshot",
    )

    notes: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Customer notes",
    )

    # Relationships
    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    payments: Mapped[list["Payment"]] = relationship(
        "Payment",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="Payment.created_at",
    )

    __table_args__ = (
        Index("ix_orders_customer_created", "customer_id", "created_at"),
        Index("ix_orders_voucher_status", "voucher_code", "status"),
        CheckConstraint("subtotal >= 0", name="ck_orders_subtotal_non_negative"),
        CheckConstraint("shipping_fee >= 0", name="ck_orders_shipping_non_negative"),
        CheckConstraint("discount_amount >= 0", name="ck_orders_discount_non_negative"),
        CheckConstraint("total >= 0", name="ck_orders_total_non_negative"),
        {"comment": "Customer orders with server-computed totals"},
    )

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id}, status={self.status.value}, "
            f"total={self.total})>"
        )

    @property
    def is_paid_by_gateway(self) -> bool:
        """Check whether a completed gateway payment exists for this order."""
        from orderflow.database.models.payment import PaymentStatus

        return any(
            payment.method == PaymentMethod.GATEWAY
            and payment.status == PaymentStatus.COMPLETED
            for payment in self.payments
        )


class OrderItem(BaseModel):
    """
    Order line with a price snapshot.

    Attributes:
        order_id: Owning order
        product_id: Catalog product
        product_name: Product name at order time
        quantity: Units ordered
        unit_price: Catalog price at order time
        line_total: unit_price * quantity
    """

    __tablename__ = "order_items"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="Owning order",
    )

    product_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="Ordered product",
    )

    product_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Product name snapshot",
    )

    quantity: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Units ordered",
    )

    unit_price: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
        comment="Unit price snapshot",
    )

    line_total: Mapped[Decimal] = mapped_column(
        Numeric(precision=12, scale=2),
        nullable=False,
        comment="unit_price * quantity",
    )

    order: Mapped["Order"] = relationship("Order", back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        CheckConstraint("unit_price >= 0", name="ck_order_items_unit_price_non_negative"),
        {"comment": "Order lines with catalog price snapshots"},
    )
