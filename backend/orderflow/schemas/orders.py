"""
Order Pydantic schemas for API request/response validation.

Order items carry only a product reference and a quantity. Prices, the
subtotal, the discount, and the total are computed on the server and only
appear in responses.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from orderflow.database.models.order import OrderStatus, PaymentMethod
from orderflow.database.models.payment import PaymentStatus


class CustomerContactRequest(BaseModel):
    """Customer contact details captured at checkout."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=255, description="Contact name")
    phone: str = Field(..., min_length=6, max_length=32, description="Contact phone")
    email: Optional[str] = Field(None, max_length=255, description="Contact email")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        """Validate email format if provided."""
        if v is None or v == "":
            return None
        email = v.lower()
        if "@" not in email or "." not in email.split("@")[1]:
            raise ValueError("Invalid email format")
        return email


class DeliveryAddressRequest(BaseModel):
    """Delivery address information."""

    model_config = ConfigDict(str_strip_whitespace=True)

    street_address: str = Field(..., min_length=1, max_length=255)
    city: str = Field(..., min_length=1, max_length=100)
    area: Optional[str] = Field(None, max_length=100)
    building: Optional[str] = Field(None, max_length=50)
    floor: Optional[str] = Field(None, max_length=20)
    apartment: Optional[str] = Field(None, max_length=20)
    landmark: Optional[str] = Field(None, max_length=255)
    delivery_instructions: Optional[str] = Field(None, max_length=500)


class OrderItemRequest(BaseModel):
    """Requested product and quantity; any client price is ignored."""

    product_id: UUID = Field(..., description="Catalog product ID")
    quantity: int = Field(default=1, ge=1, le=100, description="Quantity")


class OrderCreateRequest(BaseModel):
    """Request schema for creating a new order."""

    customer: CustomerContactRequest
    delivery_address: DeliveryAddressRequest
    items: list[OrderItemRequest] = Field(..., min_length=1, max_length=50)
    payment_method: PaymentMethod = Field(..., description="cod or gateway")
    shipping_fee: Decimal = Field(
        default=Decimal("0.00"),
        ge=0,
        max_digits=12,
        decimal_places=2,
        description="Delivery fee quoted by the shipping table",
    )
    voucher_code: Optional[str] = Field(None, max_length=50, description="Voucher code")
    notes: Optional[str] = Field(None, max_length=1000, description="Order notes")

    @field_validator("voucher_code")
    @classmethod
    def normalize_voucher_code(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v.upper() or None


class OrderStatusUpdateRequest(BaseModel):
    """Operator status change."""

    status: OrderStatus
    reason: Optional[str] = Field(None, max_length=500)


class OrderCancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class OrderItemResponse(BaseModel):
    """Order item response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    product_id: UUID
    product_name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class OrderPaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    method: PaymentMethod
    status: PaymentStatus
    amount: Decimal
    currency: str
    created_at: datetime


class OrderResponse(BaseModel):
    """Complete order response schema."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_id: Optional[UUID] = None
    status: OrderStatus
    payment_method: PaymentMethod
    subtotal: Decimal
    shipping_fee: Decimal
    discount_amount: Decimal
    total: Decimal
    voucher_code: Optional[str] = None
    voucher_discount_type: Optional[str] = None
    voucher_discount_value: Optional[Decimal] = None
    customer_name: str
    customer_phone: str
    customer_email: Optional[str] = None
    delivery_address: dict
    notes: Optional[str] = None
    items: list[OrderItemResponse]
    payments: list[OrderPaymentResponse] = []
    created_at: datetime
    updated_at: datetime


class OrderListResponse(BaseModel):
    items: list[OrderResponse]
    total: int
    limit: int
    offset: int


class OrderStatsResponse(BaseModel):
    """Order counts per status and delivered revenue for a date range."""

    total_orders: int
    pending_orders: int
    confirmed_orders: int
    shipped_orders: int
    delivered_orders: int
    cancelled_orders: int
    total_revenue: Decimal = Field(..., description="Sum of delivered order totals")
    average_order_value: Decimal = Field(..., description="Mean delivered order total")
