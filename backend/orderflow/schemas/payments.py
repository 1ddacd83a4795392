"""
Payment schemas for gateway initiation, callbacks, and status reads.

Gateway callback fields keep the gateway's own names as aliases so the raw
payload validates directly; values are kept as strings because the
signature is computed over them exactly as received.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from orderflow.core.money import to_money
from orderflow.database.models.order import OrderStatus, PaymentMethod
from orderflow.database.models.payment import PaymentStatus


class PaymentInitiateRequest(BaseModel):
    """Request schema for starting a hosted gateway payment."""

    order_id: UUID = Field(..., description="Order to pay")
    amount: Decimal = Field(
        ...,
        gt=0,
        max_digits=12,
        decimal_places=2,
        description="Amount the client expects to pay; must equal the order total",
    )
    customer_name: Optional[str] = Field(None, max_length=255)
    customer_email: Optional[str] = Field(None, max_length=255)
    customer_mobile: Optional[str] = Field(None, max_length=32)

    @field_validator("customer_email")
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        """Validate email format if provided."""
        if v is None:
            return v
        email = v.strip().lower()
        if "@" not in email or "." not in email.split("@")[1]:
            raise ValueError("Invalid email format")
        return email

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "order_id": "123e4567-e89b-12d3-a456-426614174000",
                    "amount": "90.00",
                    "customer_name": "Mona Adel",
                    "customer_email": "mona@example.com",
                    "customer_mobile": "01000000000",
                }
            ]
        }
    }


class PaymentInitiateResponse(BaseModel):
    """Hosted payment page for the customer to complete payment."""

    payment_id: UUID
    order_id: UUID
    payment_url: str
    product_code: Optional[str] = None
    status: PaymentStatus


class GatewayCallback(BaseModel):
    """Server-to-server payment notification from the gateway."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    product_code: Optional[str] = Field(None, alias="ProductCode")
    payment_method: Optional[str] = Field(None, alias="PaymentMethod")
    product_type: Optional[str] = Field(None, alias="ProductType")
    amount: Optional[str] = Field(None, alias="Amount")
    buyer_email: Optional[str] = Field(None, alias="BuyerEmail")
    buyer_mobile: Optional[str] = Field(None, alias="BuyerMobile")
    buyer_name: Optional[str] = Field(None, alias="BuyerName")
    timestamp: Optional[str] = Field(None, alias="Timestamp")
    status: Optional[str] = Field(None, alias="status")
    voucher: Optional[str] = Field(None, alias="voucher")
    easykash_ref: Optional[str] = Field(None, alias="easykashRef")
    voucher_data: Optional[str] = Field(None, alias="VoucherData")
    customer_reference: Optional[str] = Field(None, alias="customerReference")
    signature_hash: Optional[str] = Field(None, alias="signatureHash")

    @field_validator(
        "product_code",
        "payment_method",
        "product_type",
        "amount",
        "buyer_email",
        "buyer_mobile",
        "buyer_name",
        "timestamp",
        "status",
        "voucher",
        "easykash_ref",
        "voucher_data",
        "customer_reference",
        "signature_hash",
        mode="before",
    )
    @classmethod
    def coerce_to_string(cls, v: Any) -> Optional[str]:
        """Gateways send numbers for some fields; keep everything as text."""
        if v is None:
            return None
        if isinstance(v, bool):
            return str(v).lower()
        return str(v)

    @property
    def amount_decimal(self) -> Optional[Decimal]:
        """
        Callback amount rounded to money, or None when absent or malformed.

        Infinities, NaN and values too large to quantize count as malformed.
        """
        if not self.amount:
            return None
        try:
            value = Decimal(self.amount.strip())
            if not value.is_finite():
                return None
            return to_money(value)
        except (ArithmeticError, ValueError):
            return None


class CallbackAcknowledgement(BaseModel):
    """Body returned to the gateway; the HTTP status is always 200."""

    success: bool
    message: str
    payment_id: Optional[UUID] = None
    order_id: Optional[UUID] = None
    status: Optional[PaymentStatus] = None
    matched_by: Optional[str] = None


class PaymentStatusResponse(BaseModel):
    """Current stored payment state."""

    model_config = ConfigDict(from_attributes=True)

    payment_id: UUID
    order_id: UUID
    order_status: OrderStatus
    status: PaymentStatus
    method: PaymentMethod
    amount: Decimal
    currency: str
    payment_url: Optional[str] = None
    gateway_reference: Optional[str] = None
    needs_review: bool = False
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
