"""Voucher schemas for administration and customer previews."""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from orderflow.database.models.voucher import DiscountType


class VoucherCreateRequest(BaseModel):
    """Request schema for creating a voucher."""

    customer_id: UUID = Field(..., description="Owning customer")
    discount_type: DiscountType
    discount_value: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    code: Optional[str] = Field(
        None,
        min_length=3,
        max_length=50,
        pattern=r"^[A-Za-z0-9\-_]+$",
        description="Explicit code; generated when omitted",
    )
    phone_number: Optional[str] = Field(None, max_length=32)
    expires_at: Optional[datetime] = None
    is_active: bool = True

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "customer_id": "123e4567-e89b-12d3-a456-426614174000",
                    "discount_type": "percentage",
                    "discount_value": "15",
                }
            ]
        }
    }


class VoucherResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    discount_type: DiscountType
    discount_value: Decimal
    customer_id: UUID
    phone_number: Optional[str] = None
    is_active: bool
    is_used: bool
    used_at: Optional[datetime] = None
    used_order_id: Optional[UUID] = None
    expires_at: Optional[datetime] = None
    created_at: datetime


class VoucherValidateRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    subtotal: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)


class VoucherValidateResponse(BaseModel):
    code: str
    discount_type: DiscountType
    discount_value: Decimal
    discount: Decimal


class VoucherStatsResponse(BaseModel):
    total: int
    active: int
    used: int
    inactive: int


class VoucherListResponse(BaseModel):
    items: list[VoucherResponse]
    total: int
    limit: int
    offset: int


class VoucherRecipient(BaseModel):
    customer_id: UUID
    phone_number: Optional[str] = Field(None, max_length=32)


class VoucherBulkCreateRequest(BaseModel):
    """Issue the same discount to many customers in one batch."""

    recipients: list[VoucherRecipient] = Field(..., min_length=1, max_length=500)
    discount_type: DiscountType
    discount_value: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    expires_at: Optional[datetime] = None
    code_prefix: Optional[str] = Field(
        None,
        min_length=1,
        max_length=20,
        pattern=r"^[A-Za-z0-9]+$",
        description="Prefix for generated codes, e.g. SUMMER gives SUMMER-XXXXXX",
    )


class VoucherBulkFailureResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    customer_id: UUID
    reason: str


class VoucherBulkCreateResponse(BaseModel):
    created: int
    failed: int
    vouchers: list[VoucherResponse]
    failures: list[VoucherBulkFailureResponse] = []


class VoucherBulkActionResponse(BaseModel):
    affected: int = Field(..., description="Number of vouchers changed")
