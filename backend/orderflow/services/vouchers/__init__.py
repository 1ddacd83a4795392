"""Voucher ledger."""

from orderflow.services.vouchers.repository import VoucherRepository, normalize_code
from orderflow.services.vouchers.service import (
    VoucherQuote,
    VoucherService,
    calculate_discount,
)

__all__ = [
    "VoucherQuote",
    "VoucherRepository",
    "VoucherService",
    "calculate_discount",
    "normalize_code",
]
