"""Order intake, voucher redemption, and payment reconciliation backend."""

__version__ = "1.0.0"
