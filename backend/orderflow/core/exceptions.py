"""
Domain exceptions for checkout, voucher, and payment operations.

Every error a customer or operator can see derives from CheckoutError. Each
subclass carries a stable machine-readable code and the HTTP status the API
layer answers with; structured context travels alongside for logging.
"""

from typing import Any


class CheckoutError(Exception):
    """Base exception for order, voucher, and payment errors."""

    code: str = "CHECKOUT_ERROR"
    status_code: int = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class InvalidProductError(CheckoutError):
    """Raised when a product is unknown or no longer sold."""

    code = "INVALID_PRODUCT"
    status_code = 400


class InsufficientStockError(CheckoutError):
    """Raised when tracked stock is below the requested quantity."""

    code = "INSUFFICIENT_STOCK"
    status_code = 409


class VoucherNotFoundError(CheckoutError):
    code = "VOUCHER_NOT_FOUND"
    status_code = 404


class VoucherNotActiveError(CheckoutError):
    code = "VOUCHER_NOT_ACTIVE"
    status_code = 400


class VoucherAlreadyUsedError(CheckoutError):
    code = "VOUCHER_ALREADY_USED"
    status_code = 409


class VoucherWrongOwnerError(CheckoutError):
    code = "VOUCHER_WRONG_OWNER"
    status_code = 403


class VoucherExpiredError(CheckoutError):
    code = "VOUCHER_EXPIRED"
    status_code = 400


class VoucherValidationError(CheckoutError):
    """Raised when voucher administration input is invalid."""

    code = "VOUCHER_VALIDATION_ERROR"
    status_code = 400


class AmountMismatchError(CheckoutError):
    """Raised when a payment amount differs from the order total."""

    code = "AMOUNT_MISMATCH"
    status_code = 400


class AlreadyPaidError(CheckoutError):
    code = "ALREADY_PAID"
    status_code = 409


class OrderNotPayableError(CheckoutError):
    """Raised when payment is requested for an order that is not pending."""

    code = "ORDER_NOT_PAYABLE"
    status_code = 409


class PaymentNotFoundError(CheckoutError):
    code = "PAYMENT_NOT_FOUND"
    status_code = 404


class InvalidCallbackSignatureError(CheckoutError):
    code = "INVALID_CALLBACK_SIGNATURE"
    status_code = 401


class OrderNotFoundError(CheckoutError):
    code = "ORDER_NOT_FOUND"
    status_code = 404


class InvalidStatusTransitionError(CheckoutError):
    """Raised when an order or payment status change is not allowed."""

    code = "INVALID_STATUS_TRANSITION"
    status_code = 409


class GatewayError(CheckoutError):
    """Raised when the hosted payment gateway rejects or fails a request."""

    code = "GATEWAY_ERROR"
    status_code = 502


class GatewayTimeoutError(GatewayError):
    """Raised when the gateway does not answer within the configured timeout."""

    code = "GATEWAY_TIMEOUT"
    status_code = 504
