"""
Gateway callback signature verification.

The gateway signs callbacks with HMAC-SHA512 over the concatenation, with no
separator, of ProductCode, Amount, ProductType, PaymentMethod, status,
easykashRef and customerReference, hex encoded. Some callbacks arrive without
a signature or without the fields needed to compute one; those are reported
as not applicable rather than invalid, and are processed under the
idempotent transition rules alone.
"""

import hashlib
import hmac
from enum import Enum
from typing import Optional

from orderflow.core.logging import get_logger
from orderflow.schemas.payments import GatewayCallback

logger = get_logger(__name__)


class SignatureVerdict(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    NOT_APPLICABLE = "not_applicable"


def signed_message(callback: GatewayCallback) -> str:
    """Concatenate the signed callback fields in gateway order."""
    parts = [
        callback.product_code,
        callback.amount,
        callback.product_type,
        callback.payment_method,
        callback.status,
        callback.easykash_ref,
        callback.customer_reference,
    ]
    return "".join(part or "" for part in parts)


def compute_signature(message: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha512).hexdigest()


def check_signature(callback: GatewayCallback, secret: Optional[str]) -> SignatureVerdict:
    """
    Classify a callback's signature.

    Args:
        callback: Parsed callback
        secret: Shared HMAC secret, or None when not configured

    Returns:
        VALID, INVALID, or NOT_APPLICABLE
    """
    if not callback.signature_hash:
        logger.info("Callback carries no signature")
        return SignatureVerdict.NOT_APPLICABLE
    if not callback.product_code or not callback.product_type:
        logger.info("Callback lacks fields required for signature verification")
        return SignatureVerdict.NOT_APPLICABLE
    if not secret:
        logger.warning("Callback signature present but no HMAC secret configured")
        return SignatureVerdict.NOT_APPLICABLE

    expected = compute_signature(signed_message(callback), secret)
    if hmac.compare_digest(expected.lower(), callback.signature_hash.strip().lower()):
        return SignatureVerdict.VALID

    logger.warning(
        "Callback signature mismatch",
        product_code=callback.product_code,
        easykash_ref=callback.easykash_ref,
    )
    return SignatureVerdict.INVALID


def verify_signature(callback: GatewayCallback, secret: Optional[str]) -> bool:
    """Return False only for a signature that was checked and did not match."""
    return check_signature(callback, secret) != SignatureVerdict.INVALID
