"""
Access token handling for customers and operators.

Tokens are issued by the authentication service; this module only verifies
them and turns the claims into a Principal. ``sub`` carries the customer
UUID and ``role`` is ``customer`` or ``admin``.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from orderflow.core.config import Settings, get_settings
from orderflow.core.logging import get_logger

logger = get_logger(__name__)


class Role(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


class TokenError(Exception):
    """Raised when an access token is missing, malformed, or expired."""

    def __init__(self, message: str, code: str, **context: Any):
        super().__init__(message)
        self.code = code
        self.context = context


@dataclass(frozen=True)
class Principal:
    """Authenticated caller."""

    customer_id: uuid.UUID
    role: Role = Role.CUSTOMER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def create_access_token(
    customer_id: uuid.UUID,
    role: Role = Role.CUSTOMER,
    expires_delta: timedelta = timedelta(minutes=60),
    settings: Optional[Settings] = None,
) -> str:
    """
    Encode an access token.

    Used by operational scripts and tests; production tokens come from the
    authentication service signed with the same key.
    """
    settings = settings or get_settings()
    now = datetime.now(timezone.utc)
    claims: Dict[str, Any] = {
        "sub": str(customer_id),
        "role": role.value,
        "iat": now,
        "exp": now + expires_delta,
        "type": "access",
    }
    return jwt.encode(claims, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: Optional[Settings] = None) -> Principal:
    """
    Decode and validate an access token.

    Args:
        token: Encoded JWT
        settings: Optional settings instance

    Returns:
        Principal for the token subject

    Raises:
        TokenError: If token is invalid, expired, or malformed
    """
    if not token:
        raise TokenError("Token cannot be empty", code="EMPTY_TOKEN")

    settings = settings or get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        logger.warning(
            "Token validation failed",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise TokenError("Could not validate credentials", code="INVALID_TOKEN") from e

    subject = payload.get("sub")
    if subject is None:
        raise TokenError("Token missing subject", code="INVALID_TOKEN")
    try:
        customer_id = uuid.UUID(subject)
    except ValueError as e:
        raise TokenError("Invalid subject format", code="INVALID_TOKEN", sub=subject) from e

    try:
        role = Role(payload.get("role", Role.CUSTOMER.value))
    except ValueError as e:
        raise TokenError("Unknown role", code="INVALID_TOKEN", role=payload.get("role")) from e

    return Principal(customer_id=customer_id, role=role)
