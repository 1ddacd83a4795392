"""
Callback-to-payment matching.

A gateway callback may carry any subset of the identifiers we sent or the
gateway assigned. Matchers are tried in a fixed order and the first one that
finds a payment wins:

1. ``correlation_token``: the merchant reference we sent, parsed as JSON
   holding ``orderId`` (and ``paymentId``); a bare value is taken as the
   order id.
2. ``gateway_reference``: ``easykashRef`` against the stored reference or
   session code.
3. ``product_code``: ``ProductCode`` against the stored session code.
4. ``amount``: the newest pending gateway payment with exactly the callback
   amount. Concurrent payments of the same amount make this ambiguous, so a
   match here is reported as low confidence.
"""

import json
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from orderflow.core.logging import get_logger
from orderflow.core.money import to_money
from orderflow.database.models.order import PaymentMethod
from orderflow.database.models.payment import Payment
from orderflow.schemas.payments import GatewayCallback
from orderflow.services.payments.repository import PaymentRepository

logger = get_logger(__name__)


@dataclass(frozen=True)
class CorrelationToken:
    """Decoded merchant reference."""

    order_id: uuid.UUID
    payment_id: Optional[uuid.UUID] = None
    customer_id: Optional[uuid.UUID] = None


@dataclass(frozen=True)
class MatchResult:
    payment: Payment
    strategy: str
    low_confidence: bool = False


def encode_correlation_token(
    order_id: uuid.UUID,
    payment_id: uuid.UUID,
    customer_id: Optional[uuid.UUID],
) -> str:
    """Build the merchant reference sent to the gateway."""
    return json.dumps(
        {
            "orderId": str(order_id),
            "paymentId": str(payment_id),
            "userId": str(customer_id) if customer_id else None,
        },
        separators=(",", ":"),
    )


def _parse_uuid(value: Any) -> Optional[uuid.UUID]:
    if value is None:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def parse_correlation_token(raw: Optional[str]) -> Optional[CorrelationToken]:
    """
    Decode a merchant reference.

    Args:
        raw: Reference as echoed by the gateway

    Returns:
        Decoded token, or None when no order id can be recovered
    """
    if not raw or not raw.strip():
        return None
    raw = raw.strip()
    try:
        data = json.loads(raw)
    except ValueError:
        data = raw

    if isinstance(data, dict):
        order_id = _parse_uuid(data.get("orderId"))
        if order_id is None:
            return None
        return CorrelationToken(
            order_id=order_id,
            payment_id=_parse_uuid(data.get("paymentId")),
            customer_id=_parse_uuid(data.get("userId")),
        )

    order_id = _parse_uuid(data)
    if order_id is None:
        return None
    return CorrelationToken(order_id=order_id)


Matcher = Callable[[PaymentRepository, GatewayCallback], Awaitable[Optional[Payment]]]


async def match_by_correlation_token(
    repository: PaymentRepository, callback: GatewayCallback
) -> Optional[Payment]:
    token = parse_correlation_token(callback.customer_reference)
    if token is None:
        return None
    if token.payment_id is not None:
        payment = await repository.get_by_id(token.payment_id)
        if payment is not None and payment.order_id == token.order_id:
            return payment
    return await repository.get_latest_for_order(token.order_id, method=PaymentMethod.GATEWAY)


async def match_by_gateway_reference(
    repository: PaymentRepository, callback: GatewayCallback
) -> Optional[Payment]:
    if not callback.easykash_ref:
        return None
    return await repository.find_by_gateway_reference(callback.easykash_ref)


async def match_by_product_code(
    repository: PaymentRepository, callback: GatewayCallback
) -> Optional[Payment]:
    if not callback.product_code:
        return None
    return await repository.find_by_product_code(callback.product_code)


async def match_by_amount(
    repository: PaymentRepository, callback: GatewayCallback
) -> Optional[Payment]:
    amount = callback.amount_decimal
    if amount is None:
        return None
    return await repository.find_latest_pending_by_amount(to_money(amount))


MATCHERS: list[tuple[str, Matcher, bool]] = [
    ("correlation_token", match_by_correlation_token, False),
    ("gateway_reference", match_by_gateway_reference, False),
    ("product_code", match_by_product_code, False),
    ("amount", match_by_amount, True),
]


def search_criteria(callback: GatewayCallback) -> dict[str, Optional[str]]:
    """Identifiers a callback was matched on, for logs."""
    return {
        "customer_reference": callback.customer_reference,
        "easykash_ref": callback.easykash_ref,
        "product_code": callback.product_code,
        "amount": callback.amount,
    }


class CallbackMatcher:
    """Resolve a callback to a payment with the ordered matchers."""

    def __init__(
        self,
        repository: PaymentRepository,
        matchers: Optional[list[tuple[str, Matcher, bool]]] = None,
    ):
        self.repository = repository
        self.matchers = matchers if matchers is not None else MATCHERS

    async def match(self, callback: GatewayCallback) -> Optional[MatchResult]:
        """
        Try each matcher in order.

        Returns:
            The first match, or None when nothing matched
        """
        for name, matcher, low_confidence in self.matchers:
            payment = await matcher(self.repository, callback)
            if payment is None:
                logger.debug("Callback matcher found nothing", strategy=name)
                continue

            if low_confidence:
                logger.warning(
                    "Callback matched by amount only",
                    strategy=name,
                    low_confidence=True,
                    payment_id=str(payment.id),
                    order_id=str(payment.order_id),
                    **search_criteria(callback),
                )
            else:
                logger.info(
                    "Callback matched",
                    strategy=name,
                    payment_id=str(payment.id),
                    order_id=str(payment.order_id),
                )
            return MatchResult(payment=payment, strategy=name, low_confidence=low_confidence)

        return None
