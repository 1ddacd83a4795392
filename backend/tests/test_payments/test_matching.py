"""
Tests for callback-to-payment matching.

Matchers run in a fixed order; the first payment found wins and only the
amount matcher reports low confidence.
"""

import json
import uuid
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from orderflow.database.models import PaymentMethod
from orderflow.services.payments.matching import (
    CallbackMatcher,
    encode_correlation_token,
    parse_correlation_token,
)
from orderflow.services.payments.repository import PaymentRepository
from tests.factories import make_callback, make_order, make_payment


@pytest.fixture
def repository() -> AsyncMock:
    repo = AsyncMock(spec=PaymentRepository)
    repo.get_by_id.return_value = None
    repo.get_latest_for_order.return_value = None
    repo.find_by_gateway_reference.return_value = None
    repo.find_by_product_code.return_value = None
    repo.find_latest_pending_by_amount.return_value = None
    return repo


@pytest.fixture
def matcher(repository) -> CallbackMatcher:
    return CallbackMatcher(repository)


class TestCorrelationToken:
    def test_encode_is_compact_json(self):
        order_id, payment_id = uuid.uuid4(), uuid.uuid4()
        token = encode_correlation_token(order_id, payment_id, None)

        assert " " not in token
        assert json.loads(token) == {
            "orderId": str(order_id),
            "paymentId": str(payment_id),
            "userId": None,
        }

    def test_parse_round_trip(self):
        order_id, payment_id, customer_id = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
        token = parse_correlation_token(
            encode_correlation_token(order_id, payment_id, customer_id)
        )
        assert token.order_id == order_id
        assert token.payment_id == payment_id
        assert token.customer_id == customer_id

    def test_bare_order_id(self):
        order_id = uuid.uuid4()
        token = parse_correlation_token(f"  {order_id}  ")
        assert token.order_id == order_id
        assert token.payment_id is None

    @pytest.mark.parametrize(
        "raw",
        [None, "", "   ", "TEST11111", '{"paymentId": "x"}', '{"orderId": "nope"}', "[1, 2]"],
    )
    def test_unrecoverable(self, raw):
        assert parse_correlation_token(raw) is None


class TestCallbackMatcher:
    @pytest.mark.asyncio
    async def test_correlation_token_with_payment_id(self, matcher, repository):
        order = make_order()
        payment = make_payment(order)
        repository.get_by_id.return_value = payment

        result = await matcher.match(make_callback(customerReference=payment.correlation_token))

        assert result.payment is payment
        assert result.strategy == "correlation_token"
        assert result.low_confidence is False
        repository.find_by_gateway_reference.assert_not_called()

    @pytest.mark.asyncio
    async def test_payment_id_from_other_order_falls_back(self, matcher, repository):
        order = make_order()
        stranger = make_payment()
        latest = make_payment(order)
        repository.get_by_id.return_value = stranger
        repository.get_latest_for_order.return_value = latest
        reference = encode_correlation_token(order.id, stranger.id, None)

        result = await matcher.match(make_callback(customerReference=reference))

        assert result.payment is latest
        repository.get_latest_for_order.assert_awaited_once_with(
            order.id, method=PaymentMethod.GATEWAY
        )

    @pytest.mark.asyncio
    async def test_gateway_reference(self, matcher, repository):
        payment = make_payment()
        repository.find_by_gateway_reference.return_value = payment

        result = await matcher.match(make_callback(customerReference="garbage"))

        assert result.strategy == "gateway_reference"
        repository.find_by_gateway_reference.assert_awaited_once_with("2911105009")

    @pytest.mark.asyncio
    async def test_product_code(self, matcher, repository):
        payment = make_payment()
        repository.find_by_product_code.return_value = payment

        result = await matcher.match(make_callback(easykashRef=None))

        assert result.payment is payment
        assert result.strategy == "product_code"

    @pytest.mark.asyncio
    async def test_amount_is_low_confidence(self, matcher, repository):
        payment = make_payment(amount="10.05")
        repository.find_latest_pending_by_amount.return_value = payment

        result = await matcher.match(
            make_callback(ProductCode=None, easykashRef=None, Amount=10.05)
        )

        assert result.strategy == "amount"
        assert result.low_confidence is True
        repository.find_latest_pending_by_amount.assert_awaited_once_with(Decimal("10.05"))

    @pytest.mark.asyncio
    async def test_no_match(self, matcher, repository):
        assert await matcher.match(make_callback(Amount="not-a-number")) is None
        repository.find_latest_pending_by_amount.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["Infinity", "NaN", "1e400"])
    async def test_unusable_amount_never_queried(self, matcher, repository, amount):
        callback = make_callback(ProductCode=None, easykashRef=None, Amount=amount)

        assert await matcher.match(callback) is None
        repository.find_latest_pending_by_amount.assert_not_called()


class TestCallbackAmount:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("90", Decimal("90.00")),
            (" 90.005 ", Decimal("90.01")),
            ("1e2", Decimal("100.00")),
        ],
    )
    def test_parsed_to_money(self, raw, expected):
        assert make_callback(Amount=raw).amount_decimal == expected

    @pytest.mark.parametrize(
        "raw", ["Infinity", "-Infinity", "NaN", "sNaN", "1e400", "ninety", ""]
    )
    def test_unusable_values_are_none(self, raw):
        assert make_callback(Amount=raw).amount_decimal is None

    def test_absent(self):
        assert make_callback(Amount=None).amount_decimal is None
