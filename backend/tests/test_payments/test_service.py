"""
Test suite for PaymentService.

Covers gateway payment initiation guards, callback handling (matching,
signature rejection, audit fields, amount discrepancies), status reads that
expire abandoned payments, and customer cancels. Repositories, the gateway,
and the reconciler are mocked.
"""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from orderflow.core.exceptions import (
    AlreadyPaidError,
    AmountMismatchError,
    GatewayTimeoutError,
    InvalidCallbackSignatureError,
    InvalidStatusTransitionError,
    OrderNotFoundError,
    OrderNotPayableError,
    PaymentNotFoundError,
)
from orderflow.core.security import Principal
from orderflow.database.models import OrderStatus, PaymentMethod, PaymentStatus
from orderflow.services.orders.repository import OrderRepository
from orderflow.services.payments.gateway import GatewayClient, GatewayPaymentPage
from orderflow.services.payments.matching import parse_correlation_token
from orderflow.services.payments.reconciler import CallbackReconciler, TransitionResult
from orderflow.services.payments.repository import PaymentRepository
from orderflow.services.payments.service import PaymentService
from orderflow.services.payments.signature import compute_signature, signed_message
from tests.factories import TEST_HMAC_SECRET, make_callback, make_order, make_payment

PAYMENT_URL = "https://www.easykash.net/DirectPayV1/EDV4471"


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def repository() -> AsyncMock:
    repo = AsyncMock(spec=PaymentRepository)
    repo.get_by_id.return_value = None
    repo.get_latest_for_order.return_value = None
    repo.find_by_gateway_reference.return_value = None
    repo.find_by_product_code.return_value = None
    repo.find_latest_pending_by_amount.return_value = None
    repo.find_active_for_order.return_value = None
    return repo


@pytest.fixture
def orders() -> AsyncMock:
    repo = AsyncMock(spec=OrderRepository)
    repo.transition_status.return_value = True
    return repo


@pytest.fixture
def gateway() -> AsyncMock:
    client = AsyncMock(spec=GatewayClient)
    client.create_payment_page.return_value = GatewayPaymentPage(
        payment_url=PAYMENT_URL, product_code="EDV4471"
    )
    return client


@pytest.fixture
def reconciler() -> AsyncMock:
    mock = AsyncMock(spec=CallbackReconciler)
    mock.apply.return_value = TransitionResult(
        True, PaymentStatus.PENDING, PaymentStatus.COMPLETED
    )
    return mock


@pytest.fixture
def service(mock_session, settings, repository, orders, gateway, reconciler) -> PaymentService:
    return PaymentService(
        mock_session,
        gateway,
        settings=settings,
        repository=repository,
        orders=orders,
        reconciler=reconciler,
    )


def stale() -> datetime:
    return datetime.now(timezone.utc) - timedelta(hours=2)


# ============================================================================
# Initiation
# ============================================================================


class TestInitiatePayment:
    @pytest.mark.asyncio
    async def test_creates_payment_and_stores_product_code(
        self, service, orders, repository, gateway, mock_session
    ):
        order = make_order(total="90.00")
        orders.get_order.return_value = order

        result = await service.initiate_payment(order.id, Decimal("90.00"))

        orders.get_order.assert_awaited_once_with(order.id, lock=True)
        payment = repository.add.await_args.args[0]
        assert payment.method == PaymentMethod.GATEWAY
        assert payment.amount == Decimal("90.00")
        assert payment.status == PaymentStatus.PENDING
        token = parse_correlation_token(payment.correlation_token)
        assert token.order_id == order.id
        assert token.payment_id == payment.id

        request = gateway.create_payment_page.await_args.args[0]
        assert request.correlation_token == payment.correlation_token
        assert request.customer_name == "Mona Adel"

        repository.update_fields.assert_awaited_once_with(
            payment, {"payment_url": PAYMENT_URL, "gateway_product_code": "EDV4471"}
        )
        assert result.payment_url == PAYMENT_URL
        assert result.product_code == "EDV4471"
        assert mock_session.commit.await_count == 2

    @pytest.mark.asyncio
    async def test_contact_overrides(self, service, orders, gateway):
        orders.get_order.return_value = make_order()

        await service.initiate_payment(
            uuid.uuid4(),
            Decimal("90.00"),
            customer_name="Other Name",
            customer_mobile="01111111111",
        )

        request = gateway.create_payment_page.await_args.args[0]
        assert request.customer_name == "Other Name"
        assert request.customer_mobile == "01111111111"
        assert request.customer_email == "mona@example.com"

    @pytest.mark.asyncio
    async def test_reuses_fresh_pending_payment(self, service, orders, repository, gateway):
        order = make_order()
        existing = make_payment(order)
        orders.get_order.return_value = order
        repository.find_active_for_order.return_value = existing

        result = await service.initiate_payment(order.id, Decimal("90.00"))

        repository.add.assert_not_called()
        assert result.payment is existing
        repository.find_active_for_order.assert_awaited_once_with(
            order.id, PaymentMethod.GATEWAY
        )

    @pytest.mark.asyncio
    async def test_stale_pending_payment_expires_order(
        self, service, orders, repository, gateway, reconciler, mock_session
    ):
        order = make_order()
        orders.get_order.return_value = order
        repository.find_active_for_order.return_value = make_payment(order, created_at=stale())
        reconciler.apply.return_value = TransitionResult(
            True, PaymentStatus.PENDING, PaymentStatus.CANCELLED
        )

        with pytest.raises(OrderNotPayableError):
            await service.initiate_payment(order.id, Decimal("90.00"))

        gateway.create_payment_page.assert_not_called()
        mock_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_order_never_sent_to_gateway_expires(
        self, service, orders, repository, gateway, mock_session
    ):
        order = make_order(voucher_code="SAVE20", created_at=stale())
        orders.get_order.return_value = order

        with pytest.raises(OrderNotPayableError):
            await service.initiate_payment(order.id, Decimal("90.00"))

        orders.transition_status.assert_awaited_once_with(
            order, [OrderStatus.PENDING], OrderStatus.CANCELLED
        )
        repository.find_active_for_order.assert_not_called()
        gateway.create_payment_page.assert_not_called()
        mock_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_amount_mismatch(self, service, orders, gateway, repository):
        orders.get_order.return_value = make_order(total="90.00")

        with pytest.raises(AmountMismatchError) as exc_info:
            await service.initiate_payment(uuid.uuid4(), Decimal("100.00"))

        assert exc_info.value.context["total"] == "90.00"
        repository.add.assert_not_called()
        gateway.create_payment_page.assert_not_called()

    @pytest.mark.asyncio
    async def test_confirmed_order_already_paid(self, service, orders):
        orders.get_order.return_value = make_order(status=OrderStatus.CONFIRMED)

        with pytest.raises(AlreadyPaidError):
            await service.initiate_payment(uuid.uuid4(), Decimal("90.00"))

    @pytest.mark.asyncio
    async def test_completed_gateway_payment_already_paid(self, service, orders):
        order = make_order()
        make_payment(order, status=PaymentStatus.COMPLETED)
        orders.get_order.return_value = order

        with pytest.raises(AlreadyPaidError):
            await service.initiate_payment(order.id, Decimal("90.00"))

    @pytest.mark.asyncio
    async def test_cod_order_not_payable(self, service, orders):
        orders.get_order.return_value = make_order(payment_method=PaymentMethod.COD)

        with pytest.raises(OrderNotPayableError):
            await service.initiate_payment(uuid.uuid4(), Decimal("90.00"))

    @pytest.mark.asyncio
    async def test_cancelled_order_not_payable(self, service, orders):
        orders.get_order.return_value = make_order(status=OrderStatus.CANCELLED)

        with pytest.raises(OrderNotPayableError):
            await service.initiate_payment(uuid.uuid4(), Decimal("90.00"))

    @pytest.mark.asyncio
    async def test_unknown_order(self, service, orders):
        orders.get_order.return_value = None

        with pytest.raises(OrderNotFoundError):
            await service.initiate_payment(uuid.uuid4(), Decimal("90.00"))

    @pytest.mark.asyncio
    async def test_other_customers_order_hidden(self, service, orders):
        orders.get_order.return_value = make_order(customer_id=uuid.uuid4())

        with pytest.raises(OrderNotFoundError):
            await service.initiate_payment(
                uuid.uuid4(), Decimal("90.00"), principal=Principal(uuid.uuid4())
            )

    @pytest.mark.asyncio
    async def test_gateway_timeout_leaves_payment_pending(
        self, service, orders, repository, gateway, mock_session
    ):
        orders.get_order.return_value = make_order()
        gateway.create_payment_page.side_effect = GatewayTimeoutError("timed out")

        with pytest.raises(GatewayTimeoutError):
            await service.initiate_payment(uuid.uuid4(), Decimal("90.00"))

        repository.add.assert_awaited_once()
        repository.update_fields.assert_not_called()
        mock_session.commit.assert_awaited_once()


# ============================================================================
# Callbacks
# ============================================================================


class TestHandleCallback:
    @pytest.mark.asyncio
    async def test_paid_callback_matched_by_token(
        self, service, repository, reconciler, mock_session
    ):
        order = make_order()
        payment = make_payment(order)
        repository.get_by_id.return_value = payment
        callback = make_callback(customerReference=payment.correlation_token)

        outcome = await service.handle_callback(callback, raw_payload={"status": "PAID"})

        args, kwargs = reconciler.apply.await_args
        assert args == (payment, PaymentStatus.COMPLETED)
        assert kwargs["source"] == "callback"
        fields = kwargs["fields"]
        assert fields["matched_by"] == "correlation_token"
        assert fields["needs_review"] is False
        assert fields["gateway_reference"] == "2911105009"
        assert fields["gateway_product_code"] == "EDV4471"
        assert fields["gateway_payment_method"] == "Cash Through Fawry"
        assert fields["callback_payload"] == {"status": "PAID"}
        assert "failure_reason" not in fields

        assert outcome.applied is True
        assert outcome.strategy == "correlation_token"
        assert outcome.message == "Payment updated"
        mock_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_valid_signature_accepted(self, service, repository, reconciler):
        payment = make_payment()
        repository.find_by_gateway_reference.return_value = payment
        unsigned = make_callback()
        callback = make_callback(
            signatureHash=compute_signature(signed_message(unsigned), TEST_HMAC_SECRET)
        )

        outcome = await service.handle_callback(callback)

        assert outcome.applied is True
        reconciler.apply.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_invalid_signature_rejected_without_changes(
        self, service, repository, reconciler, mock_session
    ):
        repository.find_by_gateway_reference.return_value = make_payment()

        with pytest.raises(InvalidCallbackSignatureError):
            await service.handle_callback(make_callback(signatureHash="0" * 128))

        reconciler.apply.assert_not_called()
        repository.update_fields.assert_not_called()
        mock_session.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_unmatched_callback(self, service, reconciler):
        with pytest.raises(PaymentNotFoundError) as exc_info:
            await service.handle_callback(make_callback(Amount=None))

        assert exc_info.value.context["easykash_ref"] == "2911105009"
        reconciler.apply.assert_not_called()

    @pytest.mark.asyncio
    async def test_amount_match_flags_review(self, service, repository, reconciler):
        repository.find_latest_pending_by_amount.return_value = make_payment()

        await service.handle_callback(make_callback(ProductCode=None, easykashRef=None))

        fields = reconciler.apply.await_args.kwargs["fields"]
        assert fields["matched_by"] == "amount"
        assert fields["needs_review"] is True

    @pytest.mark.asyncio
    async def test_amount_discrepancy_flags_review(self, service, repository, reconciler):
        repository.find_by_gateway_reference.return_value = make_payment(amount="90.00")

        await service.handle_callback(make_callback(Amount="45.00"))

        fields = reconciler.apply.await_args.kwargs["fields"]
        assert fields["needs_review"] is True

    @pytest.mark.asyncio
    async def test_failure_records_reason(self, service, repository, reconciler):
        repository.find_by_gateway_reference.return_value = make_payment()

        await service.handle_callback(make_callback(status="FAILED"))

        args, kwargs = reconciler.apply.await_args
        assert args[1] == PaymentStatus.FAILED
        assert kwargs["fields"]["failure_reason"] == "Gateway reported FAILED"

    @pytest.mark.asyncio
    async def test_known_product_code_not_overwritten(self, service, repository, reconciler):
        repository.find_by_gateway_reference.return_value = make_payment(
            gateway_product_code="ORIGINAL"
        )

        await service.handle_callback(make_callback())

        assert "gateway_product_code" not in reconciler.apply.await_args.kwargs["fields"]

    @pytest.mark.asyncio
    async def test_duplicate_keeps_audit_fields_current(
        self, service, repository, reconciler, mock_session
    ):
        payment = make_payment(status=PaymentStatus.COMPLETED)
        repository.find_by_gateway_reference.return_value = payment
        reconciler.apply.return_value = TransitionResult(
            False, PaymentStatus.COMPLETED, PaymentStatus.COMPLETED, "duplicate"
        )

        outcome = await service.handle_callback(make_callback())

        assert outcome.applied is False
        assert outcome.message == "No change (duplicate)"
        audit_payment, audit = repository.update_fields.await_args.args
        assert audit_payment is payment
        assert audit["matched_by"] == "gateway_reference"
        assert "failure_reason" not in audit
        mock_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_late_success_records_audit_without_reopening(
        self, service, repository, reconciler, mock_session
    ):
        payment = make_payment(status=PaymentStatus.CANCELLED)
        repository.find_by_gateway_reference.return_value = payment
        reconciler.apply.return_value = TransitionResult(
            False, PaymentStatus.CANCELLED, PaymentStatus.CANCELLED, "late_success"
        )

        outcome = await service.handle_callback(make_callback(), raw_payload={"status": "PAID"})

        assert outcome.applied is False
        assert outcome.message == "No change (late_success)"
        audit_payment, audit = repository.update_fields.await_args.args
        assert audit_payment is payment
        assert audit["gateway_reference"] == "2911105009"
        assert audit["gateway_payment_method"] == "Cash Through Fawry"
        assert audit["callback_payload"] == {"status": "PAID"}
        assert audit["matched_by"] == "gateway_reference"
        assert audit["needs_review"] is True
        assert "status" not in audit
        assert "failure_reason" not in audit
        mock_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unsigned_callback_with_wrong_amount_applies_and_flags_review(
        self, service, repository, reconciler
    ):
        order = make_order(total="90.00")
        payment = make_payment(order, amount="90.00")
        repository.get_by_id.return_value = payment
        callback = make_callback(customerReference=payment.correlation_token, Amount="45.00")
        assert callback.signature_hash is None

        outcome = await service.handle_callback(callback)

        args, kwargs = reconciler.apply.await_args
        assert args == (payment, PaymentStatus.COMPLETED)
        assert kwargs["fields"]["matched_by"] == "correlation_token"
        assert kwargs["fields"]["needs_review"] is True
        assert outcome.applied is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["Infinity", "-Infinity", "NaN", "1e400", "ninety"])
    async def test_unusable_amount_flags_review_instead_of_failing(
        self, service, repository, reconciler, mock_session, amount
    ):
        payment = make_payment()
        repository.get_by_id.return_value = payment
        callback = make_callback(customerReference=payment.correlation_token, Amount=amount)

        outcome = await service.handle_callback(callback)

        args, kwargs = reconciler.apply.await_args
        assert args == (payment, PaymentStatus.COMPLETED)
        assert kwargs["fields"]["needs_review"] is True
        assert outcome.applied is True
        mock_session.commit.assert_awaited_once()


# ============================================================================
# Reads
# ============================================================================


class TestPaymentReads:
    @pytest.mark.asyncio
    async def test_status_read_expires_abandoned_payment(
        self, service, repository, orders, reconciler, mock_session
    ):
        order = make_order()
        payment = make_payment(order, created_at=stale())
        repository.get_by_id.return_value = payment
        orders.get_order.return_value = order
        reconciler.apply.return_value = TransitionResult(
            True, PaymentStatus.PENDING, PaymentStatus.CANCELLED
        )

        result_payment, result_order = await service.get_payment_status(payment.id)

        assert result_payment is payment
        assert result_order is order
        assert reconciler.apply.await_args.kwargs["source"] == "expiry"
        mock_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_fresh_payment_read_has_no_side_effects(
        self, service, repository, orders, reconciler, mock_session
    ):
        order = make_order()
        payment = make_payment(order)
        repository.get_by_id.return_value = payment
        orders.get_order.return_value = order

        await service.get_payment_status(payment.id)

        reconciler.apply.assert_not_called()
        mock_session.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_payment(self, service):
        with pytest.raises(PaymentNotFoundError):
            await service.get_payment_status(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_order_payment_status(self, service, repository, orders):
        order = make_order()
        payment = make_payment(order)
        repository.get_latest_for_order.return_value = payment
        orders.get_order.return_value = order

        result_payment, _ = await service.get_order_payment_status(order.id)

        assert result_payment is payment
        repository.get_latest_for_order.assert_awaited_once_with(order.id)

    @pytest.mark.asyncio
    async def test_customer_reference_lookup(self, service, repository, orders):
        order = make_order()
        payment = make_payment(order)
        repository.get_by_id.return_value = payment
        orders.get_order.return_value = order

        result_payment, result_order = await service.get_by_customer_reference(
            payment.correlation_token
        )

        assert result_payment is payment
        assert result_order is order

    @pytest.mark.asyncio
    async def test_customer_reference_with_bare_order_id(self, service, repository, orders):
        order = make_order()
        payment = make_payment(order)
        repository.get_latest_for_order.return_value = payment
        orders.get_order.return_value = order

        result_payment, _ = await service.get_by_customer_reference(str(order.id))

        assert result_payment is payment
        repository.get_latest_for_order.assert_awaited_once_with(
            order.id, method=PaymentMethod.GATEWAY
        )

    @pytest.mark.asyncio
    async def test_unrecognized_reference(self, service):
        with pytest.raises(PaymentNotFoundError):
            await service.get_by_customer_reference("TEST11111")


# ============================================================================
# Customer cancel
# ============================================================================


class TestCancelPayment:
    @pytest.mark.asyncio
    async def test_cancels_pending_payment(
        self, service, repository, orders, reconciler, mock_session
    ):
        order = make_order()
        payment = make_payment(order)
        repository.get_by_id.return_value = payment
        orders.get_order.return_value = order
        reconciler.apply.return_value = TransitionResult(
            True, PaymentStatus.PENDING, PaymentStatus.CANCELLED
        )

        assert await service.cancel_payment(payment.id) is payment

        reconciler.apply.assert_awaited_once_with(
            payment,
            PaymentStatus.CANCELLED,
            source="customer",
            fields={"failure_reason": "Cancelled by customer"},
            order=order,
        )
        mock_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_completed_payment_cannot_be_cancelled(self, service, repository, orders):
        order = make_order(status=OrderStatus.CONFIRMED)
        payment = make_payment(order, status=PaymentStatus.COMPLETED)
        repository.get_by_id.return_value = payment
        orders.get_order.return_value = order

        with pytest.raises(InvalidStatusTransitionError):
            await service.cancel_payment(payment.id)

    @pytest.mark.asyncio
    async def test_lost_race_reported(self, service, repository, orders, reconciler):
        order = make_order()
        payment = make_payment(order)
        repository.get_by_id.return_value = payment
        orders.get_order.return_value = order
        reconciler.apply.return_value = TransitionResult(
            False, PaymentStatus.COMPLETED, PaymentStatus.COMPLETED, "concurrent"
        )

        with pytest.raises(InvalidStatusTransitionError):
            await service.cancel_payment(payment.id)
