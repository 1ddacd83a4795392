"""
Tests for payment status reconciliation.

The reconciler is the single place where payment status changes and their
order and voucher side effects are applied. Duplicate and late callbacks
must change nothing.
"""

import uuid
from unittest.mock import AsyncMock

import pytest

from orderflow.database.models import OrderStatus, PaymentMethod, PaymentStatus
from orderflow.services.orders.repository import OrderRepository
from orderflow.services.payments.reconciler import CallbackReconciler, map_gateway_status
from orderflow.services.payments.repository import PaymentRepository
from orderflow.services.vouchers.repository import VoucherRepository
from orderflow.services.vouchers.service import VoucherService
from tests.factories import make_order, make_payment, make_voucher


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def payments() -> AsyncMock:
    repo = AsyncMock(spec=PaymentRepository)

    async def transition(payment, expected, values):
        if payment.status != expected:
            return False
        for key, value in values.items():
            setattr(payment, key, value)
        return True

    repo.transition.side_effect = transition
    return repo


@pytest.fixture
def orders() -> AsyncMock:
    repo = AsyncMock(spec=OrderRepository)

    async def transition_status(order, expected, target):
        if order.status not in list(expected):
            return False
        order.status = target
        return True

    repo.transition_status.side_effect = transition_status
    return repo


@pytest.fixture
def voucher_repository() -> AsyncMock:
    return AsyncMock(spec=VoucherRepository)


@pytest.fixture
def vouchers(mock_session, settings, voucher_repository) -> VoucherService:
    service = VoucherService(mock_session, settings)
    service.repository = voucher_repository
    return service


@pytest.fixture
def reconciler(mock_session, payments, orders, vouchers) -> CallbackReconciler:
    return CallbackReconciler(mock_session, payments=payments, orders=orders, vouchers=vouchers)


# ============================================================================
# Status mapping
# ============================================================================


class TestMapGatewayStatus:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("PAID", PaymentStatus.COMPLETED),
            ("success", PaymentStatus.COMPLETED),
            ("Failed", PaymentStatus.FAILED),
            ("DECLINED", PaymentStatus.FAILED),
            ("expired", PaymentStatus.CANCELLED),
            ("canceled", PaymentStatus.CANCELLED),
            ("NEW", PaymentStatus.PENDING),
            ("refunded", PaymentStatus.REFUNDED),
        ],
    )
    def test_known_values(self, raw, expected):
        assert map_gateway_status(raw) == expected

    @pytest.mark.parametrize("raw", ["ON_HOLD", "", None])
    def test_unknown_values_stay_pending(self, raw):
        assert map_gateway_status(raw) == PaymentStatus.PENDING


class TestPaymentStateMachine:
    def test_pending_moves_anywhere_else(self):
        for target in PaymentStatus:
            expected = target != PaymentStatus.PENDING
            assert PaymentStatus.PENDING.can_transition_to(target) is expected

    def test_completed_only_refunds(self):
        assert PaymentStatus.COMPLETED.can_transition_to(PaymentStatus.REFUNDED)
        assert not PaymentStatus.COMPLETED.can_transition_to(PaymentStatus.FAILED)

    @pytest.mark.parametrize(
        "status", [PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.REFUNDED]
    )
    def test_closed_payments_never_reopen(self, status):
        assert not any(status.can_transition_to(target) for target in PaymentStatus)


# ============================================================================
# Completion
# ============================================================================


class TestCompletion:
    @pytest.mark.asyncio
    async def test_paid_callback_confirms_order_and_redeems_voucher(
        self, reconciler, voucher_repository
    ):
        customer_id = uuid.uuid4()
        order = make_order(customer_id=customer_id, voucher_code="SAVE20")
        payment = make_payment(order)
        voucher = make_voucher(customer_id, code="SAVE20")
        voucher_repository.get_by_code.return_value = voucher

        result = await reconciler.apply(
            payment, PaymentStatus.COMPLETED, source="callback", order=order
        )

        assert result.applied is True
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.completed_at is not None
        assert order.status == OrderStatus.CONFIRMED
        assert voucher.is_used is True
        assert voucher.used_order_id == order.id
        voucher_repository.get_by_code.assert_awaited_once_with("SAVE20", lock=True)

    @pytest.mark.asyncio
    async def test_duplicate_completion_changes_nothing(
        self, reconciler, payments, orders, voucher_repository
    ):
        order = make_order(voucher_code="SAVE20")
        payment = make_payment(order)
        voucher_repository.get_by_code.return_value = make_voucher(code="SAVE20")

        await reconciler.apply(payment, PaymentStatus.COMPLETED, source="callback", order=order)
        second = await reconciler.apply(
            payment, PaymentStatus.COMPLETED, source="callback", order=order
        )

        assert second.applied is False
        assert second.reason == "duplicate"
        assert payments.transition.await_count == 1
        assert orders.transition_status.await_count == 1
        assert voucher_repository.get_by_code.await_count == 1

    @pytest.mark.asyncio
    async def test_order_loaded_when_not_given(self, reconciler, orders):
        order = make_order()
        payment = make_payment(order)
        orders.get_order.return_value = order

        await reconciler.apply(payment, PaymentStatus.COMPLETED, source="callback")

        orders.get_order.assert_awaited_once_with(payment.order_id)
        assert order.status == OrderStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_missing_order_still_records_payment(self, reconciler, orders):
        payment = make_payment()
        orders.get_order.return_value = None

        result = await reconciler.apply(payment, PaymentStatus.COMPLETED, source="callback")

        assert result.applied is True
        assert result.reason == "order_missing"
        assert payment.status == PaymentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_shipped_order_not_moved_back(self, reconciler):
        order = make_order(status=OrderStatus.SHIPPED, payment_method=PaymentMethod.COD)
        payment = make_payment(order, method=PaymentMethod.COD)

        await reconciler.apply(payment, PaymentStatus.COMPLETED, source="delivery", order=order)

        assert order.status == OrderStatus.SHIPPED


# ============================================================================
# Failure, cancellation, and late callbacks
# ============================================================================


class TestClosing:
    @pytest.mark.asyncio
    async def test_failure_cancels_pending_order(self, reconciler, voucher_repository):
        order = make_order(voucher_code="SAVE20")
        payment = make_payment(order)

        result = await reconciler.apply(
            payment,
            PaymentStatus.FAILED,
            source="callback",
            fields={"failure_reason": "Gateway reported FAILED"},
            order=order,
        )

        assert result.applied is True
        assert payment.status == PaymentStatus.FAILED
        assert payment.failure_reason == "Gateway reported FAILED"
        assert order.status == OrderStatus.CANCELLED
        voucher_repository.get_by_code.assert_not_called()

    @pytest.mark.asyncio
    async def test_failure_leaves_advanced_order_alone(self, reconciler):
        order = make_order(status=OrderStatus.CONFIRMED)
        payment = make_payment(order)

        await reconciler.apply(payment, PaymentStatus.CANCELLED, source="expiry", order=order)

        assert order.status == OrderStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_pending_callback_changes_no_order(self, reconciler, orders):
        order = make_order()
        payment = make_payment(order, status=PaymentStatus.PENDING)

        result = await reconciler.apply(
            payment, PaymentStatus.PENDING, source="callback", order=order
        )

        assert result.reason == "duplicate"
        orders.transition_status.assert_not_called()

    @pytest.mark.asyncio
    async def test_late_success_flags_review(self, reconciler, payments, orders):
        order = make_order(status=OrderStatus.CANCELLED)
        payment = make_payment(order, status=PaymentStatus.CANCELLED)

        result = await reconciler.apply(
            payment, PaymentStatus.COMPLETED, source="callback", order=order
        )

        assert result.applied is False
        assert result.reason == "late_success"
        assert payment.status == PaymentStatus.CANCELLED
        payments.update_fields.assert_awaited_once_with(payment, {"needs_review": True})
        payments.transition.assert_not_called()
        orders.transition_status.assert_not_called()

    @pytest.mark.asyncio
    async def test_failure_after_completion_ignored(self, reconciler, payments):
        order = make_order(status=OrderStatus.CONFIRMED)
        payment = make_payment(order, status=PaymentStatus.COMPLETED)

        result = await reconciler.apply(payment, PaymentStatus.FAILED, source="callback")

        assert result.reason == "not_allowed"
        assert payment.status == PaymentStatus.COMPLETED
        payments.update_fields.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_change_skips_side_effects(self, reconciler, payments, orders):
        order = make_order()
        payment = make_payment(order)
        payments.transition.side_effect = None
        payments.transition.return_value = False

        result = await reconciler.apply(
            payment, PaymentStatus.COMPLETED, source="callback", order=order
        )

        assert result.applied is False
        assert result.reason == "concurrent"
        orders.transition_status.assert_not_called()
