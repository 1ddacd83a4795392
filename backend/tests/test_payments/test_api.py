"""
API tests for payment endpoints.

The payment service is replaced through ``app.dependency_overrides``. The
callback endpoint is checked to answer HTTP 200 for every kind of payload,
including ones the service rejects or fails on.
"""

import uuid
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from fastapi import status

from orderflow.api.deps import get_payment_service
from orderflow.core.exceptions import (
    AmountMismatchError,
    GatewayError,
    InvalidCallbackSignatureError,
    PaymentNotFoundError,
)
from orderflow.database.models import OrderStatus, PaymentStatus
from orderflow.schemas.payments import GatewayCallback
from orderflow.services.payments.service import (
    CallbackOutcome,
    PaymentInitiation,
    PaymentService,
)
from tests.factories import make_order, make_payment

PAYMENT_URL = "https://www.easykash.net/DirectPayV1/EDV4471"

CALLBACK_BODY = {
    "ProductCode": "EDV4471",
    "Amount": 90,
    "ProductType": "Direct Pay",
    "PaymentMethod": "Cash Through Fawry",
    "status": "PAID",
    "easykashRef": 2911105009,
    "customerReference": "TEST11111",
}


@pytest.fixture
def payment_service(app) -> AsyncMock:
    service = AsyncMock(spec=PaymentService)
    app.dependency_overrides[get_payment_service] = lambda: service
    return service


# ============================================================================
# Initiation
# ============================================================================


class TestInitiateEndpoint:
    def test_returns_payment_page(self, client, payment_service):
        order = make_order()
        payment = make_payment(order)
        payment_service.initiate_payment.return_value = PaymentInitiation(
            payment=payment, payment_url=PAYMENT_URL, product_code="EDV4471"
        )

        response = client.post(
            "/api/v1/payments/initiate",
            json={"order_id": str(order.id), "amount": "90.00"},
        )

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["payment_url"] == PAYMENT_URL
        assert data["product_code"] == "EDV4471"
        assert data["payment_id"] == str(payment.id)
        assert data["status"] == "pending"

        kwargs = payment_service.initiate_payment.await_args.kwargs
        assert kwargs["order_id"] == order.id
        assert kwargs["amount"] == Decimal("90.00")
        assert kwargs["principal"] is None

    def test_non_positive_amount_rejected(self, client, payment_service):
        response = client.post(
            "/api/v1/payments/initiate",
            json={"order_id": str(uuid.uuid4()), "amount": "0"},
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        payment_service.initiate_payment.assert_not_called()

    def test_amount_mismatch_envelope(self, client, payment_service):
        payment_service.initiate_payment.side_effect = AmountMismatchError(
            "Payment amount does not match order total", requested="100.00", total="90.00"
        )

        response = client.post(
            "/api/v1/payments/initiate",
            json={"order_id": str(uuid.uuid4()), "amount": "100.00"},
        )

        assert response.status_code == AmountMismatchError.status_code
        data = response.json()
        assert data["error"] == AmountMismatchError.code
        assert data["context"]["total"] == "90.00"

    def test_gateway_failure_envelope(self, client, payment_service):
        payment_service.initiate_payment.side_effect = GatewayError(
            "Payment gateway rejected the request", status_code=422
        )

        response = client.post(
            "/api/v1/payments/initiate",
            json={"order_id": str(uuid.uuid4()), "amount": "90.00"},
        )

        assert response.status_code == GatewayError.status_code
        assert response.json()["error"] == GatewayError.code


# ============================================================================
# Callback
# ============================================================================


class TestCallbackEndpoint:
    def test_applied_callback(self, client, payment_service):
        payment = make_payment(status=PaymentStatus.COMPLETED)
        payment_service.handle_callback.return_value = CallbackOutcome(
            payment=payment,
            strategy="gateway_reference",
            applied=True,
            message="Payment updated",
        )

        response = client.post("/api/v1/payments/callback", json=CALLBACK_BODY)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["success"] is True
        assert data["status"] == "completed"
        assert data["matched_by"] == "gateway_reference"
        assert data["payment_id"] == str(payment.id)

        args, kwargs = payment_service.handle_callback.await_args
        callback = args[0]
        assert isinstance(callback, GatewayCallback)
        assert callback.amount == "90"
        assert callback.easykash_ref == "2911105009"
        assert kwargs["raw_payload"] == CALLBACK_BODY

    def test_non_json_body(self, client, payment_service):
        response = client.post(
            "/api/v1/payments/callback",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["success"] is False
        payment_service.handle_callback.assert_not_called()

    def test_non_object_body(self, client, payment_service):
        response = client.post("/api/v1/payments/callback", json=["PAID"])

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["success"] is False
        payment_service.handle_callback.assert_not_called()

    def test_unmatched_callback_acknowledged(self, client, payment_service):
        payment_service.handle_callback.side_effect = PaymentNotFoundError(
            "No payment matches this callback"
        )

        response = client.post("/api/v1/payments/callback", json=CALLBACK_BODY)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["success"] is False
        assert data["message"] == "No payment matches this callback"

    def test_invalid_signature_acknowledged(self, client, payment_service):
        payment_service.handle_callback.side_effect = InvalidCallbackSignatureError(
            "Callback signature is invalid"
        )

        response = client.post(
            "/api/v1/payments/callback",
            json={**CALLBACK_BODY, "signatureHash": "bad"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["success"] is False

    def test_unexpected_failure_acknowledged(self, client, payment_service):
        payment_service.handle_callback.side_effect = RuntimeError("database down")

        response = client.post("/api/v1/payments/callback", json=CALLBACK_BODY)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["success"] is False
        assert "database" not in data["message"]


# ============================================================================
# Status reads and cancel
# ============================================================================


class TestStatusEndpoints:
    def test_payment_status(self, client, payment_service):
        order = make_order()
        payment = make_payment(order)
        payment_service.get_payment_status.return_value = (payment, order)

        response = client.get(f"/api/v1/payments/{payment.id}")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["payment_id"] == str(payment.id)
        assert data["order_id"] == str(order.id)
        assert data["order_status"] == "pending"
        assert data["amount"] == "90.00"
        assert data["needs_review"] is False
        payment_service.get_payment_status.assert_awaited_once_with(payment.id, None)

    def test_unknown_payment(self, client, payment_service):
        payment_service.get_payment_status.side_effect = PaymentNotFoundError(
            "Payment not found"
        )

        response = client.get(f"/api/v1/payments/{uuid.uuid4()}")

        assert response.status_code == PaymentNotFoundError.status_code
        assert response.json()["error"] == PaymentNotFoundError.code

    def test_order_payment_status(self, client, payment_service):
        order = make_order(status=OrderStatus.CONFIRMED)
        payment = make_payment(order, status=PaymentStatus.COMPLETED)
        payment_service.get_order_payment_status.return_value = (payment, order)

        response = client.get(f"/api/v1/payments/order/{order.id}")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "completed"
        assert data["order_status"] == "confirmed"

    def test_redirect_uses_stored_state(self, client, payment_service):
        order = make_order()
        payment = make_payment(order)
        payment_service.get_by_customer_reference.return_value = (payment, order)

        response = client.get(
            "/api/v1/payments/redirect",
            params={"customerReference": payment.correlation_token, "status": "PAID"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "pending"
        payment_service.get_by_customer_reference.assert_awaited_once_with(
            payment.correlation_token
        )

    def test_redirect_requires_reference(self, client, payment_service):
        response = client.get("/api/v1/payments/redirect")

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_cancel_payment(self, client, payment_service):
        order = make_order(status=OrderStatus.CANCELLED)
        payment = make_payment(order, status=PaymentStatus.CANCELLED)
        payment_service.cancel_payment.return_value = payment
        payment_service.get_payment_status.return_value = (payment, order)

        response = client.post(f"/api/v1/payments/{payment.id}/cancel")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "cancelled"
        assert data["order_status"] == "cancelled"
        payment_service.cancel_payment.assert_awaited_once_with(payment.id, None)
