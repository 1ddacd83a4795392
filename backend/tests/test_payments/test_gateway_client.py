"""
Tests for the hosted payment gateway client.

Requests are served by an httpx MockTransport so the real request building,
retry handling, and response parsing run end to end.
"""

import json
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from orderflow.core.exceptions import GatewayError, GatewayTimeoutError
from orderflow.services.payments.gateway import (
    PAY_PATH,
    GatewayClient,
    GatewayPaymentRequest,
    extract_product_code,
)

PAYMENT_URL = "https://www.easykash.net/DirectPayV1/EDV4471"


@pytest.fixture
def payment_request() -> GatewayPaymentRequest:
    return GatewayPaymentRequest(
        amount=Decimal("90.00"),
        customer_name="Mona Adel",
        customer_email="mona@example.com",
        customer_mobile="01000000000",
        correlation_token='{"orderId":"abc"}',
    )


def build_client(settings, handler, **kwargs) -> GatewayClient:
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        base_url=settings.gateway_api_url,
    )
    return GatewayClient(settings, http_client=http_client, **kwargs)


class TestProductCode:
    def test_extracts_code(self):
        assert extract_product_code(PAYMENT_URL) == "EDV4471"

    def test_ignores_query_string(self):
        assert extract_product_code(f"{PAYMENT_URL}?lang=ar") == "EDV4471"

    def test_unrecognized_url(self):
        assert extract_product_code("https://pay.example.com/session/1") is None


class TestCreatePaymentPage:
    @pytest.mark.asyncio
    async def test_success(self, settings, payment_request):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["request"] = request
            return httpx.Response(200, json={"redirectUrl": PAYMENT_URL})

        client = build_client(settings, handler)
        page = await client.create_payment_page(payment_request)
        await client.aclose()

        assert page.payment_url == PAYMENT_URL
        assert page.product_code == "EDV4471"

        sent = captured["request"]
        assert sent.method == "POST"
        assert sent.url.path == PAY_PATH
        assert sent.headers["authorization"] == "test-api-key"
        body = json.loads(sent.content)
        assert body["amount"] == 90.0
        assert body["currency"] == "EGP"
        assert body["paymentOptions"] == [2, 4]
        assert body["cashExpiry"] == 3
        assert body["name"] == "Mona Adel"
        assert body["mobile"] == "01000000000"
        assert body["customerReference"] == '{"orderId":"abc"}'
        assert body["callbackUrl"] == settings.payment_callback_url
        assert body["redirectUrl"] == settings.payment_redirect_url

    @pytest.mark.asyncio
    async def test_url_without_product_code(self, settings, payment_request):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"redirectUrl": "https://pay.example.com/x"})

        client = build_client(settings, handler)
        page = await client.create_payment_page(payment_request)

        assert page.payment_url == "https://pay.example.com/x"
        assert page.product_code is None

    @pytest.mark.asyncio
    async def test_rejected_request(self, settings, payment_request):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(422, json={"message": "invalid mobile"})

        client = build_client(settings, handler)
        with pytest.raises(GatewayError) as exc_info:
            await client.create_payment_page(payment_request)

        assert exc_info.value.context["status_code"] == 422

    @pytest.mark.asyncio
    async def test_missing_redirect_url(self, settings, payment_request):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"status": "ok"})

        client = build_client(settings, handler)
        with pytest.raises(GatewayError):
            await client.create_payment_page(payment_request)

    @pytest.mark.asyncio
    async def test_invalid_json(self, settings, payment_request):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"<html>oops</html>")

        client = build_client(settings, handler)
        with pytest.raises(GatewayError):
            await client.create_payment_page(payment_request)

    @pytest.mark.asyncio
    async def test_timeout_not_retried(self, settings, payment_request):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ReadTimeout("timed out", request=request)

        client = build_client(settings, handler)
        with pytest.raises(GatewayTimeoutError):
            await client.create_payment_page(payment_request)

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_connection_error_retried(self, settings, payment_request):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) < 3:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json={"redirectUrl": PAYMENT_URL})

        client = build_client(settings, handler)
        with patch(
            "orderflow.services.payments.gateway.asyncio.sleep", new_callable=AsyncMock
        ) as sleep:
            page = await client.create_payment_page(payment_request)

        assert page.product_code == "EDV4471"
        assert len(calls) == 3
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_unreachable_after_retries(self, settings, payment_request):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ConnectError("refused", request=request)

        client = build_client(settings, handler, initial_backoff=0)
        with pytest.raises(GatewayError) as exc_info:
            await client.create_payment_page(payment_request)

        assert len(calls) == settings.gateway_max_retries + 1
        assert exc_info.value.context["attempts"] == settings.gateway_max_retries + 1

    @pytest.mark.asyncio
    async def test_missing_api_key(self, settings, payment_request):
        unconfigured = settings.model_copy(update={"gateway_api_key": None})

        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("gateway must not be called")

        client = build_client(unconfigured, handler)
        with pytest.raises(GatewayError):
            await client.create_payment_page(payment_request)
