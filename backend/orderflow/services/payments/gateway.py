"""
Hosted payment gateway client.

Wraps the gateway's direct-pay endpoint with httpx. A request that never
reached the gateway (connection refused, DNS failure) is retried with
exponential backoff. A request that timed out is not retried and not treated
as a failure: the gateway may have accepted it, so the payment is left
pending for the expirer or a later callback.
"""

import asyncio
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

import httpx

from orderflow.core.config import Settings, get_settings
from orderflow.core.exceptions import GatewayError, GatewayTimeoutError
from orderflow.core.logging import get_logger, log_performance

logger = get_logger(__name__)

PAY_PATH = "/api/directpayv1/pay"
PRODUCT_CODE_PATTERN = re.compile(r"DirectPayV1/([^/?]+)", re.IGNORECASE)


@dataclass(frozen=True)
class GatewayPaymentRequest:
    """Data sent to create a hosted payment page."""

    amount: Decimal
    customer_name: str
    customer_email: str
    customer_mobile: str
    correlation_token: str


@dataclass(frozen=True)
class GatewayPaymentPage:
    """Hosted payment page returned by the gateway."""

    payment_url: str
    product_code: Optional[str]


def extract_product_code(payment_url: str) -> Optional[str]:
    """Pull the session/product code out of a hosted payment URL."""
    match = PRODUCT_CODE_PATTERN.search(payment_url)
    return match.group(1) if match else None


class GatewayClient:
    """
    Async client for the hosted payment gateway.

    The application keeps one instance for its lifetime and closes it on
    shutdown.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        initial_backoff: float = 0.5,
        max_backoff: float = 4.0,
    ):
        """
        Initialize gateway client.

        Args:
            settings: Application settings (defaults to cached settings)
            http_client: Preconfigured httpx client, mainly for tests
            initial_backoff: First retry delay in seconds
            max_backoff: Upper bound for retry delay in seconds
        """
        self.settings = settings or get_settings()
        self.max_retries = self.settings.gateway_max_retries
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self._client = http_client or httpx.AsyncClient(
            base_url=self.settings.gateway_api_url,
            timeout=httpx.Timeout(self.settings.gateway_timeout_seconds),
        )

    def _calculate_backoff(self, attempt: int) -> float:
        return min(self.initial_backoff * (2**attempt), self.max_backoff)

    def build_payload(self, request: GatewayPaymentRequest) -> dict[str, Any]:
        """
        Build the direct-pay request body.

        Args:
            request: Payment page request

        Returns:
            JSON body expected by the gateway
        """
        return {
            "amount": float(request.amount),
            "currency": self.settings.gateway_currency,
            "paymentOptions": list(self.settings.gateway_payment_options),
            "cashExpiry": self.settings.gateway_cash_expiry_hours,
            "name": request.customer_name,
            "email": request.customer_email,
            "mobile": request.customer_mobile,
            "redirectUrl": self.settings.payment_redirect_url,
            "callbackUrl": self.settings.payment_callback_url,
            "customerReference": request.correlation_token,
        }

    async def create_payment_page(self, request: GatewayPaymentRequest) -> GatewayPaymentPage:
        """
        Ask the gateway for a hosted payment page.

        Args:
            request: Payment page request

        Returns:
            Payment URL and the session/product code parsed from it

        Raises:
            GatewayTimeoutError: The gateway did not answer in time
            GatewayError: The gateway rejected the request, returned no URL,
                or could not be reached after all retries
        """
        if not self.settings.gateway_api_key:
            raise GatewayError("Payment gateway is not configured")

        payload = self.build_payload(request)
        headers = {
            "authorization": self.settings.gateway_api_key,
            "content-type": "application/json",
        }

        response: Optional[httpx.Response] = None
        for attempt in range(self.max_retries + 1):
            try:
                with log_performance(logger, "gateway_create_payment_page", attempt=attempt):
                    response = await self._client.post(PAY_PATH, json=payload, headers=headers)
                break
            except httpx.TimeoutException as e:
                logger.warning(
                    "Gateway request timed out; payment left pending",
                    error_type=type(e).__name__,
                    timeout_seconds=self.settings.gateway_timeout_seconds,
                )
                raise GatewayTimeoutError(
                    "Payment gateway did not respond in time",
                    timeout_seconds=self.settings.gateway_timeout_seconds,
                ) from e
            except httpx.ConnectError as e:
                if attempt >= self.max_retries:
                    logger.error(
                        "Gateway unreachable after retries",
                        attempts=attempt + 1,
                        error=str(e),
                    )
                    raise GatewayError(
                        "Payment gateway is unreachable", attempts=attempt + 1
                    ) from e
                delay = self._calculate_backoff(attempt)
                logger.warning(
                    "Gateway connection failed, retrying",
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    delay_seconds=delay,
                )
                await asyncio.sleep(delay)
            except httpx.HTTPError as e:
                logger.error("Gateway request failed", error=str(e), error_type=type(e).__name__)
                raise GatewayError("Payment gateway request failed", error=str(e)) from e

        if response is None:
            raise GatewayError("Payment gateway request failed")

        if response.status_code >= 400:
            logger.error(
                "Gateway rejected payment page request",
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise GatewayError(
                "Payment gateway rejected the request",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise GatewayError("Payment gateway returned invalid JSON") from e

        payment_url = data.get("redirectUrl") if isinstance(data, dict) else None
        if not payment_url:
            logger.error("Gateway response missing redirect URL", body=str(data)[:500])
            raise GatewayError("Payment gateway did not return a payment URL")

        product_code = extract_product_code(payment_url)
        if product_code is None:
            logger.warning("Could not extract product code from payment URL", url=payment_url)

        return GatewayPaymentPage(payment_url=payment_url, product_code=product_code)

    async def aclose(self) -> None:
        await self._client.aclose()
