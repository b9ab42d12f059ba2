"""
PayPal order verification.

Captures a client-approved order through the Orders v2 API and reports
amount and status. A 422 on capture usually means the order was already
captured (by the client SDK or an earlier attempt), so the order is then
read back instead. Verification never touches the ledger.
"""

import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional

import httpx

from api.services.payment_engine import ProviderVerifier, VerificationResult
from config.settings import PAYPAL_BASE_URL, PAYPAL_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


class PayPalVerifier(ProviderVerifier):
    """PayPal Orders v2 capture verifier."""

    def __init__(
        self,
        client_id: Optional[str],
        secret: Optional[str],
        base_url: Optional[str] = PAYPAL_BASE_URL,
        timeout: float = PAYPAL_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.client_id = client_id
        self.secret = secret
        self.base_url = (base_url or "").rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._clock = clock
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def name(self) -> str:
        return "paypal"

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.secret and self.base_url)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create httpx client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                auth=httpx.BasicAuth(self.client_id, self.secret),
                headers={
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, endpoint: str, **kwargs) -> httpx.Response:
        from api.services.metrics import track_api_request

        client = await self._get_client()
        start_time = time.time()
        try:
            return await client.request(method, path, **kwargs)
        finally:
            track_api_request("paypal", endpoint, time.time() - start_time)

    async def verify_order(self, order_id: str, request_id: str) -> VerificationResult:
        if not self.is_configured:
            logger.error("PayPal verification requested but PAYPAL_CLIENT_ID/PAYPAL_SECRET/PAYPAL_BASE_URL missing")
            return VerificationResult(
                success=False,
                error="PayPal is not configured",
                error_code="NOT_CONFIGURED",
                retryable=False,
            )

        headers = {
            "PayPal-Request-Id": f"{order_id}-{request_id}-{int(self._clock() * 1000)}",
            "Prefer": "return=representation",
        }
        try:
            response = await self._request(
                "POST", f"/v2/checkout/orders/{order_id}/capture", "capture", headers=headers,
            )
            if response.status_code == 422:
                logger.info(f"PayPal capture returned 422 for {order_id}, reading order status")
                response = await self._request("GET", f"/v2/checkout/orders/{order_id}", "get_order")
        except httpx.TimeoutException as e:
            logger.warning(f"PayPal timeout for order {order_id}: {e}")
            return VerificationResult(
                success=False,
                error=f"PayPal request timed out: {e}",
                error_code="TIMEOUT",
                retryable=True,
            )
        except httpx.RequestError as e:
            logger.warning(f"PayPal network error for order {order_id}: {e}")
            return VerificationResult(
                success=False,
                error=f"PayPal network error: {e}",
                error_code="NETWORK_ERROR",
                retryable=True,
            )

        return self._parse_response(order_id, response)

    def _parse_response(self, order_id: str, response: httpx.Response) -> VerificationResult:
        if response.status_code >= 400:
            retryable = response.status_code >= 500 or response.status_code == 429
            logger.warning(f"PayPal HTTP {response.status_code} for order {order_id}: {response.text[:500]}")
            return VerificationResult(
                success=False,
                error=f"PayPal returned HTTP {response.status_code}",
                error_code="HTTP_ERROR",
                retryable=retryable,
                http_status=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"Unparsable PayPal response for order {order_id}: {e}")
            return VerificationResult(
                success=False,
                error="Failed to parse PayPal response",
                error_code="JSON_PARSE_ERROR",
                retryable=True,
                http_status=response.status_code,
            )
        if not isinstance(data, dict):
            return VerificationResult(
                success=False,
                error="Unexpected PayPal response shape",
                error_code="JSON_PARSE_ERROR",
                retryable=True,
                http_status=response.status_code,
            )

        status = data.get("status")
        capture = _first_capture(data)
        amount, currency = _extract_amount(data, capture)

        if status != "COMPLETED":
            return VerificationResult(
                success=False,
                amount=amount,
                currency=currency,
                capture_id=capture.get("id") if capture else None,
                status=status,
                error=f"Order status is {status}",
                error_code="NOT_COMPLETED",
                retryable=status == "APPROVED",
                http_status=response.status_code,
                raw=data,
            )

        return VerificationResult(
            success=True,
            amount=amount,
            currency=currency,
            capture_id=capture.get("id") if capture else None,
            status=status,
            http_status=response.status_code,
            raw=data,
        )


def _first_capture(data: dict) -> Optional[dict]:
    try:
        captures = data["purchase_units"][0]["payments"]["captures"]
    except (KeyError, IndexError, TypeError):
        return None
    return captures[0] if captures and isinstance(captures[0], dict) else None


def _parse_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _extract_amount(data: dict, capture: Optional[dict]) -> tuple[Optional[Decimal], str]:
    """Captured amount, falling back to the purchase unit amount."""
    money = (capture or {}).get("amount")
    if not money:
        try:
            money = data["purchase_units"][0]["amount"]
        except (KeyError, IndexError, TypeError):
            money = None
    if not isinstance(money, dict):
        return None, "USD"
    return _parse_decimal(money.get("value")), money.get("currency_code") or "USD"
