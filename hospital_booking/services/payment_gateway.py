"""
Payment Gateway Client
Thin httpx wrapper around the remote charge/refund capability.

The client only classifies outcomes:
- GatewayDecline: the gateway answered but rejected the transaction
- GatewayUnavailable: timeout, connection failure, 5xx or unreadable response
Retry decisions belong to the caller.
"""

import logging
from typing import Any, Optional

import httpx

from ..config import PAYMENT_GATEWAY_API_KEY, PAYMENT_GATEWAY_TIMEOUT, PAYMENT_GATEWAY_URL

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body


class GatewayDecline(GatewayError):
    """Processed but rejected (card declined, insufficient funds, ...)"""


class GatewayUnavailable(GatewayError):
    """Transport or availability failure, safe to retry"""


class PaymentGatewayClient:
    """Client for the remote payment gateway"""

    def __init__(
        self,
        base_url: str = PAYMENT_GATEWAY_URL,
        api_key: Optional[str] = PAYMENT_GATEWAY_API_KEY,
        timeout: float = PAYMENT_GATEWAY_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

        if not self.api_key:
            logger.warning("PAYMENT_GATEWAY_API_KEY not set; gateway may reject requests")

    def _headers(self, idempotency_key: Optional[str] = None) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _post(self, path: str, payload: dict, idempotency_key: Optional[str] = None):
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as http_client:
                response = await http_client.post(
                    path, json=payload, headers=self._headers(idempotency_key)
                )
        except httpx.TimeoutException as e:
            raise GatewayUnavailable(f"Gateway timeout on {path}: {e}") from e
        except httpx.TransportError as e:
            raise GatewayUnavailable(f"Gateway unreachable on {path}: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise GatewayUnavailable(
                f"Gateway returned HTTP {response.status_code} on {path}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise GatewayUnavailable(
                f"Unreadable gateway response on {path}", status_code=response.status_code
            ) from e

        if not isinstance(body, dict):
            raise GatewayUnavailable(
                f"Unexpected gateway response on {path}",
                status_code=response.status_code,
                body=body,
            )

        return response.status_code, body

    async def charge(self, request: dict, idempotency_key: Optional[str] = None) -> dict:
        """
        Charge a payment.

        Returns:
            Dict with transactionId and status

        Raises:
            GatewayDecline: gateway rejected the charge
            GatewayUnavailable: gateway could not be reached
        """
        status_code, body = await self._post("/charges", request, idempotency_key)

        if status_code >= 400 or not body.get("success"):
            reason = body.get("declineReason") or body.get("error") or "Payment declined"
            raise GatewayDecline(reason, status_code=status_code, body=body)

        if not body.get("transactionId"):
            raise GatewayUnavailable("Gateway response missing transactionId", body=body)

        return body

    async def refund(self, request: dict, idempotency_key: Optional[str] = None) -> dict:
        """
        Refund a previous charge. Any failure raises a GatewayError subclass.
        """
        status_code, body = await self._post("/refunds", request, idempotency_key)

        if status_code >= 400 or not body.get("success"):
            raise GatewayDecline(
                body.get("error") or "Refund failed", status_code=status_code, body=body
            )

        return body
