"""
Payment intent gateway.

Calls the hosted ``create-payment-intent`` function, which reserves the charge
amount with Stripe and returns the intent's client secret. Transient failures
(connection errors, timeouts, 5xx) are retried with exponential backoff;
everything else fails fast. Every attempt of one request carries the same
Idempotency-Key header, so a retried request cannot reserve the charge twice.
No money moves at this step.
"""
import uuid
from typing import Any, Dict, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from payper.config import get_settings
from payper.core.exceptions import GatewayError
from payper.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class TransientGatewayError(GatewayError):
    """A gateway failure worth retrying."""

    pass


class PaymentIntentGateway:
    """
    Client for the payment intent function.

    Request:  {amount, currency, userId, merchantId, description}
    Response: {clientSecret}
    """

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        max_attempts: Optional[int] = None,
        wait_min: float = 0.5,
        wait_max: float = 8.0,
    ):
        """
        Initialize the gateway.

        Args:
            url: Function URL (defaults to settings)
            api_key: Bearer key (defaults to settings)
            http_client: Optional shared httpx client
            max_attempts: Attempts for transient failures (defaults to settings)
            wait_min: Minimum backoff in seconds
            wait_max: Maximum backoff in seconds
        """
        settings = get_settings()
        self.url = url or settings.payment_intent_url
        self.api_key = api_key if api_key is not None else settings.payment_intent_api_key
        self.timeout = settings.gateway_timeout_seconds
        self.http_client = http_client
        self.max_attempts = max_attempts or settings.gateway_retry_attempts
        self.wait_min = wait_min
        self.wait_max = wait_max

    def _headers(self, idempotency_key: str) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Idempotency-Key": idempotency_key}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, payload: Dict[str, Any], idempotency_key: str) -> httpx.Response:
        headers = self._headers(idempotency_key)
        try:
            if self.http_client is not None:
                return await self.http_client.post(
                    self.url, json=payload, headers=headers, timeout=self.timeout
                )
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.post(self.url, json=payload, headers=headers)
        except httpx.TransportError as e:
            logger.warning("payment_intent_transport_error", error=str(e))
            raise TransientGatewayError(f"Payment intent service unreachable: {e}") from e

    async def _request_once(self, payload: Dict[str, Any], idempotency_key: str) -> str:
        response = await self._post(payload, idempotency_key)

        if response.status_code in (401, 403):
            raise GatewayError(
                "Payment intent service rejected the credentials",
                status_code=response.status_code,
            )
        if response.status_code >= 500:
            raise TransientGatewayError(
                f"Payment intent service error ({response.status_code})",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise GatewayError(
                f"Payment intent request rejected ({response.status_code})",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError:
            raise GatewayError("Payment intent response is not JSON") from None

        client_secret = data.get("clientSecret") if isinstance(data, dict) else None
        if not isinstance(client_secret, str) or not client_secret.strip():
            raise GatewayError("Failed to create payment intent: missing client secret")

        return client_secret

    async def request_intent(
        self,
        amount_minor_units: int,
        currency: str,
        user_id: str,
        merchant_id: str,
        description: str,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """
        Reserve a charge and return the intent's client secret.

        Args:
            amount_minor_units: Amount in minor currency units
            currency: ISO currency code (sent lower case)
            user_id: Paying user
            merchant_id: Merchant being paid
            description: Statement description
            idempotency_key: Key shared by every retry of this request
                (a fresh one is generated when omitted)

        Returns:
            str: Client secret for card confirmation

        Raises:
            GatewayError: On network, authorization or response failures
        """
        if amount_minor_units <= 0:
            raise GatewayError("Amount must be positive")
        if not user_id or not merchant_id:
            raise GatewayError("User and merchant identifiers are required")

        idempotency_key = idempotency_key or str(uuid.uuid4())
        payload = {
            "amount": amount_minor_units,
            "currency": currency.lower(),
            "userId": user_id,
            "merchantId": merchant_id,
            "description": description,
        }

        logger.info(
            "creating_payment_intent",
            amount_minor_units=amount_minor_units,
            currency=payload["currency"],
            merchant_id=merchant_id,
            idempotency_key=idempotency_key,
        )

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(TransientGatewayError),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.wait_min, min=self.wait_min, max=self.wait_max),
                reraise=True,
            ):
                with attempt:
                    client_secret = await self._request_once(payload, idempotency_key)
        except GatewayError as e:
            metrics.record_gateway_request("error")
            logger.error(
                "payment_intent_failed",
                error=str(e),
                status_code=e.status_code,
                merchant_id=merchant_id,
            )
            raise

        metrics.record_gateway_request("success")
        logger.info("payment_intent_created", merchant_id=merchant_id)
        return client_secret
