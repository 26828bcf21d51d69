"""
Stripe card confirmation client.

Implements:
- Card confirmation of an existing PaymentIntent
- Mapping of intent statuses to succeeded / requires_action / declined
- Circuit breaker around transport failures
- Error classification (declines are outcomes, transport errors are faults)
"""
import asyncio
import time
from typing import Any, Callable, Dict, Optional, Tuple, Type

import stripe
import structlog

from payper.config import get_settings
from payper.core.exceptions import ClientFault
from payper.core.models import Confirmation, ConfirmationOutcome
from payper.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Stripe PaymentIntent status -> confirmation outcome
STATUS_OUTCOMES: Dict[str, ConfirmationOutcome] = {
    "succeeded": ConfirmationOutcome.SUCCEEDED,
    "requires_action": ConfirmationOutcome.REQUIRES_ACTION,
    "requires_confirmation": ConfirmationOutcome.REQUIRES_ACTION,
    "processing": ConfirmationOutcome.REQUIRES_ACTION,
    "requires_payment_method": ConfirmationOutcome.DECLINED,
    "canceled": ConfirmationOutcome.DECLINED,
}


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Stops calling Stripe for ``timeout`` seconds after ``failure_threshold``
    consecutive transport failures. Exceptions listed in ``ignore`` are
    business outcomes and do not count as failures.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
        ignore: Tuple[Type[BaseException], ...] = (),
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
            ignore: Exception types that are not failures
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.ignore = ignore
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Execute function with circuit breaker protection.

        Raises:
            ClientFault: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise ClientFault("Card processor temporarily unavailable (circuit open)")

        try:
            result = func(*args, **kwargs)
        except self.ignore:
            self.on_success()
            raise
        except Exception:
            self.on_failure()
            raise

        self.on_success()
        return result

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


def intent_id_from_secret(client_secret: str) -> str:
    """
    Extract the PaymentIntent id from its client secret.

    Client secrets look like ``pi_123_secret_abc``.

    Raises:
        ClientFault: If the secret is malformed
    """
    intent_id, separator, _ = client_secret.partition("_secret_")
    if not separator or not intent_id.startswith("pi_"):
        raise ClientFault("Malformed client secret")
    return intent_id


class StripeConfirmationClient:
    """
    Presents card details to Stripe for an existing PaymentIntent.

    ``confirm`` returns a Confirmation for every business outcome, including
    declines and step-up authentication. Only transport-level problems raise
    ClientFault. There is no timeout on the wait for the user's action; the
    caller resumes with ``confirm(client_secret, None)`` once it is done.
    """

    def __init__(self, circuit_breaker: Optional[CircuitBreaker] = None) -> None:
        settings = get_settings()
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.circuit_breaker = circuit_breaker or CircuitBreaker(ignore=(stripe.CardError,))

        logger.info(
            "stripe_confirmation_client_initialized",
            api_version=stripe.api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def _outcome_from_intent(payment_intent: Any) -> Confirmation:
        intent_id = getattr(payment_intent, "id", None)
        status = getattr(payment_intent, "status", None)
        if not intent_id or not status:
            raise ClientFault("Malformed payment intent response")

        outcome = STATUS_OUTCOMES.get(status)
        if outcome is None:
            raise ClientFault(f"Unexpected payment intent status: {status}")

        decline_reason = None
        if outcome is ConfirmationOutcome.DECLINED:
            last_error = getattr(payment_intent, "last_payment_error", None)
            decline_reason = getattr(last_error, "message", None) or status

        return Confirmation(
            outcome=outcome,
            processor_reference=intent_id,
            decline_reason=decline_reason,
        )

    @staticmethod
    def _outcome_from_card_error(error: Any, intent_id: str) -> Confirmation:
        stripe_error = getattr(error, "error", None)
        payment_intent = getattr(stripe_error, "payment_intent", None)
        reference = getattr(payment_intent, "id", None) or intent_id
        return Confirmation(
            outcome=ConfirmationOutcome.DECLINED,
            processor_reference=reference,
            decline_reason=getattr(error, "user_message", None) or str(error),
        )

    async def confirm(
        self, client_secret: str, payment_method: Optional[Any] = None
    ) -> Confirmation:
        """
        Confirm (or, without a payment method, re-check) a PaymentIntent.

        Args:
            client_secret: Client secret returned by the payment intent gateway
            payment_method: Stripe payment method id or parameters; None to
                read the intent's status after the user completed an action

        Returns:
            Confirmation: succeeded, requires_action or declined

        Raises:
            ClientFault: On transport failures or malformed responses
        """
        intent_id = intent_id_from_secret(client_secret)
        logger.info(
            "confirming_payment_intent",
            payment_intent_id=intent_id,
            resume=payment_method is None,
        )

        def _call() -> Any:
            if payment_method is None:
                return stripe.PaymentIntent.retrieve(intent_id)
            return stripe.PaymentIntent.confirm(intent_id, payment_method=payment_method)

        loop = asyncio.get_running_loop()
        try:
            payment_intent = await loop.run_in_executor(
                None, lambda: self.circuit_breaker.call(_call)
            )
        except stripe.CardError as e:
            confirmation = self._outcome_from_card_error(e, intent_id)
            metrics.record_confirmation(confirmation.outcome.value)
            logger.info(
                "payment_intent_declined",
                payment_intent_id=confirmation.processor_reference,
                decline_code=getattr(e, "code", None),
            )
            return confirmation
        except stripe.StripeError as e:
            metrics.record_confirmation("fault")
            logger.error(
                "stripe_api_error",
                error_type=type(e).__name__,
                error_code=getattr(e, "code", None),
                error_message=str(e),
            )
            raise ClientFault(str(e), original_error=e) from e
        except ClientFault:
            metrics.record_confirmation("fault")
            raise

        confirmation = self._outcome_from_intent(payment_intent)
        metrics.record_confirmation(confirmation.outcome.value)
        logger.info(
            "payment_intent_confirmed",
            payment_intent_id=confirmation.processor_reference,
            outcome=confirmation.outcome.value,
        )
        return confirmation
