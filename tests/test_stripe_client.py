"""
Tests for the Stripe card confirmation client.
"""
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import stripe

from payper.core.exceptions import ClientFault
from payper.core.models import ConfirmationOutcome
from payper.integrations.stripe_client import (
    CircuitBreaker,
    StripeConfirmationClient,
    intent_id_from_secret,
)

SECRET = "pi_test_123_secret_abc"


def intent(status: str, **kwargs: object) -> SimpleNamespace:
    return SimpleNamespace(id="pi_test_123", status=status, **kwargs)


class TestIntentIdFromSecret:
    """Test suite for client secret parsing."""

    @pytest.mark.unit
    def test_extracts_intent_id(self) -> None:
        assert intent_id_from_secret(SECRET) == "pi_test_123"

    @pytest.mark.unit
    @pytest.mark.parametrize("secret", ["", "garbage", "seti_1_secret_x", "pi_1"])
    def test_malformed_secret(self, secret: str) -> None:
        with pytest.raises(ClientFault, match="Malformed client secret"):
            intent_id_from_secret(secret)


class TestStripeConfirmationClient:
    """Test suite for StripeConfirmationClient."""

    @pytest.fixture
    def client(self) -> StripeConfirmationClient:
        return StripeConfirmationClient()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirm_succeeded(self, client: StripeConfirmationClient) -> None:
        with patch("stripe.PaymentIntent.confirm", return_value=intent("succeeded")) as mock_confirm:
            confirmation = await client.confirm(SECRET, "pm_card_visa")

        mock_confirm.assert_called_once_with("pi_test_123", payment_method="pm_card_visa")
        assert confirmation.outcome is ConfirmationOutcome.SUCCEEDED
        assert confirmation.processor_reference == "pi_test_123"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirm_requires_action(self, client: StripeConfirmationClient) -> None:
        with patch("stripe.PaymentIntent.confirm", return_value=intent("requires_action")):
            confirmation = await client.confirm(SECRET, "pm_card_threeDSecure2Required")

        assert confirmation.outcome is ConfirmationOutcome.REQUIRES_ACTION

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_resume_retrieves_intent(self, client: StripeConfirmationClient) -> None:
        with patch("stripe.PaymentIntent.retrieve", return_value=intent("succeeded")) as mock_retrieve:
            confirmation = await client.confirm(SECRET, None)

        mock_retrieve.assert_called_once_with("pi_test_123")
        assert confirmation.outcome is ConfirmationOutcome.SUCCEEDED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_card_error_is_decline(self, client: StripeConfirmationClient) -> None:
        error = stripe.CardError("Your card was declined.", param=None, code="card_declined")

        with patch("stripe.PaymentIntent.confirm", side_effect=error):
            confirmation = await client.confirm(SECRET, "pm_card_chargeDeclined")

        assert confirmation.outcome is ConfirmationOutcome.DECLINED
        assert confirmation.processor_reference == "pi_test_123"
        assert confirmation.decline_reason == "Your card was declined."

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_authentication_is_decline(self, client: StripeConfirmationClient) -> None:
        failed = intent(
            "requires_payment_method",
            last_payment_error=SimpleNamespace(message="Authentication failed."),
        )

        with patch("stripe.PaymentIntent.retrieve", return_value=failed):
            confirmation = await client.confirm(SECRET)

        assert confirmation.outcome is ConfirmationOutcome.DECLINED
        assert confirmation.decline_reason == "Authentication failed."

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_connection_error_is_client_fault(self, client: StripeConfirmationClient) -> None:
        with patch(
            "stripe.PaymentIntent.confirm",
            side_effect=stripe.APIConnectionError("Network error"),
        ):
            with pytest.raises(ClientFault, match="Network error"):
                await client.confirm(SECRET, "pm_card_visa")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_status_is_client_fault(self, client: StripeConfirmationClient) -> None:
        with patch("stripe.PaymentIntent.confirm", return_value=intent("requires_capture_later")):
            with pytest.raises(ClientFault, match="Unexpected payment intent status"):
                await client.confirm(SECRET, "pm_card_visa")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_malformed_response_is_client_fault(
        self, client: StripeConfirmationClient
    ) -> None:
        with patch("stripe.PaymentIntent.confirm", return_value=SimpleNamespace()):
            with pytest.raises(ClientFault, match="Malformed payment intent response"):
                await client.confirm(SECRET, "pm_card_visa")


class TestCircuitBreaker:
    """Test suite for CircuitBreaker."""

    @pytest.mark.unit
    def test_opens_after_threshold(self) -> None:
        breaker = CircuitBreaker(failure_threshold=2, timeout=60)
        failing = MagicMock(side_effect=ConnectionError("down"))

        for _ in range(2):
            with pytest.raises(ConnectionError):
                breaker.call(failing)

        assert breaker.state == "open"
        with pytest.raises(ClientFault, match="circuit open"):
            breaker.call(failing)
        assert failing.call_count == 2

    @pytest.mark.unit
    def test_ignored_errors_do_not_open(self) -> None:
        breaker = CircuitBreaker(failure_threshold=1, ignore=(ValueError,))

        with pytest.raises(ValueError):
            breaker.call(MagicMock(side_effect=ValueError("declined")))

        assert breaker.state == "closed"

    @pytest.mark.unit
    def test_half_open_closes_after_successes(self) -> None:
        breaker = CircuitBreaker(failure_threshold=1, timeout=0, success_threshold=2)
        with pytest.raises(ConnectionError):
            breaker.call(MagicMock(side_effect=ConnectionError("down")))
        breaker.last_failure_time -= 1

        breaker.call(MagicMock(return_value="ok"))
        assert breaker.state == "half_open"
        breaker.call(MagicMock(return_value="ok"))
        assert breaker.state == "closed"
