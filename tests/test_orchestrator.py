"""
Tests for the payment orchestration controller.
"""
import asyncio
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

from payper.core.exceptions import ClientFault, GatewayError, PersistenceError
from payper.core.ledger import SqlTransactionLedger
from payper.core.models import (
    Confirmation,
    ConfirmationOutcome,
    TransactionDraft,
    TransactionKind,
    TransactionStatus,
)
from payper.core.orchestrator import PaymentOrchestrator
from payper.core.reconciliation import ReconciliationRecorder
from payper.core.recovery import InMemorySubmissionStore, RecoveryPolicy
from payper.core.results import ErrorKind
from payper.core.state_machine import OrchestrationState
from payper.monitoring.metrics import metrics

from .conftest import CLIENT_SECRET

SUCCEEDED = Confirmation(outcome=ConfirmationOutcome.SUCCEEDED, processor_reference="pi_test_123")
REQUIRES_ACTION = Confirmation(
    outcome=ConfirmationOutcome.REQUIRES_ACTION, processor_reference="pi_test_123"
)
DECLINED = Confirmation(
    outcome=ConfirmationOutcome.DECLINED,
    processor_reference="pi_test_123",
    decline_reason="Your card has insufficient funds.",
)


async def pay(orchestrator: PaymentOrchestrator, draft: TransactionDraft, sid: str = "form_1") -> Any:
    return await orchestrator.pay_merchant(
        sid, draft, merchant_id="merchant_2", payment_method="pm_card_visa"
    )


class TestMerchantPayment:
    """Test suite for merchant card payments."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_payment_succeeds(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: SqlTransactionLedger,
        gateway: AsyncMock,
        confirmer: AsyncMock,
        merchant_draft: TransactionDraft,
    ) -> None:
        result = await pay(orchestrator, merchant_draft)

        assert result.succeeded
        assert result.error is None
        assert result.transaction.status is TransactionStatus.COMPLETED
        assert result.transaction.processor_reference == "pi_test_123"

        gateway.request_intent.assert_awaited_once_with(
            amount_minor_units=5000,
            currency="ZAR",
            user_id="user_123",
            merchant_id="merchant_2",
            description="Payment to Takealot",
            idempotency_key=result.transaction.id,
        )
        confirmer.confirm.assert_awaited_once_with(CLIENT_SECRET, "pm_card_visa")

        stored = await ledger.get(result.transaction.id)
        assert stored.status is TransactionStatus.COMPLETED
        assert stored.processor_reference == "pi_test_123"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_failure_rolls_back(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: SqlTransactionLedger,
        gateway: AsyncMock,
        confirmer: AsyncMock,
        merchant_draft: TransactionDraft,
    ) -> None:
        gateway.request_intent.side_effect = GatewayError("Payment intent service error (503)")

        result = await pay(orchestrator, merchant_draft)

        assert result.state is OrchestrationState.FAILED
        assert result.error.kind is ErrorKind.GATEWAY
        assert result.error.retryable
        assert result.attempts_remaining == 2
        assert result.transaction.status is TransactionStatus.FAILED
        confirmer.confirm.assert_not_called()
        assert (await ledger.get(result.transaction.id)).status is TransactionStatus.FAILED

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unexpected_gateway_exception_is_captured(
        self,
        orchestrator: PaymentOrchestrator,
        gateway: AsyncMock,
        merchant_draft: TransactionDraft,
    ) -> None:
        gateway.request_intent.side_effect = ConnectionResetError("reset by peer")

        result = await pay(orchestrator, merchant_draft)

        assert result.state is OrchestrationState.FAILED
        assert result.error.kind is ErrorKind.GATEWAY
        assert result.transaction.status is TransactionStatus.FAILED

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_step_up_then_success_uses_one_record(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: SqlTransactionLedger,
        gateway: AsyncMock,
        confirmer: AsyncMock,
        merchant_draft: TransactionDraft,
    ) -> None:
        confirmer.confirm.side_effect = [REQUIRES_ACTION, SUCCEEDED]

        pending = await pay(orchestrator, merchant_draft)

        assert pending.requires_action
        assert pending.client_secret == CLIENT_SECRET
        assert pending.transaction.status is TransactionStatus.PENDING
        assert orchestrator.awaiting_action("form_1") is not None

        result = await orchestrator.resume_confirmation("form_1")

        assert result.succeeded
        assert result.transaction.id == pending.transaction.id
        assert confirmer.confirm.await_args_list[1].args == (CLIENT_SECRET, None)
        gateway.request_intent.assert_awaited_once()
        assert orchestrator.awaiting_action("form_1") is None
        assert len(await ledger.list_for_user("user_123")) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_submission_held_while_awaiting_action(
        self,
        orchestrator: PaymentOrchestrator,
        confirmer: AsyncMock,
        merchant_draft: TransactionDraft,
    ) -> None:
        confirmer.confirm.return_value = REQUIRES_ACTION
        await pay(orchestrator, merchant_draft)

        second = await pay(orchestrator, merchant_draft)

        assert second.error.kind is ErrorKind.IN_PROGRESS
        assert second.transaction is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_resume_without_pending_payment(self, orchestrator: PaymentOrchestrator) -> None:
        result = await orchestrator.resume_confirmation("form_unknown")

        assert result.error.kind is ErrorKind.NOT_FOUND
        assert not result.error.retryable

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_decline_rolls_back_with_reference(
        self,
        orchestrator: PaymentOrchestrator,
        confirmer: AsyncMock,
        merchant_draft: TransactionDraft,
    ) -> None:
        confirmer.confirm.return_value = DECLINED

        result = await pay(orchestrator, merchant_draft)

        assert result.state is OrchestrationState.FAILED
        assert result.error.kind is ErrorKind.DECLINED
        assert result.error.message == "Your card was declined: Your card has insufficient funds."
        assert result.error.retryable
        assert result.transaction.status is TransactionStatus.FAILED
        assert result.transaction.processor_reference == "pi_test_123"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_confirmation_fault_rolls_back(
        self,
        orchestrator: PaymentOrchestrator,
        confirmer: AsyncMock,
        merchant_draft: TransactionDraft,
    ) -> None:
        confirmer.confirm.side_effect = ClientFault("Card processor temporarily unavailable")

        result = await pay(orchestrator, merchant_draft)

        assert result.state is OrchestrationState.FAILED
        assert result.error.kind is ErrorKind.CLIENT_FAULT
        assert result.transaction.status is TransactionStatus.FAILED

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_amount_writes_nothing(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: SqlTransactionLedger,
        gateway: AsyncMock,
        merchant_draft: TransactionDraft,
    ) -> None:
        draft = merchant_draft.model_copy(update={"amount": Decimal("-5.00")})

        result = await pay(orchestrator, draft)

        assert result.state is OrchestrationState.DRAFT
        assert result.error.kind is ErrorKind.VALIDATION
        assert result.error.message == "Amount must be positive"
        assert not result.error.retryable
        assert result.attempts_remaining == 3
        gateway.request_intent.assert_not_called()
        assert await ledger.list_for_user("user_123") == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_transfer_draft_rejected(
        self, orchestrator: PaymentOrchestrator, transfer_draft: TransactionDraft
    ) -> None:
        result = await pay(orchestrator, transfer_draft)

        assert result.error.kind is ErrorKind.VALIDATION

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_ledger_unavailable_makes_no_charge(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: SqlTransactionLedger,
        gateway: AsyncMock,
        merchant_draft: TransactionDraft,
    ) -> None:
        with patch.object(ledger, "create", side_effect=PersistenceError("db down")):
            result = await pay(orchestrator, merchant_draft)

        assert result.error.kind is ErrorKind.PERSISTENCE
        assert result.error.retryable
        assert result.attempts_remaining == 2
        gateway.request_intent.assert_not_called()


class TestFinalizeFailure:
    """A confirmed charge must never be reported as failed."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_confirmed_payment_reconciled_later(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: SqlTransactionLedger,
        reconciliation: ReconciliationRecorder,
        merchant_draft: TransactionDraft,
    ) -> None:
        with patch.object(ledger, "update", side_effect=PersistenceError("db down")):
            result = await pay(orchestrator, merchant_draft)

        assert result.succeeded
        assert result.error is None
        assert result.reconciliation_pending
        assert result.transaction.status is TransactionStatus.COMPLETED
        assert len(reconciliation) == 1
        assert (await ledger.get(result.transaction.id)).status is TransactionStatus.PENDING

        summary = await reconciliation.replay(ledger)

        assert summary == {"resolved": 1, "failed": 0, "pending": 0}
        stored = await ledger.get(result.transaction.id)
        assert stored.status is TransactionStatus.COMPLETED
        assert stored.processor_reference == "pi_test_123"


class TestResubmission:
    """Test suite for resubmission after failures."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_fourth_attempt_refused(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: SqlTransactionLedger,
        confirmer: AsyncMock,
        merchant_draft: TransactionDraft,
    ) -> None:
        confirmer.confirm.return_value = DECLINED

        results = [await pay(orchestrator, merchant_draft) for _ in range(3)]

        assert [r.attempts_remaining for r in results] == [2, 1, 0]
        assert [r.error.retryable for r in results] == [True, True, False]
        assert len({r.transaction.id for r in results}) == 3

        refused = await pay(orchestrator, merchant_draft)

        assert refused.error.kind is ErrorKind.RETRY_LIMIT
        assert refused.transaction is None
        assert refused.attempts_remaining == 0

        history = await ledger.list_for_user("user_123")
        assert len(history) == 3
        assert all(t.status is TransactionStatus.FAILED for t in history)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_success_after_failure(
        self,
        orchestrator: PaymentOrchestrator,
        confirmer: AsyncMock,
        merchant_draft: TransactionDraft,
    ) -> None:
        confirmer.confirm.side_effect = [DECLINED, SUCCEEDED]

        failed = await pay(orchestrator, merchant_draft)
        succeeded = await pay(orchestrator, merchant_draft)

        assert failed.transaction.status is TransactionStatus.FAILED
        assert succeeded.succeeded
        assert succeeded.transaction.id != failed.transaction.id


class TestDetachedCompletion:
    """Abandoning the caller must not leave a record pending."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancelled_caller_still_reaches_terminal_state(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: SqlTransactionLedger,
        confirmer: AsyncMock,
        merchant_draft: TransactionDraft,
    ) -> None:
        release = asyncio.Event()

        async def slow_confirm(client_secret: str, payment_method: Any) -> Confirmation:
            await release.wait()
            return SUCCEEDED

        confirmer.confirm.side_effect = slow_confirm

        caller = asyncio.create_task(
            orchestrator.pay_merchant_shielded(
                "form_1", merchant_draft, merchant_id="merchant_2", payment_method="pm_card_visa"
            )
        )
        while confirmer.confirm.await_count == 0:
            await asyncio.sleep(0)

        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        release.set()
        await orchestrator.drain()

        history = await ledger.list_for_user("user_123")
        assert len(history) == 1
        assert history[0].status is TransactionStatus.COMPLETED


class TestSendMoney:
    """Test suite for peer-to-peer transfers."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_transfer_recorded_completed(
        self,
        orchestrator: PaymentOrchestrator,
        gateway: AsyncMock,
        confirmer: AsyncMock,
        transfer_draft: TransactionDraft,
    ) -> None:
        draft = transfer_draft.model_copy(
            update={"amount": Decimal("150.00"), "recipient_id": "user_456"}
        )

        result = await orchestrator.send_money("form_9", draft)

        assert result.succeeded
        assert result.transaction.status is TransactionStatus.COMPLETED
        assert result.transaction.kind is TransactionKind.PEER_TO_PEER
        assert result.transaction.recipient_id == "user_456"
        gateway.request_intent.assert_not_called()
        confirmer.confirm.assert_not_called()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_recipient_resolved_from_directory(
        self,
        orchestrator: PaymentOrchestrator,
        transfer_draft: TransactionDraft,
    ) -> None:
        directory = AsyncMock()
        directory.resolve.return_value = "user_456"
        orchestrator.recipients = directory

        result = await orchestrator.send_money("form_9", transfer_draft)

        directory.resolve.assert_awaited_once_with("thandi@example.com")
        assert result.transaction.recipient_id == "user_456"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_recipient_kept_as_label(
        self,
        orchestrator: PaymentOrchestrator,
        transfer_draft: TransactionDraft,
    ) -> None:
        directory = AsyncMock()
        directory.resolve.return_value = None
        orchestrator.recipients = directory

        result = await orchestrator.send_money("form_9", transfer_draft)

        assert result.succeeded
        assert result.transaction.recipient_id is None
        assert result.transaction.counterparty_label == "thandi@example.com"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_transfer_rejected(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: SqlTransactionLedger,
        transfer_draft: TransactionDraft,
    ) -> None:
        draft = transfer_draft.model_copy(update={"counterparty_label": ""})

        result = await orchestrator.send_money("form_9", draft)

        assert result.error.kind is ErrorKind.VALIDATION
        assert result.transaction is None
        assert await ledger.list_for_user("user_123") == []


class FlakyStore(InMemorySubmissionStore):
    """Attempt store that starts failing once ``broken`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.broken = False

    async def failures(self, submission_id: str) -> int:
        if self.broken:
            raise ConnectionError("redis connection lost")
        return await super().failures(submission_id)

    async def record_failure(self, submission_id: str) -> int:
        if self.broken:
            raise ConnectionError("redis connection lost")
        return await super().record_failure(submission_id)


class TestAttemptStoreFailures:
    """Attempt store errors after the claim never hide the payment outcome."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_confirmed_charge_survives_store_outage(
        self,
        ledger: SqlTransactionLedger,
        gateway: AsyncMock,
        confirmer: AsyncMock,
        merchant_draft: TransactionDraft,
    ) -> None:
        store = FlakyStore()
        orchestrator = PaymentOrchestrator(
            ledger=ledger,
            gateway=gateway,
            confirmer=confirmer,
            recovery=RecoveryPolicy(store=store, max_attempts=3),
        )

        async def confirm_then_break(client_secret: str, payment_method: Any) -> Confirmation:
            store.broken = True
            return SUCCEEDED

        confirmer.confirm.side_effect = confirm_then_break

        result = await pay(orchestrator, merchant_draft)

        assert result.succeeded
        assert result.error is None
        assert result.attempts_remaining is None
        assert (await ledger.get(result.transaction.id)).status is TransactionStatus.COMPLETED
        assert await store.acquire("form_1")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_payment_survives_store_outage(
        self,
        ledger: SqlTransactionLedger,
        gateway: AsyncMock,
        confirmer: AsyncMock,
        merchant_draft: TransactionDraft,
    ) -> None:
        store = FlakyStore()
        orchestrator = PaymentOrchestrator(
            ledger=ledger,
            gateway=gateway,
            confirmer=confirmer,
            recovery=RecoveryPolicy(store=store, max_attempts=3),
        )

        async def gateway_down(**kwargs: Any) -> str:
            store.broken = True
            raise GatewayError("Payment intent service error (503)")

        gateway.request_intent.side_effect = gateway_down

        result = await pay(orchestrator, merchant_draft)

        assert result.state is OrchestrationState.FAILED
        assert result.error.kind is ErrorKind.GATEWAY
        assert result.error.retryable
        assert result.attempts_remaining is None
        assert result.transaction.status is TransactionStatus.FAILED


class TestRollbackFailures:
    """A failing rollback must not leave the submission held."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_rollback_error_releases_submission(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: SqlTransactionLedger,
        gateway: AsyncMock,
        merchant_draft: TransactionDraft,
    ) -> None:
        gateway.request_intent.side_effect = GatewayError("Payment intent service error (503)")

        with patch.object(ledger, "get", side_effect=OSError("disk unavailable")):
            failed = await pay(orchestrator, merchant_draft)

        assert failed.state is OrchestrationState.FAILED
        assert failed.error.kind is ErrorKind.GATEWAY
        assert failed.transaction.status is TransactionStatus.PENDING
        assert failed.attempts_remaining == 2

        gateway.request_intent.side_effect = None
        resubmitted = await pay(orchestrator, merchant_draft)

        assert resubmitted.succeeded
        assert resubmitted.transaction.id != failed.transaction.id

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unexpected_error_releases_submission(
        self,
        orchestrator: PaymentOrchestrator,
        merchant_draft: TransactionDraft,
    ) -> None:
        with patch.object(metrics, "record_payment_amount", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                await pay(orchestrator, merchant_draft)

        resubmitted = await pay(orchestrator, merchant_draft)

        assert resubmitted.succeeded


class TestAbandonedStepUp:
    """Step-ups the user never answers still reach a terminal state."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_abandoned_step_up_rolled_back(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: SqlTransactionLedger,
        confirmer: AsyncMock,
        merchant_draft: TransactionDraft,
    ) -> None:
        confirmer.confirm.return_value = REQUIRES_ACTION
        pending = await pay(orchestrator, merchant_draft)

        summary = await orchestrator.resolve_abandoned(max_age_seconds=0)

        assert summary == {"completed": 0, "failed": 1, "deferred": 0}
        assert confirmer.confirm.await_args_list[-1].args == (CLIENT_SECRET, None)
        assert orchestrator.awaiting_action("form_1") is None
        stored = await ledger.get(pending.transaction.id)
        assert stored.status is TransactionStatus.FAILED
        assert stored.processor_reference == "pi_test_123"

        confirmer.confirm.return_value = SUCCEEDED
        resubmitted = await pay(orchestrator, merchant_draft)

        assert resubmitted.succeeded
        assert resubmitted.attempts_remaining == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_step_up_completed_elsewhere_is_finalized(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: SqlTransactionLedger,
        confirmer: AsyncMock,
        merchant_draft: TransactionDraft,
    ) -> None:
        confirmer.confirm.side_effect = [REQUIRES_ACTION, SUCCEEDED]
        pending = await pay(orchestrator, merchant_draft)

        summary = await orchestrator.resolve_abandoned(max_age_seconds=0)

        assert summary == {"completed": 1, "failed": 0, "deferred": 0}
        assert (await ledger.get(pending.transaction.id)).status is TransactionStatus.COMPLETED

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unreachable_processor_defers(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: SqlTransactionLedger,
        confirmer: AsyncMock,
        merchant_draft: TransactionDraft,
    ) -> None:
        confirmer.confirm.side_effect = [
            REQUIRES_ACTION,
            ClientFault("Card processor temporarily unavailable"),
        ]
        pending = await pay(orchestrator, merchant_draft)

        summary = await orchestrator.resolve_abandoned(max_age_seconds=0)

        assert summary == {"completed": 0, "failed": 0, "deferred": 1}
        assert orchestrator.awaiting_action("form_1") is not None
        assert (await ledger.get(pending.transaction.id)).status is TransactionStatus.PENDING

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_recent_step_up_left_alone(
        self,
        orchestrator: PaymentOrchestrator,
        confirmer: AsyncMock,
        merchant_draft: TransactionDraft,
    ) -> None:
        confirmer.confirm.return_value = REQUIRES_ACTION
        await pay(orchestrator, merchant_draft)

        summary = await orchestrator.resolve_abandoned(max_age_seconds=3600)

        assert summary == {"completed": 0, "failed": 0, "deferred": 0}
        assert confirmer.confirm.await_count == 1
        assert orchestrator.awaiting_action("form_1") is not None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_expired_hold_settles_old_record_first(
        self,
        orchestrator: PaymentOrchestrator,
        ledger: SqlTransactionLedger,
        recovery: RecoveryPolicy,
        confirmer: AsyncMock,
        merchant_draft: TransactionDraft,
    ) -> None:
        confirmer.confirm.return_value = REQUIRES_ACTION
        first = await pay(orchestrator, merchant_draft)

        # The submission hold expires while the step-up is unanswered.
        await recovery.store.release("form_1")
        confirmer.confirm.side_effect = [REQUIRES_ACTION, SUCCEEDED]
        second = await pay(orchestrator, merchant_draft)

        assert second.succeeded
        assert second.transaction.id != first.transaction.id
        assert (await ledger.get(first.transaction.id)).status is TransactionStatus.FAILED
        assert orchestrator.awaiting_action("form_1") is None
        statuses = {t.id: t.status for t in await ledger.list_for_user("user_123")}
        assert statuses == {
            first.transaction.id: TransactionStatus.FAILED,
            second.transaction.id: TransactionStatus.COMPLETED,
        }
