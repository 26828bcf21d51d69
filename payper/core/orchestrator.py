"""
Payment orchestration controller.

Drives one user submission through the ledger and the processor:

1. Create the ledger record (pending)
2. Request a payment intent (client secret)
3. Confirm the card with the processor
4. Finalize the ledger record (completed) or roll it back (failed)

Every step result is captured as Ok/Err and fed to the explicit state machine
in ``payper.core.state_machine``. No step exception reaches the caller: each
call returns a PaymentResult with at most one user-facing error.

Peer-to-peer transfers have no processor step and are written completed in a
single ledger call.

Step-ups the user never answers are settled by ``resolve_abandoned``, which
the reconciliation worker runs on its interval.
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Set

import structlog

from payper.config import get_settings
from payper.core.ledger import TransactionLedger
from payper.core.models import (
    Confirmation,
    ConfirmationOutcome,
    Transaction,
    TransactionDraft,
    TransactionKind,
    TransactionPatch,
    TransactionStatus,
    to_minor_units,
)
from payper.core.reconciliation import ReconciliationRecorder
from payper.core.recovery import RecoveryPolicy
from payper.core.results import Err, ErrorKind, Ok, Result, capture
from payper.core.state_machine import OrchestrationEvent, OrchestrationState, transition
from payper.monitoring.logging import log_context
from payper.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class IntentGateway(Protocol):
    async def request_intent(
        self,
        amount_minor_units: int,
        currency: str,
        user_id: str,
        merchant_id: str,
        description: str,
        idempotency_key: Optional[str] = None,
    ) -> str:
        ...


class CardConfirmer(Protocol):
    async def confirm(self, client_secret: str, payment_method: Optional[Any]) -> Confirmation:
        ...


class RecipientResolver(Protocol):
    async def resolve(self, label: str) -> Optional[str]:
        ...


@dataclass(frozen=True)
class PaymentErrorInfo:
    """The single error surface shown to the user."""

    kind: ErrorKind
    message: str
    retryable: bool


@dataclass(frozen=True)
class PaymentResult:
    """Outcome of one orchestration call."""

    submission_id: str
    state: OrchestrationState
    transaction: Optional[Transaction] = None
    error: Optional[PaymentErrorInfo] = None
    client_secret: Optional[str] = None
    reconciliation_pending: bool = False
    attempts_remaining: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.state is OrchestrationState.COMPLETED

    @property
    def requires_action(self) -> bool:
        return self.state is OrchestrationState.CONFIRMING and self.client_secret is not None


@dataclass
class AwaitingAction:
    """A merchant payment suspended on step-up authentication."""

    submission_id: str
    transaction: Transaction
    client_secret: str
    started_at: float = field(default_factory=time.monotonic)

    @property
    def age_seconds(self) -> float:
        return time.monotonic() - self.started_at


USER_MESSAGES = {
    ErrorKind.GATEWAY: "We could not start the payment. No money was taken.",
    ErrorKind.CLIENT_FAULT: "We could not reach the card processor. No money was taken.",
    ErrorKind.PERSISTENCE: "We could not save the payment. Please try again.",
    ErrorKind.NOT_FOUND: "No payment is waiting for confirmation.",
    ErrorKind.REQUIRES_ACTION: "Card authentication was not completed. No money was taken.",
}


class PaymentOrchestrator:
    """
    Orchestration controller.

    The only component that changes a transaction's status after creation.
    Not re-entrant per submission id: the recovery policy refuses a second
    concurrent orchestration for the same submission.
    """

    def __init__(
        self,
        ledger: TransactionLedger,
        gateway: IntentGateway,
        confirmer: CardConfirmer,
        recovery: Optional[RecoveryPolicy] = None,
        reconciliation: Optional[ReconciliationRecorder] = None,
        recipients: Optional[RecipientResolver] = None,
    ):
        self.ledger = ledger
        self.gateway = gateway
        self.confirmer = confirmer
        self.recovery = recovery or RecoveryPolicy()
        self.reconciliation = reconciliation or ReconciliationRecorder()
        self.recipients = recipients
        self._awaiting_action: Dict[str, AwaitingAction] = {}
        self._background: Set[asyncio.Task] = set()

        logger.info("payment_orchestrator_initialized")

    # Result helpers

    async def _close_attempt(self, submission_id: str, failed: Optional[bool]) -> Optional[int]:
        """
        Release the submission, counting a failure when ``failed`` is True.

        ``failed=None`` releases without counting. Returns the attempts left,
        or None when the attempt store could not be reached.
        """
        if failed is None:
            closing = self.recovery.abandon_attempt(submission_id)
        else:
            closing = self.recovery.end_attempt(submission_id, failed=failed)

        closed = await capture(closing, ErrorKind.PERSISTENCE)
        if isinstance(closed, Err):
            logger.error("submission_attempt_not_closed", error=closed.message)
            return None
        return closed.value

    async def _rollback(
        self, transaction_id: str, processor_reference: Optional[str] = None
    ) -> Optional[Transaction]:
        rolled_back = await capture(
            self.recovery.rollback(self.ledger, transaction_id, processor_reference),
            ErrorKind.PERSISTENCE,
        )
        if isinstance(rolled_back, Err):
            metrics.record_rollback("error")
            logger.error("rollback_not_applied", error=rolled_back.message)
            return None
        return rolled_back.value

    async def _failure(
        self,
        submission_id: str,
        state: OrchestrationState,
        err: Err,
        transaction: Optional[Transaction] = None,
        counted: bool = True,
        message: Optional[str] = None,
        close: bool = True,
    ) -> PaymentResult:
        """Close the attempt and build the user-facing error."""
        remaining = None
        if close:
            remaining = await self._close_attempt(submission_id, True if counted else None)

        return PaymentResult(
            submission_id=submission_id,
            state=state,
            transaction=transaction,
            error=PaymentErrorInfo(
                kind=err.kind,
                message=message or USER_MESSAGES.get(err.kind, err.message),
                retryable=err.kind.retryable and (remaining is None or remaining > 0),
            ),
            attempts_remaining=remaining,
        )

    @staticmethod
    def _refused(submission_id: str, err: Err) -> PaymentResult:
        return PaymentResult(
            submission_id=submission_id,
            state=OrchestrationState.DRAFT,
            error=PaymentErrorInfo(kind=err.kind, message=err.message, retryable=False),
            attempts_remaining=0 if err.kind is ErrorKind.RETRY_LIMIT else None,
        )

    @staticmethod
    def _record(kind: TransactionKind, result: PaymentResult, started: float) -> PaymentResult:
        if result.requires_action:
            outcome = "requires_action"
        elif result.error is not None and result.transaction is None:
            outcome = "rejected"
        else:
            outcome = result.state.value
        metrics.record_orchestration(kind.value, outcome, time.monotonic() - started)
        return result

    # Peer-to-peer

    async def send_money(self, submission_id: str, draft: TransactionDraft) -> PaymentResult:
        """
        Record a peer-to-peer transfer.

        The recipient label is matched against known users; the ledger record
        is written completed in one call. There is nothing to roll back.
        """
        started = time.monotonic()
        with log_context(submission_id=submission_id, kind=TransactionKind.PEER_TO_PEER.value):
            claimed = await capture(
                self.recovery.begin_attempt(submission_id), ErrorKind.PERSISTENCE
            )
            if isinstance(claimed, Err):
                return self._record(draft.kind, self._refused(submission_id, claimed), started)

            try:
                result = await self._record_transfer(submission_id, draft)
            except Exception:
                logger.exception("transfer_aborted")
                await self._close_attempt(submission_id, None)
                raise
            return self._record(draft.kind, result, started)

    async def _record_transfer(self, submission_id: str, draft: TransactionDraft) -> PaymentResult:
        state = OrchestrationState.DRAFT

        if draft.kind is not TransactionKind.PEER_TO_PEER:
            err = Err(ErrorKind.VALIDATION, "Transfers must be peer-to-peer")
            return await self._failure(submission_id, state, err, counted=False)

        if draft.recipient_id is None and self.recipients is not None:
            lookup = await capture(
                self.recipients.resolve(draft.counterparty_label), ErrorKind.PERSISTENCE
            )
            if isinstance(lookup, Err):
                logger.error("recipient_lookup_failed", error=lookup.message)
                return await self._failure(submission_id, state, lookup)
            draft = draft.model_copy(update={"recipient_id": lookup.value})

        created = await capture(
            self.ledger.create(draft, status=TransactionStatus.COMPLETED),
            ErrorKind.PERSISTENCE,
        )
        if isinstance(created, Err):
            if created.kind is ErrorKind.VALIDATION:
                state = transition(state, OrchestrationEvent.VALIDATION_FAILED)
                logger.info("transfer_rejected", reason=created.message)
                return await self._failure(
                    submission_id, state, created, counted=False, message=created.message
                )
            logger.error("transfer_not_recorded", error=created.message)
            return await self._failure(submission_id, state, created)

        state = transition(state, OrchestrationEvent.TRANSFER_RECORDED)
        metrics.record_payment_amount(to_minor_units(created.value.amount))
        remaining = await self._close_attempt(submission_id, False)
        logger.info(
            "transfer_completed",
            transaction_id=created.value.id,
            known_recipient=created.value.recipient_id is not None,
        )
        return PaymentResult(
            submission_id=submission_id,
            state=state,
            transaction=created.value,
            attempts_remaining=remaining,
        )

    # Merchant payments

    async def pay_merchant(
        self,
        submission_id: str,
        draft: TransactionDraft,
        merchant_id: str,
        payment_method: Any,
        description: Optional[str] = None,
    ) -> PaymentResult:
        """
        Run a merchant payment from draft to a terminal state.

        Args:
            submission_id: Identifier of the originating user action
            draft: The payment (kind must be merchant)
            merchant_id: Merchant identifier for the payment intent
            payment_method: Card payment method handed to the processor
            description: Statement description (defaults to "Payment to <merchant>")

        Returns:
            PaymentResult: completed, failed, or confirming with a client
            secret when the card needs step-up authentication
        """
        started = time.monotonic()
        with log_context(submission_id=submission_id, kind=TransactionKind.MERCHANT.value):
            claimed = await capture(
                self.recovery.begin_attempt(submission_id), ErrorKind.PERSISTENCE
            )
            if isinstance(claimed, Err):
                return self._record(draft.kind, self._refused(submission_id, claimed), started)

            try:
                # The claim only succeeds over a step-up entry once its hold expired.
                stale = self._awaiting_action.pop(submission_id, None)
                if stale is not None:
                    await self._resolve_stale(stale, close=False)

                result = await self._run_merchant_payment(
                    submission_id, draft, merchant_id, payment_method, description
                )
            except Exception:
                logger.exception("merchant_payment_aborted")
                await self._close_attempt(submission_id, None)
                raise
            return self._record(draft.kind, result, started)

    async def _run_merchant_payment(
        self,
        submission_id: str,
        draft: TransactionDraft,
        merchant_id: str,
        payment_method: Any,
        description: Optional[str],
    ) -> PaymentResult:
        state = OrchestrationState.DRAFT

        if draft.kind is not TransactionKind.MERCHANT or not merchant_id:
            err = Err(ErrorKind.VALIDATION, "Merchant payments need a merchant")
            return await self._failure(
                submission_id, state, err, counted=False, message=err.message
            )

        # 1. Ledger record
        created = await capture(self.ledger.create(draft), ErrorKind.PERSISTENCE)
        if isinstance(created, Err):
            if created.kind is ErrorKind.VALIDATION:
                state = transition(state, OrchestrationEvent.VALIDATION_FAILED)
                logger.info("merchant_payment_rejected", reason=created.message)
                return await self._failure(
                    submission_id, state, created, counted=False, message=created.message
                )
            logger.error("merchant_payment_not_recorded", error=created.message)
            return await self._failure(submission_id, state, created)

        transaction = created.value
        state = transition(state, OrchestrationEvent.LEDGER_CREATED)
        metrics.record_payment_amount(to_minor_units(transaction.amount))

        with log_context(transaction_id=transaction.id):
            # 2. Payment intent
            intent = await capture(
                self.gateway.request_intent(
                    amount_minor_units=to_minor_units(transaction.amount),
                    currency=transaction.currency,
                    user_id=transaction.sender_id,
                    merchant_id=merchant_id,
                    description=description or f"Payment to {transaction.counterparty_label}",
                    idempotency_key=transaction.id,
                ),
                ErrorKind.GATEWAY,
            )
            if isinstance(intent, Err):
                state = transition(state, OrchestrationEvent.INTENT_FAILED)
                logger.warning("payment_intent_step_failed", error=intent.message)
                rolled_back = await self._rollback(transaction.id)
                return await self._failure(
                    submission_id, state, intent, transaction=rolled_back or transaction
                )

            state = transition(state, OrchestrationEvent.INTENT_CREATED)
            logger.info("merchant_payment_confirming")

            # 3-4. Confirmation and finalize
            confirmed = await capture(
                self.confirmer.confirm(intent.value, payment_method), ErrorKind.CLIENT_FAULT
            )
            return await self._settle(submission_id, transaction, intent.value, confirmed, state)

    async def resume_confirmation(
        self, submission_id: str, payment_method: Optional[Any] = None
    ) -> PaymentResult:
        """
        Continue a payment that was waiting on step-up authentication.

        Uses the same client secret and the same ledger record; no new
        transaction is created.
        """
        started = time.monotonic()
        awaiting = self._awaiting_action.pop(submission_id, None)
        if awaiting is None:
            err = Err(ErrorKind.NOT_FOUND, "No payment is awaiting confirmation")
            return self._record(
                TransactionKind.MERCHANT, self._refused(submission_id, err), started
            )

        with log_context(submission_id=submission_id, transaction_id=awaiting.transaction.id):
            logger.info(
                "merchant_payment_resumed", waited_seconds=round(awaiting.age_seconds, 3)
            )
            try:
                confirmed = await capture(
                    self.confirmer.confirm(awaiting.client_secret, payment_method),
                    ErrorKind.CLIENT_FAULT,
                )
                result = await self._settle(
                    submission_id,
                    awaiting.transaction,
                    awaiting.client_secret,
                    confirmed,
                    OrchestrationState.CONFIRMING,
                )
            except Exception:
                logger.exception("merchant_payment_aborted")
                await self._close_attempt(submission_id, None)
                raise
            return self._record(TransactionKind.MERCHANT, result, started)

    async def _settle(
        self,
        submission_id: str,
        transaction: Transaction,
        client_secret: str,
        confirmed: "Result[Confirmation]",
        state: OrchestrationState,
        abandon_pending: bool = False,
        close: bool = True,
    ) -> PaymentResult:
        """
        Drive the confirmation outcome to the ledger.

        With ``abandon_pending`` a card still waiting on step-up is rolled
        back instead of suspended again. With ``close=False`` the submission
        claim is left to the caller.
        """
        if isinstance(confirmed, Err):
            state = transition(state, OrchestrationEvent.CONFIRMATION_FAULT)
            logger.warning("card_confirmation_fault", error=confirmed.message)
            rolled_back = await self._rollback(transaction.id)
            return await self._failure(
                submission_id,
                state,
                confirmed,
                transaction=rolled_back or transaction,
                close=close,
            )

        confirmation = confirmed.value

        if confirmation.outcome is ConfirmationOutcome.REQUIRES_ACTION:
            if abandon_pending:
                state = transition(state, OrchestrationEvent.ACTION_ABANDONED)
                logger.info(
                    "card_action_abandoned",
                    processor_reference=confirmation.processor_reference,
                )
                rolled_back = await self._rollback(
                    transaction.id, confirmation.processor_reference
                )
                err = Err(ErrorKind.REQUIRES_ACTION, "Step-up authentication timed out")
                return await self._failure(
                    submission_id,
                    state,
                    err,
                    transaction=rolled_back or transaction,
                    close=close,
                )

            state = transition(state, OrchestrationEvent.ACTION_REQUIRED)
            self._awaiting_action[submission_id] = AwaitingAction(
                submission_id=submission_id,
                transaction=transaction,
                client_secret=client_secret,
            )
            logger.info("card_requires_action", processor_reference=confirmation.processor_reference)
            return PaymentResult(
                submission_id=submission_id,
                state=state,
                transaction=transaction,
                client_secret=client_secret,
            )

        if confirmation.outcome is ConfirmationOutcome.DECLINED:
            state = transition(state, OrchestrationEvent.DECLINED)
            logger.info("card_declined", reason=confirmation.decline_reason)
            rolled_back = await self._rollback(transaction.id, confirmation.processor_reference)
            err = Err(ErrorKind.DECLINED, confirmation.decline_reason or "Card declined")
            return await self._failure(
                submission_id,
                state,
                err,
                transaction=rolled_back or transaction,
                message=f"Your card was declined: {err.message}",
                close=close,
            )

        state = transition(state, OrchestrationEvent.CONFIRMED)
        reference = confirmation.processor_reference
        finalized = await capture(
            self.ledger.update(
                transaction.id,
                TransactionPatch(status=TransactionStatus.COMPLETED, processor_reference=reference),
            ),
            ErrorKind.PERSISTENCE,
        )

        reconciliation_pending = False
        if isinstance(finalized, Ok):
            snapshot = finalized.value
        else:
            # Money has moved: report success, reconcile the ledger later.
            self.reconciliation.record(transaction.id, reference or "", finalized.message)
            reconciliation_pending = True
            snapshot = transaction.model_copy(
                update={
                    "status": TransactionStatus.COMPLETED,
                    "processor_reference": reference,
                }
            )

        remaining = await self._close_attempt(submission_id, False) if close else None
        logger.info(
            "merchant_payment_completed",
            processor_reference=reference,
            reconciliation_pending=reconciliation_pending,
        )
        return PaymentResult(
            submission_id=submission_id,
            state=state,
            transaction=snapshot,
            reconciliation_pending=reconciliation_pending,
            attempts_remaining=remaining,
        )

    # Abandoned step-up authentication

    async def _resolve_stale(
        self, awaiting: AwaitingAction, close: bool = True
    ) -> Optional[PaymentResult]:
        """
        Settle a step-up the user never answered.

        The processor is asked once more without a payment method: a charge
        that went through is finalized, one still waiting is rolled back.
        Returns None, and keeps the entry, if the processor cannot be reached
        and the submission is still held.
        """
        with log_context(
            submission_id=awaiting.submission_id, transaction_id=awaiting.transaction.id
        ):
            logger.info(
                "resolving_abandoned_action", waited_seconds=round(awaiting.age_seconds, 3)
            )
            confirmed = await capture(
                self.confirmer.confirm(awaiting.client_secret, None), ErrorKind.CLIENT_FAULT
            )
            if isinstance(confirmed, Err) and close:
                logger.warning("abandoned_action_deferred", error=confirmed.message)
                self._awaiting_action.setdefault(awaiting.submission_id, awaiting)
                return None

            return await self._settle(
                awaiting.submission_id,
                awaiting.transaction,
                awaiting.client_secret,
                confirmed,
                OrchestrationState.CONFIRMING,
                abandon_pending=True,
                close=close,
            )

    async def resolve_abandoned(self, max_age_seconds: Optional[float] = None) -> Dict[str, int]:
        """
        Bring step-ups older than ``max_age_seconds`` to a terminal state.

        Args:
            max_age_seconds: Age at which a step-up counts as abandoned
                (default from settings)

        Returns:
            Dict[str, int]: Completed, failed and deferred counts
        """
        max_age = (
            max_age_seconds
            if max_age_seconds is not None
            else get_settings().action_timeout_seconds
        )
        stale = [
            self._awaiting_action.pop(submission_id)
            for submission_id, awaiting in list(self._awaiting_action.items())
            if awaiting.age_seconds >= max_age
        ]

        counts = {"completed": 0, "failed": 0, "deferred": 0}
        for awaiting in stale:
            result = await self._resolve_stale(awaiting)
            if result is None:
                counts["deferred"] += 1
            elif result.succeeded:
                counts["completed"] += 1
            else:
                counts["failed"] += 1

        if stale:
            logger.info("abandoned_actions_resolved", **counts)
        return counts

    # Detached completion

    def pay_merchant_detached(self, *args: Any, **kwargs: Any) -> "asyncio.Task[PaymentResult]":
        """
        Start ``pay_merchant`` in a task that outlives its caller.

        Cancelling the caller does not cancel the task, so an abandoned
        payment still reaches a terminal ledger state.
        """
        task = asyncio.create_task(self.pay_merchant(*args, **kwargs))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def pay_merchant_shielded(self, *args: Any, **kwargs: Any) -> PaymentResult:
        """Await a detached merchant payment; cancellation only stops the wait."""
        return await asyncio.shield(self.pay_merchant_detached(*args, **kwargs))

    def awaiting_action(self, submission_id: str) -> Optional[AwaitingAction]:
        return self._awaiting_action.get(submission_id)

    def awaiting_count(self) -> int:
        return len(self._awaiting_action)

    async def drain(self) -> None:
        """Wait for detached orchestrations to finish (used at shutdown)."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
