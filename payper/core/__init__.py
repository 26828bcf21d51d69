"""Core payment orchestration: ledger, state machine, recovery, reconciliation and receipts."""
from .ledger import SqlTransactionLedger, TransactionLedger
from .models import (
    Confirmation,
    ConfirmationOutcome,
    Transaction,
    TransactionDraft,
    TransactionKind,
    TransactionPatch,
    TransactionStatus,
)
from .orchestrator import PaymentOrchestrator, PaymentResult
from .receipts import DocumentType, Receipt, ReceiptDraft, SqlReceiptStore
from .reconciliation import ReconciliationRecorder
from .recovery import InMemorySubmissionStore, RecoveryPolicy, RedisSubmissionStore
from .results import Err, ErrorKind, Ok
from .state_machine import OrchestrationEvent, OrchestrationState, transition

__all__ = [
    "Confirmation",
    "ConfirmationOutcome",
    "DocumentType",
    "Err",
    "ErrorKind",
    "InMemorySubmissionStore",
    "Ok",
    "OrchestrationEvent",
    "OrchestrationState",
    "PaymentOrchestrator",
    "PaymentResult",
    "Receipt",
    "ReceiptDraft",
    "ReconciliationRecorder",
    "RecoveryPolicy",
    "RedisSubmissionStore",
    "SqlReceiptStore",
    "SqlTransactionLedger",
    "Transaction",
    "TransactionDraft",
    "TransactionKind",
    "TransactionPatch",
    "TransactionStatus",
    "transition",
]
