"""
Reconciliation of processor successes the ledger missed.

When Stripe confirms a charge but the final ledger write fails, the payment
has still succeeded. The fault is recorded here and the ``completed`` write is
replayed later. The charge itself is never retried.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

import structlog

from payper.core.exceptions import InvalidTransitionError, NotFoundError, PersistenceError
from payper.core.ledger import TransactionLedger
from payper.core.models import TransactionPatch, TransactionStatus, utcnow
from payper.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class ReconciliationFault:
    """A confirmed payment whose ledger record is not yet completed."""

    transaction_id: str
    processor_reference: str
    error: str
    recorded_at: datetime = field(default_factory=utcnow)
    replay_attempts: int = 0
    last_error: Optional[str] = None


class ReconciliationRecorder:
    """
    Queue of reconciliation faults.

    Kept in process memory; every fault is also logged at error level with
    the transaction id and processor reference, so the log stream is the
    durable record for operators.
    """

    def __init__(self) -> None:
        self._faults: Dict[str, ReconciliationFault] = {}

    def record(
        self, transaction_id: str, processor_reference: str, error: Exception | str
    ) -> ReconciliationFault:
        """Queue a fault for replay and raise an alert in the logs."""
        fault = ReconciliationFault(
            transaction_id=transaction_id,
            processor_reference=processor_reference,
            error=str(error),
        )
        self._faults[transaction_id] = fault

        metrics.record_reconciliation_fault(len(self._faults))
        logger.error(
            "reconciliation_fault",
            transaction_id=transaction_id,
            processor_reference=processor_reference,
            error=str(error),
        )
        return fault

    def pending(self) -> List[ReconciliationFault]:
        return list(self._faults.values())

    def __len__(self) -> int:
        return len(self._faults)

    async def replay(self, ledger: TransactionLedger) -> Dict[str, int]:
        """
        Re-attempt the completed write for every queued fault.

        Returns:
            Dict[str, int]: Counts of resolved and still-failing faults
        """
        resolved = 0
        failed = 0

        for fault in self.pending():
            fault.replay_attempts += 1
            patch = TransactionPatch(
                status=TransactionStatus.COMPLETED,
                processor_reference=fault.processor_reference,
            )
            try:
                await ledger.update(fault.transaction_id, patch)
            except InvalidTransitionError:
                current = await self._current_status(ledger, fault.transaction_id)
                if current is TransactionStatus.COMPLETED:
                    del self._faults[fault.transaction_id]
                    resolved += 1
                    continue
                # The record was rolled back to failed although the charge went through.
                fault.last_error = f"ledger record is {current.value if current else 'unreadable'}"
                failed += 1
                logger.error(
                    "reconciliation_status_conflict",
                    transaction_id=fault.transaction_id,
                    processor_reference=fault.processor_reference,
                    ledger_status=current.value if current else None,
                )
                continue
            except (PersistenceError, NotFoundError) as e:
                fault.last_error = str(e)
                failed += 1
                logger.warning(
                    "reconciliation_replay_failed",
                    transaction_id=fault.transaction_id,
                    attempts=fault.replay_attempts,
                    error=str(e),
                )
                continue

            del self._faults[fault.transaction_id]
            resolved += 1
            logger.info(
                "reconciliation_fault_resolved",
                transaction_id=fault.transaction_id,
                processor_reference=fault.processor_reference,
            )

        metrics.record_reconciliation_replay(resolved, failed, len(self._faults))
        return {"resolved": resolved, "failed": failed, "pending": len(self._faults)}

    @staticmethod
    async def _current_status(
        ledger: TransactionLedger, transaction_id: str
    ) -> Optional[TransactionStatus]:
        try:
            return (await ledger.get(transaction_id)).status
        except (PersistenceError, NotFoundError):
            return None
