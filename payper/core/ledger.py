"""
Transaction ledger.

Durable store of Transaction records. Records are created once and then only
their status and processor reference may change, following the monotonic
lifecycle pending -> completed | failed. Every call commits on its own; callers
must not assume atomicity across separate create/update calls.
"""
import uuid
from abc import ABC, abstractmethod
from datetime import timezone
from decimal import InvalidOperation
from typing import List, Optional

import structlog
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payper.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from payper.core.models import (
    Transaction,
    TransactionDraft,
    TransactionKind,
    TransactionPatch,
    TransactionStatus,
    quantize_amount,
    utcnow,
)
from payper.database.models import TransactionRecord

logger = structlog.get_logger(__name__)


def validate_draft(draft: TransactionDraft) -> TransactionDraft:
    """
    Validate a submission and normalize its amount and currency.

    Raises:
        ValidationError: If the submission is malformed
    """
    try:
        amount = quantize_amount(draft.amount)
    except (InvalidOperation, ValueError):
        raise ValidationError("Amount must be a number") from None

    if amount <= 0:
        raise ValidationError("Amount must be positive")

    if not draft.sender_id or not draft.sender_id.strip():
        raise ValidationError("Sender ID is required")

    if not draft.counterparty_label or not draft.counterparty_label.strip():
        raise ValidationError("Recipient or merchant is required")

    currency = (draft.currency or "").strip()
    if len(currency) != 3 or not currency.isalpha():
        raise ValidationError("Currency must be 3-letter code")

    note = draft.note.strip() if draft.note else None
    recipient_id = draft.recipient_id.strip() if draft.recipient_id else None

    return draft.model_copy(
        update={
            "amount": amount,
            "currency": currency.upper(),
            "sender_id": draft.sender_id.strip(),
            "counterparty_label": draft.counterparty_label.strip(),
            "note": note or None,
            "recipient_id": recipient_id or None,
        }
    )


def check_transition(
    current: Transaction, patch: TransactionPatch
) -> Optional[str]:
    """
    Check that ``patch`` is a legal change of ``current``.

    Returns:
        Optional[str]: The processor reference the record will carry

    Raises:
        InvalidTransitionError: If the change breaks the lifecycle
    """
    reference = patch.processor_reference or current.processor_reference

    if current.status.is_terminal:
        if patch.status is not None or patch.processor_reference is not None:
            raise InvalidTransitionError(
                f"Transaction {current.id} is already {current.status.value}"
            )
        return reference

    if (
        patch.status is TransactionStatus.COMPLETED
        and current.kind is TransactionKind.MERCHANT
        and not reference
    ):
        raise InvalidTransitionError(
            "A completed merchant transaction requires a processor reference"
        )

    return reference


class TransactionLedger(ABC):
    """Contract for the durable store of Transaction records."""

    @abstractmethod
    async def create(
        self,
        draft: TransactionDraft,
        status: TransactionStatus = TransactionStatus.PENDING,
    ) -> Transaction:
        """Insert a new record and return its snapshot."""

    @abstractmethod
    async def update(self, transaction_id: str, patch: TransactionPatch) -> Transaction:
        """Apply a restricted patch and return the new snapshot."""

    @abstractmethod
    async def get(self, transaction_id: str) -> Transaction:
        """Return the current snapshot of a record."""

    @abstractmethod
    async def list_for_user(
        self,
        user_id: str,
        kind: Optional[TransactionKind] = None,
        status: Optional[TransactionStatus] = None,
        search: Optional[str] = None,
        limit: int = 50,
    ) -> List[Transaction]:
        """Return the user's history, newest first."""

    @staticmethod
    def check_initial_status(draft: TransactionDraft, status: TransactionStatus) -> None:
        """
        Records start pending. Peer-to-peer transfers have no processor step
        and may be written completed directly.
        """
        if status is TransactionStatus.PENDING:
            return
        if status is TransactionStatus.COMPLETED and draft.kind is TransactionKind.PEER_TO_PEER:
            return
        raise ValidationError(
            f"A {draft.kind.value} transaction cannot be created as {status.value}"
        )


class SqlTransactionLedger(TransactionLedger):
    """Transaction ledger on an SQLAlchemy async session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @staticmethod
    def _to_snapshot(record: TransactionRecord) -> Transaction:
        created_at = record.created_at
        updated_at = record.updated_at
        # SQLite hands back naive datetimes; the ledger always writes UTC.
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        if updated_at.tzinfo is None:
            updated_at = updated_at.replace(tzinfo=timezone.utc)

        return Transaction(
            id=record.id,
            sender_id=record.sender_id,
            recipient_id=record.recipient_id,
            counterparty_label=record.counterparty_label,
            amount=quantize_amount(record.amount),
            currency=record.currency,
            note=record.note,
            kind=TransactionKind(record.kind),
            status=TransactionStatus(record.status),
            processor_reference=record.processor_reference,
            created_at=created_at,
            updated_at=updated_at,
        )

    async def create(
        self,
        draft: TransactionDraft,
        status: TransactionStatus = TransactionStatus.PENDING,
    ) -> Transaction:
        """
        Insert a new transaction.

        Args:
            draft: The submission
            status: Initial status (completed is only valid for transfers)

        Returns:
            Transaction: The stored record

        Raises:
            ValidationError: If the draft is malformed (nothing is written)
            PersistenceError: If the insert fails
        """
        draft = validate_draft(draft)
        self.check_initial_status(draft, status)

        now = utcnow()
        record = TransactionRecord(
            id=str(uuid.uuid4()),
            sender_id=draft.sender_id,
            recipient_id=draft.recipient_id,
            counterparty_label=draft.counterparty_label,
            amount=draft.amount,
            currency=draft.currency,
            note=draft.note,
            kind=draft.kind.value,
            status=status.value,
            created_at=now,
            updated_at=now,
        )

        try:
            async with self.session_factory() as session:
                session.add(record)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("ledger_create_failed", error=str(e), kind=draft.kind.value)
            raise PersistenceError(f"Failed to create transaction: {e}") from e

        logger.info(
            "ledger_transaction_created",
            transaction_id=record.id,
            kind=draft.kind.value,
            status=status.value,
        )
        return self._to_snapshot(record)

    async def update(self, transaction_id: str, patch: TransactionPatch) -> Transaction:
        """
        Apply a status/reference patch.

        Raises:
            NotFoundError: If the id is unknown
            InvalidTransitionError: If the change breaks the lifecycle
            PersistenceError: If the write fails
        """
        try:
            async with self.session_factory() as session:
                record = await session.get(TransactionRecord, transaction_id)
                if record is None:
                    raise NotFoundError(f"Transaction {transaction_id} not found")

                reference = check_transition(self._to_snapshot(record), patch)

                if patch.status is not None:
                    record.status = patch.status.value
                record.processor_reference = reference
                record.updated_at = patch.updated_at or utcnow()

                await session.commit()
                snapshot = self._to_snapshot(record)
        except SQLAlchemyError as e:
            logger.error("ledger_update_failed", transaction_id=transaction_id, error=str(e))
            raise PersistenceError(f"Failed to update transaction {transaction_id}: {e}") from e

        logger.info(
            "ledger_transaction_updated",
            transaction_id=transaction_id,
            status=snapshot.status.value,
            processor_reference=snapshot.processor_reference,
        )
        return snapshot

    async def get(self, transaction_id: str) -> Transaction:
        try:
            async with self.session_factory() as session:
                record = await session.get(TransactionRecord, transaction_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read transaction {transaction_id}: {e}") from e

        if record is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return self._to_snapshot(record)

    async def list_for_user(
        self,
        user_id: str,
        kind: Optional[TransactionKind] = None,
        status: Optional[TransactionStatus] = None,
        search: Optional[str] = None,
        limit: int = 50,
    ) -> List[Transaction]:
        """
        List transactions the user sent or received, newest first.

        Args:
            user_id: Sender or recipient id
            kind: Optional kind filter
            status: Optional status filter
            search: Case-insensitive match on counterparty label or note
            limit: Maximum number of rows
        """
        stmt = select(TransactionRecord).where(
            or_(
                TransactionRecord.sender_id == user_id,
                TransactionRecord.recipient_id == user_id,
            )
        )
        if kind is not None:
            stmt = stmt.where(TransactionRecord.kind == kind.value)
        if status is not None:
            stmt = stmt.where(TransactionRecord.status == status.value)
        if search:
            pattern = f"%{search.strip()}%"
            stmt = stmt.where(
                or_(
                    TransactionRecord.counterparty_label.ilike(pattern),
                    TransactionRecord.note.ilike(pattern),
                )
            )
        stmt = stmt.order_by(TransactionRecord.created_at.desc()).limit(limit)

        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                records = result.scalars().all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list transactions: {e}") from e

        return [self._to_snapshot(record) for record in records]
