"""
Receipt and invoice records.

Expense documents the user files next to their payments. A record is typed
in on the receipt form, optionally pre-filled by ``OcrClient.scan``, and only
its owner may list or delete it. Image storage is handled by the client; the
record keeps the image URL it was given.
"""
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import List, Optional

import structlog
from pydantic import BaseModel, ConfigDict
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payper.core.exceptions import NotFoundError, PersistenceError, ValidationError
from payper.core.models import quantize_amount, utcnow
from payper.database.models import ReceiptRecord

logger = structlog.get_logger(__name__)


class DocumentType(str, Enum):
    RECEIPT = "receipt"
    INVOICE = "invoice"


class ReceiptStatus(str, Enum):
    """Completed when typed in, processed when it came from a scan."""

    COMPLETED = "completed"
    PROCESSED = "processed"


class ReceiptDraft(BaseModel):
    """A receipt as filed by the user, before it has an id."""

    user_id: str
    merchant_name: str
    amount: Decimal
    currency: str = "ZAR"
    issued_on: date
    category: Optional[str] = None
    document_type: DocumentType = DocumentType.RECEIPT
    image_url: Optional[str] = None
    ocr_text: Optional[str] = None


class Receipt(BaseModel):
    """Immutable snapshot of a stored receipt."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    merchant_name: str
    amount: Decimal
    currency: str
    issued_on: date
    category: Optional[str] = None
    document_type: DocumentType
    image_url: Optional[str] = None
    status: ReceiptStatus
    created_at: datetime


def validate_receipt(draft: ReceiptDraft) -> ReceiptDraft:
    """
    Validate a receipt and normalize its amount, currency and text fields.

    Raises:
        ValidationError: If the receipt is malformed
    """
    if not draft.user_id or not draft.user_id.strip():
        raise ValidationError("User ID is required")

    if not draft.merchant_name or not draft.merchant_name.strip():
        raise ValidationError("Merchant name is required")

    try:
        amount = quantize_amount(draft.amount)
    except (InvalidOperation, ValueError):
        raise ValidationError("Amount must be a number") from None
    if amount <= 0:
        raise ValidationError("Amount must be positive")

    currency = (draft.currency or "").strip()
    if len(currency) != 3 or not currency.isalpha():
        raise ValidationError("Currency must be 3-letter code")

    category = draft.category.strip() if draft.category else None

    return draft.model_copy(
        update={
            "user_id": draft.user_id.strip(),
            "merchant_name": draft.merchant_name.strip(),
            "amount": amount,
            "currency": currency.upper(),
            "category": category or None,
        }
    )


class SqlReceiptStore:
    """Receipt records on an SQLAlchemy async session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @staticmethod
    def _to_snapshot(record: ReceiptRecord) -> Receipt:
        created_at = record.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)

        return Receipt(
            id=record.id,
            user_id=record.user_id,
            merchant_name=record.merchant_name,
            amount=quantize_amount(record.amount),
            currency=record.currency,
            issued_on=record.issued_on,
            category=record.category,
            document_type=DocumentType(record.document_type),
            image_url=record.image_url,
            status=ReceiptStatus(record.status),
            created_at=created_at,
        )

    async def create(self, draft: ReceiptDraft) -> Receipt:
        """
        File a receipt or invoice.

        Raises:
            ValidationError: If the draft is malformed (nothing is written)
            PersistenceError: If the insert fails
        """
        draft = validate_receipt(draft)
        status = ReceiptStatus.PROCESSED if draft.ocr_text else ReceiptStatus.COMPLETED

        record = ReceiptRecord(
            id=str(uuid.uuid4()),
            user_id=draft.user_id,
            document_type=draft.document_type.value,
            merchant_name=draft.merchant_name,
            amount=draft.amount,
            currency=draft.currency,
            issued_on=draft.issued_on,
            category=draft.category,
            image_url=draft.image_url,
            ocr_text=draft.ocr_text,
            status=status.value,
            created_at=utcnow(),
        )

        try:
            async with self.session_factory() as session:
                session.add(record)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("receipt_create_failed", error=str(e))
            raise PersistenceError(f"Failed to save receipt: {e}") from e

        logger.info(
            "receipt_created",
            receipt_id=record.id,
            document_type=record.document_type,
            status=record.status,
        )
        return self._to_snapshot(record)

    async def list_for_user(
        self,
        user_id: str,
        document_type: Optional[DocumentType] = None,
        limit: int = 100,
    ) -> List[Receipt]:
        """List the user's receipts, most recent document date first."""
        stmt = select(ReceiptRecord).where(ReceiptRecord.user_id == user_id)
        if document_type is not None:
            stmt = stmt.where(ReceiptRecord.document_type == document_type.value)
        stmt = stmt.order_by(
            ReceiptRecord.issued_on.desc(), ReceiptRecord.created_at.desc()
        ).limit(limit)

        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                records = result.scalars().all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list receipts: {e}") from e

        return [self._to_snapshot(record) for record in records]

    async def delete(self, receipt_id: str, user_id: str) -> None:
        """
        Delete one of the user's receipts.

        Raises:
            NotFoundError: If the user has no receipt with this id
            PersistenceError: If the delete fails
        """
        stmt = delete(ReceiptRecord).where(
            ReceiptRecord.id == receipt_id, ReceiptRecord.user_id == user_id
        )
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                deleted = result.rowcount
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("receipt_delete_failed", receipt_id=receipt_id, error=str(e))
            raise PersistenceError(f"Failed to delete receipt {receipt_id}: {e}") from e

        if not deleted:
            raise NotFoundError(f"Receipt {receipt_id} not found")
        logger.info("receipt_deleted", receipt_id=receipt_id)
