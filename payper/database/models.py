"""SQLAlchemy database models for the transaction ledger and expense receipts."""
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, Date, DateTime, Index, Numeric, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


def _new_id() -> str:
    return str(uuid.uuid4())


class TransactionRecord(Base):
    """
    Transactions table.

    One row per payment attempt. Rows are never deleted; a resubmission
    after a failure inserts a new row.
    """

    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    sender_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    recipient_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    counterparty_label: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ZAR")
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    processor_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed')",
            name="valid_status",
        ),
        CheckConstraint("kind IN ('p2p', 'merchant')", name="valid_kind"),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_transactions_sender_created", "sender_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<TransactionRecord(id={self.id}, sender_id={self.sender_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class Profile(Base):
    """
    User profiles table.

    Read by the recipient directory to match a transfer's recipient label
    to a known user.
    """

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)

    def __repr__(self) -> str:
        return f"<Profile(id={self.id}, email={self.email})>"


class ReceiptRecord(Base):
    """
    Receipts and invoices table.

    Expense documents kept by their owner, entered by hand or pre-filled from
    a scan. Unlike transactions, rows may be deleted by the owner.
    """

    __tablename__ = "receipts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    document_type: Mapped[str] = mapped_column(String(10), nullable=False, default="receipt")
    merchant_name: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ZAR")
    issued_on: Mapped[date] = mapped_column(Date, nullable=False)
    category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    ocr_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="receipt_positive_amount"),
        CheckConstraint(
            "document_type IN ('receipt', 'invoice')",
            name="valid_document_type",
        ),
        CheckConstraint(
            "status IN ('completed', 'processed')",
            name="valid_receipt_status",
        ),
        CheckConstraint("length(currency) = 3", name="receipt_valid_currency"),
        Index("idx_receipts_user_issued", "user_id", "issued_on"),
    )

    def __repr__(self) -> str:
        return (
            f"<ReceiptRecord(id={self.id}, user_id={self.user_id}, "
            f"merchant_name={self.merchant_name}, amount={self.amount})>"
        )
