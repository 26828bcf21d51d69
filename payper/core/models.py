"""
Transaction domain models.

A Transaction is the ledger record of one payment attempt. Snapshots are
immutable; the ledger hands out a new snapshot after every write.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

MINOR_UNIT = Decimal("0.01")


class TransactionKind(str, Enum):
    """Who is on the other side of the payment."""

    PEER_TO_PEER = "p2p"
    MERCHANT = "merchant"


class TransactionStatus(str, Enum):
    """Ledger status. Moves pending -> completed or pending -> failed only."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


class TransactionDraft(BaseModel):
    """A payment as submitted by the user, before it has an id."""

    sender_id: str
    counterparty_label: str
    amount: Decimal
    currency: str = "ZAR"
    kind: TransactionKind
    recipient_id: Optional[str] = None
    note: Optional[str] = None


class TransactionPatch(BaseModel):
    """The only fields the ledger allows to change after creation."""

    model_config = ConfigDict(extra="forbid")

    status: Optional[TransactionStatus] = None
    processor_reference: Optional[str] = None
    updated_at: Optional[datetime] = None


class Transaction(BaseModel):
    """Immutable snapshot of a ledger record."""

    model_config = ConfigDict(frozen=True)

    id: str
    sender_id: str
    recipient_id: Optional[str] = None
    counterparty_label: str
    amount: Decimal
    currency: str
    note: Optional[str] = None
    kind: TransactionKind
    status: TransactionStatus
    processor_reference: Optional[str] = None
    created_at: datetime
    updated_at: datetime


def quantize_amount(amount: Decimal | str | int | float) -> Decimal:
    """
    Round an amount to minor-unit precision.

    Raises:
        InvalidOperation: If the value is not a finite number
    """
    value = Decimal(str(amount))
    if not value.is_finite():
        raise InvalidOperation(f"Amount is not a finite number: {amount}")
    return value.quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """Convert a decimal amount to integer minor units (e.g. 50.00 -> 5000)."""
    return int(quantize_amount(amount) / MINOR_UNIT)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConfirmationOutcome(str, Enum):
    """Definitive result of presenting a card to the processor."""

    SUCCEEDED = "succeeded"
    REQUIRES_ACTION = "requires_action"
    DECLINED = "declined"


class Confirmation(BaseModel):
    """Card confirmation result with the processor's intent id."""

    model_config = ConfigDict(frozen=True)

    outcome: ConfirmationOutcome
    processor_reference: Optional[str] = None
    decline_reason: Optional[str] = None
