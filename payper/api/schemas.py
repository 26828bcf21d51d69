"""
Pydantic schemas for API request/response models.
"""
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from payper.core.models import Transaction
from payper.core.orchestrator import PaymentResult
from payper.core.receipts import DocumentType, Receipt


class MerchantPaymentRequest(BaseModel):
    """Request schema for paying a merchant by card."""

    submission_id: str = Field(..., min_length=1, description="Form session id of the user action")
    user_id: str = Field(..., description="Paying user")
    merchant_id: str = Field(..., description="Merchant identifier")
    merchant_name: str = Field(..., description="Merchant display name")
    amount: Decimal = Field(..., description="Amount in major units (e.g. 50.00)")
    currency: Optional[str] = Field(default=None, description="Currency code (default ZAR)")
    note: Optional[str] = Field(default=None, description="Optional note")
    payment_method: str = Field(..., description="Stripe payment method id (pm_...)")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "submission_id": "form_7f3a",
                    "user_id": "user_123",
                    "merchant_id": "merchant_2",
                    "merchant_name": "Takealot",
                    "amount": "50.00",
                    "currency": "ZAR",
                    "payment_method": "pm_card_visa",
                }
            ]
        }
    }


class ConfirmPaymentRequest(BaseModel):
    """Request schema for resuming a payment after step-up authentication."""

    payment_method: Optional[str] = Field(
        default=None, description="Payment method, or empty to re-check the intent"
    )


class TransferRequest(BaseModel):
    """Request schema for a peer-to-peer transfer."""

    submission_id: str = Field(..., min_length=1, description="Form session id of the user action")
    user_id: str = Field(..., description="Sending user")
    recipient: str = Field(..., description="Recipient email or phone")
    amount: Decimal = Field(..., description="Amount in major units")
    currency: Optional[str] = Field(default=None, description="Currency code (default ZAR)")
    note: Optional[str] = Field(default=None, description="Optional note")

    @field_validator("recipient")
    @classmethod
    def strip_recipient(cls, v: str) -> str:
        return v.strip()


class TransactionResponse(BaseModel):
    """Response schema for a ledger record."""

    id: str
    sender_id: str
    recipient_id: Optional[str] = None
    counterparty_label: str
    amount: str
    currency: str
    note: Optional[str] = None
    kind: str
    status: str
    processor_reference: Optional[str] = None
    created_at: str
    updated_at: str

    @classmethod
    def from_transaction(cls, transaction: Transaction) -> "TransactionResponse":
        return cls(
            id=transaction.id,
            sender_id=transaction.sender_id,
            recipient_id=transaction.recipient_id,
            counterparty_label=transaction.counterparty_label,
            amount=f"{transaction.amount:.2f}",
            currency=transaction.currency,
            note=transaction.note,
            kind=transaction.kind.value,
            status=transaction.status.value,
            processor_reference=transaction.processor_reference,
            created_at=transaction.created_at.isoformat(),
            updated_at=transaction.updated_at.isoformat(),
        )


class PaymentErrorResponse(BaseModel):
    kind: str
    message: str
    retryable: bool


class PaymentResultResponse(BaseModel):
    """Response schema for every payment and transfer call."""

    submission_id: str
    state: str
    transaction: Optional[TransactionResponse] = None
    error: Optional[PaymentErrorResponse] = None
    requires_action: bool = False
    client_secret: Optional[str] = Field(
        default=None, description="Present when the card needs step-up authentication"
    )
    reconciliation_pending: bool = False
    attempts_remaining: Optional[int] = None

    @classmethod
    def from_result(cls, result: PaymentResult) -> "PaymentResultResponse":
        return cls(
            submission_id=result.submission_id,
            state=result.state.value,
            transaction=(
                TransactionResponse.from_transaction(result.transaction)
                if result.transaction is not None
                else None
            ),
            error=(
                PaymentErrorResponse(
                    kind=result.error.kind.value,
                    message=result.error.message,
                    retryable=result.error.retryable,
                )
                if result.error is not None
                else None
            ),
            requires_action=result.requires_action,
            client_secret=result.client_secret,
            reconciliation_pending=result.reconciliation_pending,
            attempts_remaining=result.attempts_remaining,
        )


class TransactionListResponse(BaseModel):
    transactions: List[TransactionResponse]
    count: int


class LineItemResponse(BaseModel):
    description: str
    amount: str


class ReceiptScanResponse(BaseModel):
    """Response schema for a scanned receipt (form pre-fill only)."""

    merchant_name: Optional[str] = None
    amount: Optional[str] = None
    date: Optional[str] = None
    line_items: List[LineItemResponse] = Field(default_factory=list)
    raw_text: str = ""


class ReceiptRequest(BaseModel):
    """Request schema for filing a receipt or invoice."""

    user_id: str = Field(..., description="Owner of the receipt")
    merchant_name: str = Field(..., description="Merchant on the receipt")
    amount: Decimal = Field(..., description="Total in major units")
    currency: Optional[str] = Field(default=None, description="Currency code (default ZAR)")
    issued_on: date = Field(..., description="Date printed on the receipt")
    category: Optional[str] = Field(default=None, description="Expense category")
    document_type: DocumentType = Field(default=DocumentType.RECEIPT)
    image_url: Optional[str] = Field(default=None, description="Where the client stored the image")
    ocr_text: Optional[str] = Field(default=None, description="Raw text from a scan, if any")


class ReceiptResponse(BaseModel):
    """Response schema for a stored receipt."""

    id: str
    user_id: str
    merchant_name: str
    amount: str
    currency: str
    issued_on: str
    category: Optional[str] = None
    document_type: str
    image_url: Optional[str] = None
    status: str
    created_at: str

    @classmethod
    def from_receipt(cls, receipt: Receipt) -> "ReceiptResponse":
        return cls(
            id=receipt.id,
            user_id=receipt.user_id,
            merchant_name=receipt.merchant_name,
            amount=f"{receipt.amount:.2f}",
            currency=receipt.currency,
            issued_on=receipt.issued_on.isoformat(),
            category=receipt.category,
            document_type=receipt.document_type.value,
            image_url=receipt.image_url,
            status=receipt.status.value,
            created_at=receipt.created_at.isoformat(),
        )


class ReceiptListResponse(BaseModel):
    receipts: List[ReceiptResponse]
    count: int


class ReconciliationResponse(BaseModel):
    abandoned_completed: int = 0
    abandoned_failed: int = 0
    resolved: int
    failed: int
    pending: int


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
