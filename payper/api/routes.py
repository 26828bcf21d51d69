"""
API routes for payments, transfers, history and receipts.
"""
from functools import lru_cache
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, File, HTTPException, Query, Response, UploadFile, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from payper.config import get_settings
from payper.core.exceptions import NotFoundError, OcrError, PersistenceError, ValidationError
from payper.core.ledger import SqlTransactionLedger, TransactionLedger
from payper.core.models import TransactionDraft, TransactionKind, TransactionStatus
from payper.core.orchestrator import PaymentOrchestrator, PaymentResult
from payper.core.receipts import DocumentType, ReceiptDraft, SqlReceiptStore
from payper.core.recipients import RecipientDirectory
from payper.core.recovery import RecoveryPolicy, RedisSubmissionStore
from payper.core.results import ErrorKind
from payper.database.connection import get_session_factory
from payper.integrations.ocr import OcrClient
from payper.integrations.payment_intents import PaymentIntentGateway
from payper.integrations.stripe_client import StripeConfirmationClient
from payper.monitoring.health import HealthCheck
from payper.workers.reconciliation_worker import run_reconciliation_pass

from .schemas import (
    ConfirmPaymentRequest,
    HealthCheckResponse,
    LineItemResponse,
    MerchantPaymentRequest,
    PaymentResultResponse,
    ReceiptListResponse,
    ReceiptRequest,
    ReceiptResponse,
    ReceiptScanResponse,
    ReconciliationResponse,
    TransactionListResponse,
    TransactionResponse,
    TransferRequest,
)

logger = structlog.get_logger(__name__)

payment_router = APIRouter(prefix="/payments", tags=["payments"])
transfer_router = APIRouter(prefix="/transfers", tags=["transfers"])
transaction_router = APIRouter(prefix="/transactions", tags=["transactions"])
receipt_router = APIRouter(prefix="/receipts", tags=["receipts"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])

ERROR_STATUS = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.DECLINED: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.IN_PROGRESS: status.HTTP_409_CONFLICT,
    ErrorKind.INVALID_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorKind.RETRY_LIMIT: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorKind.GATEWAY: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.CLIENT_FAULT: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.PERSISTENCE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@lru_cache()
def get_ledger() -> TransactionLedger:
    return SqlTransactionLedger(get_session_factory())


@lru_cache()
def get_orchestrator() -> PaymentOrchestrator:
    """Build the orchestration controller with production adapters."""
    session_factory = get_session_factory()
    return PaymentOrchestrator(
        ledger=get_ledger(),
        gateway=PaymentIntentGateway(),
        confirmer=StripeConfirmationClient(),
        recovery=RecoveryPolicy(store=RedisSubmissionStore()),
        recipients=RecipientDirectory(session_factory),
    )


@lru_cache()
def get_ocr_client() -> OcrClient:
    return OcrClient()


@lru_cache()
def get_receipt_store() -> SqlReceiptStore:
    return SqlReceiptStore(get_session_factory())


def _respond(result: PaymentResult, response: Response) -> PaymentResultResponse:
    if result.error is not None:
        response.status_code = ERROR_STATUS.get(
            result.error.kind, status.HTTP_500_INTERNAL_SERVER_ERROR
        )
    elif result.requires_action:
        response.status_code = status.HTTP_202_ACCEPTED
    else:
        response.status_code = status.HTTP_201_CREATED
    return PaymentResultResponse.from_result(result)


@payment_router.post(
    "/merchant",
    response_model=PaymentResultResponse,
    summary="Pay a merchant",
    description="Create the ledger record, reserve the charge and confirm the card",
)
async def pay_merchant(
    request: MerchantPaymentRequest,
    response: Response,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> PaymentResultResponse:
    """
    Pay a merchant by card.

    The orchestration keeps running if the client disconnects, so the
    ledger record always reaches a terminal state.
    """
    logger.info(
        "api_merchant_payment_request",
        submission_id=request.submission_id,
        merchant_id=request.merchant_id,
    )
    draft = TransactionDraft(
        sender_id=request.user_id,
        counterparty_label=request.merchant_name,
        amount=request.amount,
        currency=request.currency or get_settings().default_currency,
        kind=TransactionKind.MERCHANT,
        note=request.note or f"Payment to {request.merchant_name}",
    )
    result = await orchestrator.pay_merchant_shielded(
        request.submission_id,
        draft,
        merchant_id=request.merchant_id,
        payment_method=request.payment_method,
    )
    return _respond(result, response)


@payment_router.post(
    "/merchant/{submission_id}/confirm",
    response_model=PaymentResultResponse,
    summary="Resume a merchant payment",
    description="Continue after the card's step-up authentication",
)
async def confirm_merchant_payment(
    submission_id: str,
    request: ConfirmPaymentRequest,
    response: Response,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> PaymentResultResponse:
    result = await orchestrator.resume_confirmation(submission_id, request.payment_method)
    return _respond(result, response)


@transfer_router.post(
    "",
    response_model=PaymentResultResponse,
    summary="Send money",
    description="Record a peer-to-peer transfer",
)
async def send_money(
    request: TransferRequest,
    response: Response,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> PaymentResultResponse:
    logger.info("api_transfer_request", submission_id=request.submission_id)
    draft = TransactionDraft(
        sender_id=request.user_id,
        counterparty_label=request.recipient,
        amount=request.amount,
        currency=request.currency or get_settings().default_currency,
        kind=TransactionKind.PEER_TO_PEER,
        note=request.note,
    )
    result = await orchestrator.send_money(request.submission_id, draft)
    return _respond(result, response)


@transaction_router.get(
    "",
    response_model=TransactionListResponse,
    summary="Transaction history",
    description="Transactions the user sent or received, newest first",
)
async def list_transactions(
    user_id: str,
    kind: Optional[TransactionKind] = None,
    status_filter: Optional[TransactionStatus] = Query(default=None, alias="status"),
    search: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    ledger: TransactionLedger = Depends(get_ledger),
) -> Dict[str, Any]:
    try:
        transactions = await ledger.list_for_user(
            user_id, kind=kind, status=status_filter, search=search, limit=limit
        )
    except PersistenceError as e:
        logger.error("api_list_transactions_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to load transactions",
        )

    return {
        "transactions": [TransactionResponse.from_transaction(t) for t in transactions],
        "count": len(transactions),
    }


@transaction_router.get(
    "/{transaction_id}",
    response_model=TransactionResponse,
    summary="Get a transaction",
)
async def get_transaction(
    transaction_id: str,
    ledger: TransactionLedger = Depends(get_ledger),
) -> TransactionResponse:
    try:
        transaction = await ledger.get(transaction_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found")
    except PersistenceError as e:
        logger.error("api_get_transaction_error", transaction_id=transaction_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to load transaction",
        )
    return TransactionResponse.from_transaction(transaction)


@receipt_router.post(
    "/scan",
    response_model=ReceiptScanResponse,
    summary="Scan a receipt",
    description="Recognise a receipt image to pre-fill the receipt form",
)
async def scan_receipt(
    file: UploadFile = File(...),
    ocr_client: OcrClient = Depends(get_ocr_client),
) -> ReceiptScanResponse:
    image = await file.read()
    try:
        scan = await ocr_client.scan(
            image,
            filename=file.filename or "receipt.jpg",
            content_type=file.content_type or "image/jpeg",
        )
    except OcrError as e:
        logger.warning("api_receipt_scan_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    return ReceiptScanResponse(
        merchant_name=scan.merchant_name,
        amount=f"{scan.amount:.2f}" if scan.amount is not None else None,
        date=scan.date,
        line_items=[
            LineItemResponse(description=item.description, amount=f"{item.amount:.2f}")
            for item in scan.line_items
        ],
        raw_text=scan.raw_text,
    )


@receipt_router.post(
    "",
    response_model=ReceiptResponse,
    status_code=status.HTTP_201_CREATED,
    summary="File a receipt",
    description="Store a receipt or invoice, typed in or pre-filled from a scan",
)
async def create_receipt(
    request: ReceiptRequest,
    store: SqlReceiptStore = Depends(get_receipt_store),
) -> ReceiptResponse:
    draft = ReceiptDraft(
        user_id=request.user_id,
        merchant_name=request.merchant_name,
        amount=request.amount,
        currency=request.currency or get_settings().default_currency,
        issued_on=request.issued_on,
        category=request.category,
        document_type=request.document_type,
        image_url=request.image_url,
        ocr_text=request.ocr_text,
    )
    try:
        receipt = await store.create(draft)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except PersistenceError as e:
        logger.error("api_create_receipt_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to save receipt",
        )
    return ReceiptResponse.from_receipt(receipt)


@receipt_router.get(
    "",
    response_model=ReceiptListResponse,
    summary="List receipts",
    description="The user's receipts and invoices, most recent first",
)
async def list_receipts(
    user_id: str,
    document_type: Optional[DocumentType] = None,
    limit: int = Query(default=100, ge=1, le=500),
    store: SqlReceiptStore = Depends(get_receipt_store),
) -> Dict[str, Any]:
    try:
        receipts = await store.list_for_user(user_id, document_type=document_type, limit=limit)
    except PersistenceError as e:
        logger.error("api_list_receipts_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to load receipts",
        )

    return {
        "receipts": [ReceiptResponse.from_receipt(r) for r in receipts],
        "count": len(receipts),
    }


@receipt_router.delete(
    "/{receipt_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a receipt",
)
async def delete_receipt(
    receipt_id: str,
    user_id: str,
    store: SqlReceiptStore = Depends(get_receipt_store),
) -> Response:
    try:
        await store.delete(receipt_id, user_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Receipt not found")
    except PersistenceError as e:
        logger.error("api_delete_receipt_error", receipt_id=receipt_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to delete receipt",
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@admin_router.post(
    "/reconcile",
    response_model=ReconciliationResponse,
    summary="Run a reconciliation pass",
    description=(
        "Settle abandoned step-up authentications and retry the ledger write "
        "for payments the processor confirmed"
    ),
)
async def run_reconciliation(
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, int]:
    result = await run_reconciliation_pass(orchestrator)
    logger.info("api_reconciliation_completed", **result)
    return result


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
)
async def health(
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Readiness of the ledger, the attempt store and the payment queues."""
    return await HealthCheck(orchestrator).check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness check",
)
async def liveness() -> Dict[str, Any]:
    return await HealthCheck().liveness()


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
