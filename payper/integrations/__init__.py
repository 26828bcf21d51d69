"""External integrations: payment intents, Stripe confirmation, receipt OCR."""
from .ocr import OcrClient, ReceiptScan
from .payment_intents import PaymentIntentGateway
from .stripe_client import CircuitBreaker, StripeConfirmationClient

__all__ = [
    "CircuitBreaker",
    "OcrClient",
    "PaymentIntentGateway",
    "ReceiptScan",
    "StripeConfirmationClient",
]
