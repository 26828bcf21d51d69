"""Exceptions raised by the ledger, the processor adapters and the recovery policy."""
from typing import Optional


class PayperError(Exception):
    """Base exception for payment orchestration errors."""

    pass


class ValidationError(PayperError):
    """Raised when a submission is malformed. Nothing is written."""

    pass


class NotFoundError(PayperError):
    """Raised when a transaction or receipt id is unknown."""

    pass


class InvalidTransitionError(PayperError):
    """Raised when a status change would break the monotonic lifecycle."""

    pass


class PersistenceError(PayperError):
    """Raised when the ledger storage fails to read or write."""

    pass


class GatewayError(PayperError):
    """Raised when a payment intent cannot be created."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ClientFault(PayperError):
    """Raised on transport-level failures during card confirmation."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error


class RetryLimitExceeded(PayperError):
    """Raised when a user action has used all of its submission attempts."""

    pass


class SubmissionInProgressError(PayperError):
    """Raised when a submission already has an active orchestration."""

    pass


class OcrError(PayperError):
    """Raised when a receipt image cannot be scanned."""

    pass
