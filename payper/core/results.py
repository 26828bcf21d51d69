"""
Tagged step results.

Each orchestration step reports ``Ok(value)`` or ``Err(kind, message)`` so the
controller can branch on the outcome kind. Declines and step-up
authentication are ordinary outcomes here, not exceptions.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Generic, Optional, TypeVar, Union

from payper.core.exceptions import (
    ClientFault,
    GatewayError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    RetryLimitExceeded,
    SubmissionInProgressError,
    ValidationError,
)

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Classification of a failed step."""

    VALIDATION = "validation"
    GATEWAY = "gateway"
    DECLINED = "declined"
    REQUIRES_ACTION = "requires_action"
    CLIENT_FAULT = "client_fault"
    PERSISTENCE = "persistence"
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    RETRY_LIMIT = "retry_limit"
    IN_PROGRESS = "in_progress"

    @property
    def retryable(self) -> bool:
        """Whether the user may resubmit after this kind of failure."""
        return self in (
            ErrorKind.GATEWAY,
            ErrorKind.DECLINED,
            ErrorKind.CLIENT_FAULT,
            ErrorKind.PERSISTENCE,
        )


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]

# Order matters: first match wins.
_EXCEPTION_KINDS = (
    (ValidationError, ErrorKind.VALIDATION),
    (NotFoundError, ErrorKind.NOT_FOUND),
    (InvalidTransitionError, ErrorKind.INVALID_TRANSITION),
    (PersistenceError, ErrorKind.PERSISTENCE),
    (GatewayError, ErrorKind.GATEWAY),
    (ClientFault, ErrorKind.CLIENT_FAULT),
    (RetryLimitExceeded, ErrorKind.RETRY_LIMIT),
    (SubmissionInProgressError, ErrorKind.IN_PROGRESS),
)


def classify(error: Exception, default: ErrorKind) -> ErrorKind:
    """Map an exception to its ErrorKind, falling back to ``default``."""
    for exc_type, kind in _EXCEPTION_KINDS:
        if isinstance(error, exc_type):
            return kind
    return default


async def capture(awaitable: Awaitable[Any], default: ErrorKind) -> "Result[Any]":
    """
    Await a step and wrap its outcome.

    Known errors keep their own kind; anything else (raw transport errors,
    driver exceptions) is reported as ``default`` so it never escapes the
    controller.
    """
    try:
        return Ok(await awaitable)
    except Exception as e:  # noqa: BLE001
        return Err(kind=classify(e, default), message=str(e) or type(e).__name__, error=e)
