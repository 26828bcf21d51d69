"""
Orchestration state machine.

One enumerated state per submission and a pure transition function:

    draft --ledger_created--> reserving --intent_created--> confirming
    confirming --confirmed--> completed
    confirming --action_required--> confirming
    reserving --intent_failed--> failed
    confirming --declined | confirmation_fault--> failed
    confirming --action_abandoned--> failed

Peer-to-peer transfers take ``draft --transfer_recorded--> completed``.
A rejected draft (``validation_failed``) stays in ``draft``.
"""
from enum import Enum

from payper.core.exceptions import InvalidTransitionError


class OrchestrationState(str, Enum):
    DRAFT = "draft"
    RESERVING = "reserving"
    CONFIRMING = "confirming"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (OrchestrationState.COMPLETED, OrchestrationState.FAILED)


class OrchestrationEvent(str, Enum):
    VALIDATION_FAILED = "validation_failed"
    LEDGER_CREATED = "ledger_created"
    TRANSFER_RECORDED = "transfer_recorded"
    INTENT_CREATED = "intent_created"
    INTENT_FAILED = "intent_failed"
    CONFIRMED = "confirmed"
    ACTION_REQUIRED = "action_required"
    DECLINED = "declined"
    CONFIRMATION_FAULT = "confirmation_fault"
    ACTION_ABANDONED = "action_abandoned"


S = OrchestrationState
E = OrchestrationEvent

TRANSITIONS: dict[tuple[OrchestrationState, OrchestrationEvent], OrchestrationState] = {
    (S.DRAFT, E.VALIDATION_FAILED): S.DRAFT,
    (S.DRAFT, E.LEDGER_CREATED): S.RESERVING,
    (S.DRAFT, E.TRANSFER_RECORDED): S.COMPLETED,
    (S.RESERVING, E.INTENT_CREATED): S.CONFIRMING,
    (S.RESERVING, E.INTENT_FAILED): S.FAILED,
    (S.CONFIRMING, E.CONFIRMED): S.COMPLETED,
    (S.CONFIRMING, E.ACTION_REQUIRED): S.CONFIRMING,
    (S.CONFIRMING, E.DECLINED): S.FAILED,
    (S.CONFIRMING, E.CONFIRMATION_FAULT): S.FAILED,
    (S.CONFIRMING, E.ACTION_ABANDONED): S.FAILED,
}


def transition(state: OrchestrationState, event: OrchestrationEvent) -> OrchestrationState:
    """
    Return the state that follows ``state`` on ``event``.

    Raises:
        InvalidTransitionError: If the event is not allowed in ``state``
    """
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransitionError(
            f"Event {event.value} is not allowed in state {state.value}"
        ) from None
