"""Portability request state machine.

Pure transition function with no I/O. The lifecycle service persists the
state it returns and runs side effects once the change is committed.

    waiting_for_approval --approve--> pending --run--> running --complete--> done
            |
            +--cancel--> canceled
            +--deny----> denied

done, denied and canceled are terminal.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from portability.db.models.base import ACTIVE_STATES, TERMINAL_STATES, RequestState

if TYPE_CHECKING:
    from uuid import UUID


class RequestEvent(str, Enum):
    """Events that drive a portability request through its lifecycle."""

    APPROVE = "approve"
    CANCEL = "cancel"
    DENY = "deny"
    RUN = "run"
    COMPLETE = "complete"


# event -> (required from-state, resulting state)
TRANSITIONS: dict[RequestEvent, tuple[RequestState, RequestState]] = {
    RequestEvent.APPROVE: (RequestState.WAITING_FOR_APPROVAL, RequestState.PENDING),
    RequestEvent.CANCEL: (RequestState.WAITING_FOR_APPROVAL, RequestState.CANCELED),
    RequestEvent.DENY: (RequestState.WAITING_FOR_APPROVAL, RequestState.DENIED),
    RequestEvent.RUN: (RequestState.PENDING, RequestState.RUNNING),
    RequestEvent.COMPLETE: (RequestState.RUNNING, RequestState.DONE),
}


class InvalidTransitionError(Exception):
    """Raised when an event does not apply to the request's current state."""

    def __init__(
        self,
        from_state: RequestState,
        event: RequestEvent,
        request_id: UUID | None = None,
    ) -> None:
        self.from_state = from_state
        self.event = event
        self.request_id = request_id
        required = TRANSITIONS[event][0]
        message = (
            f"Cannot {event.value} a request in state {from_state.value} "
            f"(requires {required.value})"
        )
        if request_id is not None:
            message = f"{message}: {request_id}"
        super().__init__(message)


def next_state(
    current: RequestState,
    event: RequestEvent,
    request_id: UUID | None = None,
) -> RequestState:
    """Compute the state reached by applying an event.

    Args:
        current: State the request is in.
        event: Event to apply.
        request_id: Included in the error for context.

    Returns:
        The resulting state.

    Raises:
        InvalidTransitionError: If current is not the event's from-state.
    """
    required, target = TRANSITIONS[event]
    if current != required:
        raise InvalidTransitionError(current, event, request_id)
    return target


def allowed_events(state: RequestState) -> list[RequestEvent]:
    """Events that can be applied from a state, in declaration order."""
    return [event for event, (required, _) in TRANSITIONS.items() if required == state]


def is_terminal(state: RequestState) -> bool:
    return state in TERMINAL_STATES


def is_active(state: RequestState) -> bool:
    """Whether a request in this state blocks a new one for the same owner."""
    return state in ACTIVE_STATES
