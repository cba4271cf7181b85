"""Tests for the portability request state machine.

Tests cover:
- Every valid transition
- Rejection of events from any other state
- Terminal and active state classification
"""

import uuid

import pytest

from portability.db.models.base import RequestState
from portability.services.state_machine import (
    TRANSITIONS,
    InvalidTransitionError,
    RequestEvent,
    allowed_events,
    is_active,
    is_terminal,
    next_state,
)


class TestValidTransitions:
    """Tests for the transitions allowed by the table."""

    @pytest.mark.parametrize(
        ("current", "event", "expected"),
        [
            (RequestState.WAITING_FOR_APPROVAL, RequestEvent.APPROVE, RequestState.PENDING),
            (RequestState.WAITING_FOR_APPROVAL, RequestEvent.CANCEL, RequestState.CANCELED),
            (RequestState.WAITING_FOR_APPROVAL, RequestEvent.DENY, RequestState.DENIED),
            (RequestState.PENDING, RequestEvent.RUN, RequestState.RUNNING),
            (RequestState.RUNNING, RequestEvent.COMPLETE, RequestState.DONE),
        ],
    )
    def test_transition(self, current, event, expected):
        """Test each event moves its from-state to the expected state."""
        assert next_state(current, event) == expected

    def test_full_happy_path(self):
        """Test a request reaches done through approve, run and complete."""
        state = RequestState.WAITING_FOR_APPROVAL
        for event in (RequestEvent.APPROVE, RequestEvent.RUN, RequestEvent.COMPLETE):
            state = next_state(state, event)
        assert state == RequestState.DONE


class TestInvalidTransitions:
    """Tests for events applied from the wrong state."""

    @pytest.mark.parametrize("event", list(RequestEvent))
    @pytest.mark.parametrize("current", list(RequestState))
    def test_only_from_state_is_accepted(self, current, event):
        """Test every (state, event) pair outside the table is rejected."""
        required, target = TRANSITIONS[event]
        if current == required:
            assert next_state(current, event) == target
        else:
            with pytest.raises(InvalidTransitionError):
                next_state(current, event)

    def test_approve_running_request(self):
        """Test approving a running request names both states in the error."""
        request_id = uuid.uuid4()
        with pytest.raises(InvalidTransitionError) as exc_info:
            next_state(RequestState.RUNNING, RequestEvent.APPROVE, request_id)

        error = exc_info.value
        assert error.from_state == RequestState.RUNNING
        assert error.event == RequestEvent.APPROVE
        assert error.request_id == request_id
        assert "running" in str(error)
        assert "waiting_for_approval" in str(error)
        assert str(request_id) in str(error)

    @pytest.mark.parametrize(
        "terminal", [RequestState.DONE, RequestState.DENIED, RequestState.CANCELED]
    )
    def test_terminal_states_accept_no_event(self, terminal):
        """Test no event applies to a terminal state."""
        assert allowed_events(terminal) == []


class TestStateClassification:
    """Tests for terminal/active helpers."""

    def test_allowed_events_from_waiting(self):
        """Test a waiting request can be approved, canceled or denied."""
        assert allowed_events(RequestState.WAITING_FOR_APPROVAL) == [
            RequestEvent.APPROVE,
            RequestEvent.CANCEL,
            RequestEvent.DENY,
        ]

    def test_allowed_events_from_pending(self):
        assert allowed_events(RequestState.PENDING) == [RequestEvent.RUN]

    @pytest.mark.parametrize(
        ("state", "active", "terminal"),
        [
            (RequestState.WAITING_FOR_APPROVAL, True, False),
            (RequestState.PENDING, True, False),
            (RequestState.RUNNING, True, False),
            (RequestState.DONE, False, True),
            (RequestState.DENIED, False, True),
            (RequestState.CANCELED, False, True),
        ],
    )
    def test_classification(self, state, active, terminal):
        """Test active and terminal states partition the state set."""
        assert is_active(state) is active
        assert is_terminal(state) is terminal
