import pytest

from paceflow.errors import IllegalTransitionError
from paceflow.persistence import TERMINAL_STATUSES, ExecutionStatus
from paceflow.state_machine import TRANSITIONS, ExecutionEvent, can_transition, transition


def test_happy_path_transitions():
    status = transition(ExecutionStatus.PENDING, ExecutionEvent.START)
    assert status == ExecutionStatus.RUNNING
    status = transition(status, ExecutionEvent.SUSPEND)
    assert status == ExecutionStatus.DELAYED
    status = transition(status, ExecutionEvent.WAKE)
    assert status == ExecutionStatus.RUNNING
    assert transition(status, "complete") == ExecutionStatus.COMPLETED


def test_paused_resumes_or_waits():
    assert transition("paused", "resume") == ExecutionStatus.RUNNING
    assert transition("paused", "suspend") == ExecutionStatus.DELAYED


def test_terminal_statuses_have_no_exits():
    for status in TERMINAL_STATUSES:
        for event in ExecutionEvent:
            assert not can_transition(status, event)
            with pytest.raises(IllegalTransitionError):
                transition(status, event)


def test_illegal_transition_message():
    with pytest.raises(IllegalTransitionError, match="cannot wake an execution that is running"):
        transition(ExecutionStatus.RUNNING, ExecutionEvent.WAKE)


def test_every_non_terminal_status_can_be_cancelled():
    for status in ExecutionStatus:
        if status not in TERMINAL_STATUSES:
            assert TRANSITIONS[(status, ExecutionEvent.CANCEL)] == ExecutionStatus.CANCELLED
