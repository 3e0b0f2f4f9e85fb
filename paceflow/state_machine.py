"""Execution status transitions as an explicit table."""

from __future__ import annotations

from enum import Enum
from typing import Dict, Tuple

from .errors import IllegalTransitionError
from .persistence.models import ExecutionStatus


class ExecutionEvent(str, Enum):
    START = "start"
    SUSPEND = "suspend"
    WAKE = "wake"
    COMPLETE = "complete"
    FAIL = "fail"
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"


TRANSITIONS: Dict[Tuple[ExecutionStatus, ExecutionEvent], ExecutionStatus] = {
    (ExecutionStatus.PENDING, ExecutionEvent.START): ExecutionStatus.RUNNING,
    (ExecutionStatus.PENDING, ExecutionEvent.PAUSE): ExecutionStatus.PAUSED,
    (ExecutionStatus.PENDING, ExecutionEvent.CANCEL): ExecutionStatus.CANCELLED,
    (ExecutionStatus.RUNNING, ExecutionEvent.SUSPEND): ExecutionStatus.DELAYED,
    (ExecutionStatus.RUNNING, ExecutionEvent.COMPLETE): ExecutionStatus.COMPLETED,
    (ExecutionStatus.RUNNING, ExecutionEvent.FAIL): ExecutionStatus.FAILED,
    (ExecutionStatus.RUNNING, ExecutionEvent.PAUSE): ExecutionStatus.PAUSED,
    (ExecutionStatus.RUNNING, ExecutionEvent.CANCEL): ExecutionStatus.CANCELLED,
    (ExecutionStatus.DELAYED, ExecutionEvent.WAKE): ExecutionStatus.RUNNING,
    (ExecutionStatus.DELAYED, ExecutionEvent.PAUSE): ExecutionStatus.PAUSED,
    (ExecutionStatus.DELAYED, ExecutionEvent.CANCEL): ExecutionStatus.CANCELLED,
    (ExecutionStatus.PAUSED, ExecutionEvent.RESUME): ExecutionStatus.RUNNING,
    (ExecutionStatus.PAUSED, ExecutionEvent.SUSPEND): ExecutionStatus.DELAYED,
    (ExecutionStatus.PAUSED, ExecutionEvent.CANCEL): ExecutionStatus.CANCELLED,
}


def transition(status: ExecutionStatus | str, event: ExecutionEvent | str) -> ExecutionStatus:
    """Return the status reached from ``status`` on ``event``.

    Raises:
        IllegalTransitionError: if the table has no such edge.
    """
    current = ExecutionStatus(status)
    trigger = ExecutionEvent(event)
    try:
        return TRANSITIONS[(current, trigger)]
    except KeyError:
        raise IllegalTransitionError(
            f"cannot {trigger.value} an execution that is {current.value}"
        ) from None


def can_transition(status: ExecutionStatus | str, event: ExecutionEvent | str) -> bool:
    return (ExecutionStatus(status), ExecutionEvent(event)) in TRANSITIONS
