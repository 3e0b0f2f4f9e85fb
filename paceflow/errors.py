"""Error taxonomy for the paceflow engine."""

from __future__ import annotations

from typing import Iterable, Optional


class PaceflowError(Exception):
    """Base class for all paceflow errors."""


class CompileError(PaceflowError):
    """Raised when a rule tree cannot be compiled into a plan."""

    def __init__(self, message: str, path: str = "$") -> None:
        super().__init__(f"{path}: {message}")
        self.path = path
        self.reason = message


class ValidationError(PaceflowError):
    """Raised when step payloads or trigger data fail validation."""

    def __init__(self, errors: Iterable[str], message: Optional[str] = None) -> None:
        self.errors = list(errors)
        super().__init__(message or "; ".join(self.errors) or "validation failed")


class StepExecutionError(PaceflowError):
    """An executor reported failure or raised while running a step."""

    def __init__(self, step_id: str, message: str) -> None:
        super().__init__(f"step {step_id} failed: {message}")
        self.step_id = step_id


class SuspensionInconsistencyError(PaceflowError):
    """A resume found no matching delay or an execution in the wrong state."""


class DuplicateAdmissionError(PaceflowError):
    """An active execution already exists for the same trigger 4-tuple."""


class DuplicateDelayError(PaceflowError):
    """A delay is already scheduled for this (execution, step) pair."""


class IllegalTransitionError(PaceflowError, ValueError):
    """The requested status change is not allowed."""


class ExecutionNotFoundError(PaceflowError, LookupError):
    """No execution exists with the given id."""
