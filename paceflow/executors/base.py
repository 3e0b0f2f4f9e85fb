"""Executor interface shared by every step kind."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, List

from ..contracts import RuntimeContext, Step, StepKind, StepResult, ValidationReport

if TYPE_CHECKING:  # pragma: no cover
    from ..persistence import WorkflowExecution


class StepExecutor(ABC):
    """Runs one kind of step.

    Executors report outcomes through :class:`StepResult`; the engine turns
    anything they raise into a step failure.
    """

    kind: StepKind

    @abstractmethod
    async def execute(
        self, step: Step, context: RuntimeContext, execution: "WorkflowExecution"
    ) -> StepResult:
        """Run ``step`` and describe what the engine should do next."""

    def validate(self, step: Step) -> ValidationReport:
        if step.kind is not self.kind:
            return ValidationReport.from_messages(
                [f"payload.kind: expected '{self.kind.value}', got '{step.kind.value}'"]
            )
        errors: List[str] = []
        warnings: List[str] = []
        self.check(step.payload, errors, warnings)
        return ValidationReport.from_messages(errors, warnings)

    def check(self, payload: Any, errors: List[str], warnings: List[str]) -> None:
        """Append field-level problems with ``payload``."""
