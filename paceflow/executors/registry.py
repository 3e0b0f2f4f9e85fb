"""Step executor registry keyed by step kind."""

from __future__ import annotations

import random
from typing import Dict, List, Optional

from ..contracts import Plan, Step, StepKind, ValidationReport
from ..flows import SharedFlowRegistry
from ..senders import ActionDispatcher, default_dispatcher
from .action import ActionExecutor
from .base import StepExecutor
from .condition import ConditionExecutor
from .delay import DelayExecutor
from .end import EndExecutor
from .shared_flow import SharedFlowExecutor


class ExecutorRegistry:
    def __init__(self) -> None:
        self._executors: Dict[StepKind, StepExecutor] = {}

    def register(self, kind: StepKind | str, executor: StepExecutor) -> None:
        self._executors[StepKind(kind)] = executor

    def get(self, kind: StepKind | str) -> StepExecutor:
        try:
            return self._executors[StepKind(kind)]
        except (KeyError, ValueError):
            raise KeyError(f"no executor registered for step kind {kind!r}") from None

    def kinds(self) -> List[StepKind]:
        return list(self._executors)

    def validate_step(self, step: Step) -> ValidationReport:
        if step.kind not in self._executors:
            return ValidationReport.from_messages(
                [f"{step.id}.kind: no executor for '{step.kind.value}'"]
            )
        return self._executors[step.kind].validate(step)

    def validate_plan(self, plan: Plan) -> ValidationReport:
        """Validate every step, including steps nested in runtime branches."""
        errors: List[str] = []
        warnings: List[str] = []
        for step in _walk(plan.steps):
            report = self.validate_step(step)
            errors.extend(
                e if e.startswith(f"{step.id}.") else f"{step.id}.{e}" for e in report.errors
            )
            warnings.extend(f"{step.id}.{w}" for w in report.warnings)
        return ValidationReport.from_messages(errors, warnings)


def _walk(steps: List[Step]):
    for step in steps:
        yield step
        if step.kind is StepKind.CONDITION:
            for branch in step.payload.branches:
                yield from _walk(branch.steps)


def default_registry(
    dispatcher: Optional[ActionDispatcher] = None,
    flows: Optional[SharedFlowRegistry] = None,
    rng: Optional[random.Random] = None,
) -> ExecutorRegistry:
    """Registry with the five builtin executors."""
    dispatcher = dispatcher or default_dispatcher()
    flows = flows or SharedFlowRegistry()
    registry = ExecutorRegistry()
    registry.register(StepKind.ACTION, ActionExecutor(dispatcher))
    registry.register(StepKind.DELAY, DelayExecutor(rng))
    registry.register(StepKind.CONDITION, ConditionExecutor())
    registry.register(StepKind.END, EndExecutor())
    registry.register(StepKind.SHARED_FLOW, SharedFlowExecutor(flows, dispatcher))
    return registry
