from __future__ import annotations

from typing import Any, List

from ..contracts import ActionPayload, RuntimeContext, Step, StepKind, StepResult
from ..senders import ActionDispatcher
from .base import StepExecutor


class ActionExecutor(StepExecutor):
    """Dispatch an action to its sender; never suspends."""

    kind = StepKind.ACTION

    def __init__(self, dispatcher: ActionDispatcher) -> None:
        self.dispatcher = dispatcher

    async def execute(self, step: Step, context: RuntimeContext, execution) -> StepResult:
        payload: ActionPayload = step.payload
        outcome = await self.dispatcher.dispatch(payload.action, payload.params, context)
        result = {"action": payload.action, "audit": outcome.audit}
        if not outcome.success:
            return StepResult.failed(outcome.error or "action failed", result=result)
        return StepResult.ok(result)

    def check(self, payload: Any, errors: List[str], warnings: List[str]) -> None:
        if not payload.action:
            errors.append("payload.action: required")
            return
        errors.extend(self.dispatcher.check(payload.action, payload.params))
