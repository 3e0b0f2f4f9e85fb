from __future__ import annotations

from typing import Any, Dict, List

from ..contracts import RuntimeContext, SharedFlowPayload, Step, StepKind, StepResult
from ..flows import SharedFlowRegistry
from ..senders import ActionDispatcher
from .base import StepExecutor


class SharedFlowExecutor(StepExecutor):
    """Run the actions of a named shared flow in order."""

    kind = StepKind.SHARED_FLOW

    def __init__(self, flows: SharedFlowRegistry, dispatcher: ActionDispatcher) -> None:
        self.flows = flows
        self.dispatcher = dispatcher

    async def execute(self, step: Step, context: RuntimeContext, execution) -> StepResult:
        payload: SharedFlowPayload = step.payload
        flow = self.flows.get(payload.flow)
        if flow is None:
            return StepResult.failed(f"unknown shared flow '{payload.flow}'")

        audits: List[Dict[str, Any]] = []
        for action in flow.actions:
            outcome = await self.dispatcher.dispatch(action.action, action.params, context)
            audits.append({"action": action.action, "audit": outcome.audit})
            if not outcome.success:
                return StepResult.failed(
                    f"shared flow '{flow.name}' action {action.action}: {outcome.error}",
                    result={"flow": flow.name, "actions": audits},
                )
        return StepResult.ok({"flow": flow.name, "actions": audits})

    def check(self, payload: Any, errors: List[str], warnings: List[str]) -> None:
        if not payload.flow:
            errors.append("payload.flow: required")
            return
        flow = self.flows.get(payload.flow)
        if flow is None:
            warnings.append(f"payload.flow: unknown shared flow '{payload.flow}'")
            return
        for action in flow.actions:
            errors.extend(self.dispatcher.check(action.action, action.params))
