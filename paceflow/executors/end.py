from __future__ import annotations

from typing import Any, List

from ..constants import END_REASONS
from ..contracts import EndPayload, RuntimeContext, Step, StepKind, StepResult
from .base import StepExecutor


class EndExecutor(StepExecutor):
    kind = StepKind.END

    async def execute(self, step: Step, context: RuntimeContext, execution) -> StepResult:
        payload: EndPayload = step.payload
        result = {"end_reason": payload.reason, "completed_at": context.now.isoformat()}
        if payload.message:
            result["message"] = payload.message
        return StepResult.ok(
            result, terminal=True, context_updates={"end_reason": payload.reason}
        )

    def check(self, payload: Any, errors: List[str], warnings: List[str]) -> None:
        if payload.reason not in END_REASONS:
            errors.append(
                f"payload.reason: unknown end reason '{payload.reason}'; "
                f"expected one of {', '.join(END_REASONS)}"
            )
