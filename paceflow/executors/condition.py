from __future__ import annotations

import logging
from typing import Any, Dict, List

from ..contracts import ConditionPayload, RuntimeContext, Step, StepKind, StepResult
from ..predicates import check as check_predicate
from ..predicates import matches
from .base import StepExecutor

logger = logging.getLogger(__name__)


def evaluation_data(context: RuntimeContext) -> Dict[str, Any]:
    """Variables visible to branch predicates."""
    return {
        **context.metadata,
        **context.data,
        "user_id": context.user_id,
        "trigger_type": context.trigger_type,
    }


class ConditionExecutor(StepExecutor):
    """Pick the first matching branch in declaration order."""

    kind = StepKind.CONDITION

    async def execute(self, step: Step, context: RuntimeContext, execution) -> StepResult:
        payload: ConditionPayload = step.payload
        data = evaluation_data(context)
        for branch in payload.branches:
            try:
                hit = branch.is_default or matches(branch.predicate, data)
            except ValueError as exc:
                return StepResult.failed(f"branch {branch.label}: {exc}")
            if not hit:
                continue
            logger.info(
                f"Execution {context.execution_id} step {step.id} took branch {branch.label}"
            )
            result = {"branch": branch.label, "matched": True}
            if payload.runtime:
                return StepResult.ok(
                    result,
                    next_steps=[branch.steps[0].id],
                    extracted_steps=list(branch.steps),
                )
            return StepResult.ok(result, next_steps=[branch.target])
        return StepResult.ok({"matched": False}, no_match=True)

    def check(self, payload: Any, errors: List[str], warnings: List[str]) -> None:
        if not payload.branches:
            errors.append("payload.branches: at least one branch is required")
            return
        for index, branch in enumerate(payload.branches):
            field = f"payload.branches[{index}]"
            if branch.is_default and index != len(payload.branches) - 1:
                errors.append(f"{field}: default branch must be last")
            if not branch.is_default:
                errors.extend(f"{field}.predicate: {p}" for p in check_predicate(branch.predicate))
            if payload.runtime and not branch.steps:
                errors.append(f"{field}.steps: runtime branch has no steps")
            if not payload.runtime and not branch.target:
                errors.append(f"{field}.target: required")
        if not payload.branches[-1].is_default:
            warnings.append("payload.branches: no default branch; unmatched data completes the plan")
