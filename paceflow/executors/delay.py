from __future__ import annotations

import random
from datetime import timedelta
from typing import Any, List, Optional

from ..contracts import DelayPayload, RuntimeContext, Step, StepKind, StepResult
from .base import StepExecutor


class DelayExecutor(StepExecutor):
    """Compute when to resume and ask the engine to suspend.

    The wait itself never happens here: the engine persists a pending delay
    at ``resume_at`` that the poller picks up later.
    """

    kind = StepKind.DELAY

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self.rng = rng or random.Random()

    def duration(self, payload: DelayPayload) -> float:
        if payload.seconds is not None:
            return payload.seconds
        return self.rng.uniform(payload.min_seconds, payload.max_seconds)

    async def execute(self, step: Step, context: RuntimeContext, execution) -> StepResult:
        seconds = self.duration(step.payload)
        resume_at = context.now + timedelta(seconds=seconds)
        return StepResult.ok(
            {"delay_seconds": seconds, "resume_at": resume_at.isoformat()},
            suspend=True,
            resume_at=resume_at,
            next_steps=[context.next_step_id] if context.next_step_id else [],
        )

    def check(self, payload: Any, errors: List[str], warnings: List[str]) -> None:
        if payload.seconds is None:
            if payload.min_seconds is None or payload.max_seconds is None:
                errors.append("payload.seconds: a duration or min/max bounds are required")
            elif payload.max_seconds < payload.min_seconds:
                errors.append("payload.max_seconds: must not be below min_seconds")
        elif payload.seconds < 0:
            errors.append("payload.seconds: must be non-negative")
