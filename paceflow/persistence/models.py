"""Data models for persisted execution state."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from ..contracts import Plan, Step, utcnow


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DELAYED = "delayed"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


class DelayStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    EXECUTED = "executed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class HistoryEntry(BaseModel):
    """One attempted step, appended in execution order."""

    step_id: str
    outcome: str
    timestamp: datetime = Field(default_factory=utcnow)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    branch: Optional[str] = None


class StepSplice(BaseModel):
    """Steps a runtime condition inserted right after ``anchor_step_id``."""

    anchor_step_id: str
    steps: List[Step] = Field(default_factory=list)


class ExecutionState(BaseModel):
    history: List[HistoryEntry] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)
    dynamic_steps: List[StepSplice] = Field(default_factory=list)

    def effective_steps(self, plan: Plan) -> List[Step]:
        """The static plan with every recorded splice applied in order."""
        steps = list(plan.steps)
        for splice in self.dynamic_steps:
            for index, step in enumerate(steps):
                if step.id == splice.anchor_step_id:
                    steps[index + 1 : index + 1] = splice.steps
                    break
        return steps


class WorkflowExecution(BaseModel):
    """Persisted run of a plan against one admitted trigger."""

    execution_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    trigger_type: str
    trigger_id: str
    user_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_step_id: Optional[str] = None
    retry_count: int = 0
    state: ExecutionState = Field(default_factory=ExecutionState)
    workflow_definition: Plan
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def current_step_index(self) -> Optional[int]:
        return self.workflow_definition.index_of(self.current_step_id)

    def dedup_key(self) -> tuple[str, str, str, str]:
        return (self.workflow_id, self.user_id, self.trigger_type, self.trigger_id)


class PendingDelay(BaseModel):
    """A resumable suspension point."""

    delay_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    execution_id: str
    step_id: str
    kind: Literal["delay", "retry"] = "delay"
    resume_step_id: Optional[str] = None
    resume_at: datetime
    status: DelayStatus = DelayStatus.PENDING
    context: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    claimed_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
