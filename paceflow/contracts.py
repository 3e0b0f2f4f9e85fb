"""Core contracts shared by the compiler, executors and engine."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .constants import DEFAULT_RE_ENTRY_RULE


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepKind(str, Enum):
    ACTION = "action"
    DELAY = "delay"
    CONDITION = "condition"
    END = "end"
    SHARED_FLOW = "shared_flow"


class ActionPayload(BaseModel):
    """Invoke an action sender by name."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["action"] = "action"
    action: str
    params: Dict[str, Any] = Field(default_factory=dict)


class DelayPayload(BaseModel):
    """Suspend the execution for a fixed or random duration."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["delay"] = "delay"
    seconds: Optional[float] = None
    min_seconds: Optional[float] = None
    max_seconds: Optional[float] = None
    label: Optional[str] = None


class ConditionBranch(BaseModel):
    """One arm of a condition step.

    ``predicate`` is ``None`` for the default branch. Statically expanded
    branches point at their entry step through ``target``; runtime branches
    carry their compiled sub-sequence in ``steps``.
    """

    model_config = ConfigDict(frozen=True)

    label: str
    predicate: Optional[Any] = None
    target: Optional[str] = None
    steps: List["Step"] = Field(default_factory=list)

    @property
    def is_default(self) -> bool:
        return self.predicate is None


class ConditionPayload(BaseModel):
    """Ordered, mutually exclusive branches; first match wins."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["condition"] = "condition"
    branches: List[ConditionBranch] = Field(default_factory=list)
    runtime: bool = False


class EndPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["end"] = "end"
    reason: str = "completed"
    message: Optional[str] = None


class SharedFlowPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["shared_flow"] = "shared_flow"
    flow: str


StepPayload = Annotated[
    Union[ActionPayload, DelayPayload, ConditionPayload, EndPayload, SharedFlowPayload],
    Field(discriminator="kind"),
]


class Step(BaseModel):
    """One node of a compiled plan."""

    model_config = ConfigDict(frozen=True)

    id: str
    payload: StepPayload
    branch: Optional[str] = None

    @property
    def kind(self) -> StepKind:
        return StepKind(self.payload.kind)


ConditionBranch.model_rebuild()


class Plan(BaseModel):
    """Flat, index-addressable sequence of steps for one workflow version."""

    workflow_id: str
    version: str = "1"
    source_hash: str
    trigger_event: Optional[str] = None
    re_entry_rule: str = DEFAULT_RE_ENTRY_RULE
    steps: List[Step] = Field(default_factory=list)
    compiled_at: datetime = Field(default_factory=utcnow)

    def index_of(self, step_id: Optional[str]) -> Optional[int]:
        """Return the position of ``step_id`` or ``None`` when absent."""
        if step_id is None:
            return None
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        return None

    def get(self, step_id: str) -> Optional[Step]:
        index = self.index_of(step_id)
        return self.steps[index] if index is not None else None


class RuntimeContext(BaseModel):
    """Data handed to an executor for one step."""

    execution_id: str
    workflow_id: str
    user_id: str
    trigger_type: str
    trigger_id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    next_step_id: Optional[str] = None
    now: datetime = Field(default_factory=utcnow)


class StepResult(BaseModel):
    """Outcome reported by an executor."""

    success: bool
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    next_steps: Optional[List[str]] = None
    suspend: bool = False
    resume_at: Optional[datetime] = None
    extracted_steps: Optional[List[Step]] = None
    terminal: bool = False
    no_match: bool = False
    context_updates: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, result: Optional[Dict[str, Any]] = None, **kwargs: Any) -> "StepResult":
        return cls(success=True, result=result, **kwargs)

    @classmethod
    def failed(cls, error: str, **kwargs: Any) -> "StepResult":
        return cls(success=False, error=error, **kwargs)


class ValidationReport(BaseModel):
    is_valid: bool = True
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @classmethod
    def from_messages(
        cls, errors: List[str], warnings: Optional[List[str]] = None
    ) -> "ValidationReport":
        return cls(is_valid=not errors, errors=errors, warnings=warnings or [])


class TriggerContext(BaseModel):
    """Normalized view of a validated trigger event."""

    execution_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    trigger_type: str
    trigger_id: str
    user_id: str
    entity_data: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class AdmissionResult(BaseModel):
    """Outcome of admitting one trigger event."""

    success: bool
    trigger_type: str
    execution_id: Optional[str] = None
    workflow_id: Optional[str] = None
    duplicate_prevented: bool = False
    skipped: bool = False
    error: Optional[str] = None
    errors: List[str] = Field(default_factory=list)
    context: Optional[TriggerContext] = None
