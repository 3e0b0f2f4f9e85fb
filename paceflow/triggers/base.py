"""Trigger contract and registry."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, ClassVar, Dict, List, Optional, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..contracts import TriggerContext
from ..errors import ValidationError

logger = logging.getLogger(__name__)


def field_errors(exc: PydanticValidationError) -> List[str]:
    return [
        f"{'.'.join(str(part) for part in error['loc']) or 'event'}: {error['msg']}"
        for error in exc.errors()
    ]


class BaseTrigger(ABC):
    """Turns raw events of one type into a :class:`TriggerContext`."""

    trigger_type: ClassVar[str]
    event_model: ClassVar[Type[BaseModel]]

    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id

    def validate(self, raw: Dict[str, Any]) -> TriggerContext:
        """Validate ``raw`` and normalize it.

        Raises:
            ValidationError: with one message per offending field.
        """
        if not isinstance(raw, dict):
            raise ValidationError(["event: expected an object"])
        try:
            event = self.event_model.model_validate(raw)
        except PydanticValidationError as exc:
            raise ValidationError(field_errors(exc)) from exc
        return self.build_context(event)

    @abstractmethod
    def build_context(self, event: Any) -> TriggerContext:
        """Map a validated event onto the trigger context."""

    def get_workflow_id(self, context: TriggerContext) -> str:
        return self.workflow_id

    def should_execute(self, context: TriggerContext) -> bool:
        return True


class TriggerRegistry:
    def __init__(self) -> None:
        self._triggers: Dict[str, BaseTrigger] = {}

    def register(self, trigger: BaseTrigger) -> None:
        if trigger.trigger_type in self._triggers:
            logger.warning(f"Trigger type {trigger.trigger_type} already registered; overwriting")
        self._triggers[trigger.trigger_type] = trigger
        logger.info(f"Registered trigger {trigger.trigger_type} -> {trigger.workflow_id}")

    def get(self, trigger_type: str) -> Optional[BaseTrigger]:
        return self._triggers.get(trigger_type)

    def is_registered(self, trigger_type: str) -> bool:
        return trigger_type in self._triggers

    def types(self) -> List[str]:
        return sorted(self._triggers)
