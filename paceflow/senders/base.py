"""Action sender protocol and the dispatcher used by action steps."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence

from pydantic import BaseModel, Field

from ..contracts import RuntimeContext

logger = logging.getLogger(__name__)


class SenderResult(BaseModel):
    """Outcome of one side effect plus a free-form audit record."""

    success: bool
    audit: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class ActionSender(Protocol):
    """Collaborator performing an external side effect (email, SMS, HTTP)."""

    required_params: Sequence[str]

    async def send(
        self, action: str, params: Dict[str, Any], context: RuntimeContext
    ) -> SenderResult:
        """Perform the side effect described by ``params``."""


class ActionDispatcher:
    """Routes action names to senders and keeps exceptions inside."""

    def __init__(self, senders: Optional[Dict[str, ActionSender]] = None) -> None:
        self._senders: Dict[str, ActionSender] = dict(senders or {})

    def register(self, action: str, sender: ActionSender) -> None:
        self._senders[action] = sender

    def has(self, action: str) -> bool:
        return action in self._senders

    def actions(self) -> List[str]:
        return sorted(self._senders)

    def check(self, action: str, params: Dict[str, Any]) -> List[str]:
        """Return field-level problems with an action and its parameters."""
        sender = self._senders.get(action)
        if sender is None:
            return [f"payload.action: unknown action '{action}'"]
        return [
            f"payload.params.{name}: required for action '{action}'"
            for name in getattr(sender, "required_params", ())
            if params.get(name) in (None, "")
        ]

    async def dispatch(
        self, action: str, params: Dict[str, Any], context: RuntimeContext
    ) -> SenderResult:
        sender = self._senders.get(action)
        if sender is None:
            return SenderResult(success=False, error=f"unknown action '{action}'")
        try:
            result = await sender.send(action, params, context)
        except Exception as exc:
            logger.error(
                f"Action {action} raised for execution {context.execution_id}: {exc}"
            )
            return SenderResult(success=False, error=str(exc) or exc.__class__.__name__)
        if not result.success:
            logger.warning(
                f"Action {action} failed for execution {context.execution_id}: {result.error}"
            )
        return result
