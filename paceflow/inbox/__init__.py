"""Trigger inbox backends."""

from __future__ import annotations

from typing import Optional

from ..config import PaceflowConfig, load_config
from .memory import InMemoryTriggerInbox, TriggerInbox
from .models import TriggerEvent, TriggerEventRecord
from .sql import SQLTriggerInbox

_inbox_instance: TriggerInbox | None = None


def get_inbox(
    inbox_url: Optional[str] = None, config: Optional[PaceflowConfig] = None
) -> TriggerInbox:
    """Factory function to obtain the trigger inbox.

    Any SQLAlchemy async URL selects :class:`SQLTriggerInbox`; without one
    an in-memory inbox is returned.
    """

    global _inbox_instance
    if _inbox_instance is not None and inbox_url is None and config is None:
        return _inbox_instance

    config = config or load_config()
    inbox_url = inbox_url or config.inbox_url
    if not inbox_url:
        _inbox_instance = InMemoryTriggerInbox()
    else:
        _inbox_instance = SQLTriggerInbox(inbox_url)
    return _inbox_instance


__all__ = [
    "TriggerEvent",
    "TriggerEventRecord",
    "TriggerInbox",
    "InMemoryTriggerInbox",
    "SQLTriggerInbox",
    "get_inbox",
]
