"""In-memory trigger inbox."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Protocol

from ..contracts import utcnow
from .models import TriggerEvent


class TriggerInbox(Protocol):
    """Source of raw trigger events polled by the poller."""

    async def add(self, event: TriggerEvent) -> TriggerEvent:
        """Store a new event."""

    async def fetch_unprocessed(self, since: datetime, limit: int = 100) -> List[TriggerEvent]:
        """Return unprocessed events created at or after ``since``, oldest first."""

    async def mark_processed(self, event_id: str, error: Optional[str] = None) -> None:
        """Flag an event as handled, recording why it was rejected if it was."""


class InMemoryTriggerInbox:
    def __init__(self) -> None:
        self._events: Dict[str, TriggerEvent] = {}

    async def add(self, event: TriggerEvent) -> TriggerEvent:
        self._events[event.event_id] = event.model_copy()
        return event

    async def fetch_unprocessed(self, since: datetime, limit: int = 100) -> List[TriggerEvent]:
        events = sorted(
            (e for e in self._events.values() if not e.processed and e.created_at >= since),
            key=lambda e: e.created_at,
        )
        return [e.model_copy() for e in events[:limit]]

    async def mark_processed(self, event_id: str, error: Optional[str] = None) -> None:
        event = self._events.get(event_id)
        if event is None:
            return
        event.processed = True
        event.processed_at = utcnow()
        event.error = error

    async def get(self, event_id: str) -> Optional[TriggerEvent]:
        event = self._events.get(event_id)
        return event.model_copy() if event else None
