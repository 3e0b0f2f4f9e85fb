from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field
from sqlalchemy import JSON, Column
from sqlmodel import Field as SQLField
from sqlmodel import SQLModel

from ..contracts import utcnow


class TriggerEvent(BaseModel):
    """A raw trigger event waiting to be admitted."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    trigger_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    processed: bool = False
    processed_at: Optional[datetime] = None
    error: Optional[str] = None


class TriggerEventRecord(SQLModel, table=True):
    """Inbox row for the SQL-backed inbox."""

    __tablename__ = "trigger_inbox"

    id: str = SQLField(primary_key=True)
    trigger_type: str = SQLField(index=True)
    payload: dict = SQLField(sa_column=Column(JSON))
    created_at: datetime = SQLField(default_factory=utcnow, index=True)
    processed: bool = SQLField(default=False, index=True)
    processed_at: Optional[datetime] = None
    error: Optional[str] = None

    @classmethod
    def from_event(cls, event: TriggerEvent) -> "TriggerEventRecord":
        return cls(
            id=event.event_id,
            trigger_type=event.trigger_type,
            payload=event.payload,
            created_at=event.created_at,
            processed=event.processed,
            processed_at=event.processed_at,
            error=event.error,
        )

    def to_event(self) -> TriggerEvent:
        return TriggerEvent(
            event_id=self.id,
            trigger_type=self.trigger_type,
            payload=self.payload or {},
            created_at=_aware(self.created_at),
            processed=self.processed,
            processed_at=_aware(self.processed_at) if self.processed_at else None,
            error=self.error,
        )


def _aware(value: datetime) -> datetime:
    # SQLite hands datetimes back without tzinfo
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value
