"""Trigger inbox backed by SQLModel on an async SQLAlchemy engine."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel, select

from ..contracts import utcnow
from .models import TriggerEvent, TriggerEventRecord


class SQLTriggerInbox:
    """Inbox table in any async SQLAlchemy database.

    Example URLs: ``sqlite+aiosqlite:///inbox.db``,
    ``postgresql+asyncpg://user:pw@host/db``.
    """

    def __init__(self, database_url: str) -> None:
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_async_engine(
            database_url, echo=False, future=True, connect_args=connect_args
        )
        self._initialized = False

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        self._initialized = True

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if not self._initialized:
            await self.init_db()
        async with AsyncSession(self.engine) as session:
            yield session

    async def add(self, event: TriggerEvent) -> TriggerEvent:
        async with self.session() as session:
            session.add(TriggerEventRecord.from_event(event))
            await session.commit()
        return event

    async def fetch_unprocessed(self, since: datetime, limit: int = 100) -> List[TriggerEvent]:
        statement = (
            select(TriggerEventRecord)
            .where(TriggerEventRecord.processed == False)  # noqa: E712
            .where(TriggerEventRecord.created_at >= since)
            .order_by(TriggerEventRecord.created_at)
            .limit(limit)
        )
        async with self.session() as session:
            result = await session.execute(statement)
            return [record.to_event() for record in result.scalars().all()]

    async def mark_processed(self, event_id: str, error: Optional[str] = None) -> None:
        async with self.session() as session:
            record = await session.get(TriggerEventRecord, event_id)
            if record is None:
                return
            record.processed = True
            record.processed_at = utcnow()
            record.error = error
            await session.commit()

    async def get(self, event_id: str) -> Optional[TriggerEvent]:
        async with self.session() as session:
            record = await session.get(TriggerEventRecord, event_id)
            return record.to_event() if record else None

    async def close(self) -> None:
        await self.engine.dispose()
