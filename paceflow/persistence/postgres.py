"""PostgreSQL implementation of the execution repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

import asyncpg

from ..contracts import Plan
from ..errors import DuplicateAdmissionError, DuplicateDelayError
from .models import (
    TERMINAL_STATUSES,
    DelayStatus,
    ExecutionState,
    ExecutionStatus,
    PendingDelay,
    WorkflowExecution,
)
from .repository import ExecutionRepository

_EXECUTION_COLUMNS = (
    "execution_id, workflow_id, trigger_type, trigger_id, user_id, status, "
    "current_step_id, retry_count, state, workflow_definition, error, metadata, "
    "created_at, updated_at, completed_at, failed_at"
)
_DELAY_COLUMNS = (
    "delay_id, execution_id, step_id, kind, resume_step_id, resume_at, status, "
    "context, error, created_at, claimed_at, executed_at"
)
_TERMINAL = [s.value for s in TERMINAL_STATUSES]


class PostgresExecutionRepository(ExecutionRepository):
    """Persist execution state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        await conn.set_type_codec(
            "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
        )
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_executions (
                execution_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                trigger_type TEXT NOT NULL,
                trigger_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                status TEXT NOT NULL,
                current_step_id TEXT,
                retry_count INTEGER NOT NULL DEFAULT 0,
                state JSONB NOT NULL,
                workflow_definition JSONB NOT NULL,
                error TEXT,
                metadata JSONB,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                failed_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS ux_workflow_executions_active
            ON workflow_executions (workflow_id, user_id, trigger_type, trigger_id)
            WHERE status NOT IN ('completed', 'failed', 'cancelled')
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS pending_delays (
                delay_id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL REFERENCES workflow_executions (execution_id),
                step_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                resume_step_id TEXT,
                resume_at TIMESTAMPTZ NOT NULL,
                status TEXT NOT NULL,
                context JSONB,
                error TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                claimed_at TIMESTAMPTZ,
                executed_at TIMESTAMPTZ,
                UNIQUE (execution_id, step_id)
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_pending_delays_due ON pending_delays (status, resume_at)"
        )

    # ------------------------------------------------------------------
    @staticmethod
    def _execution_args(execution: WorkflowExecution) -> list[Any]:
        return [
            execution.execution_id,
            execution.workflow_id,
            execution.trigger_type,
            execution.trigger_id,
            execution.user_id,
            execution.status.value,
            execution.current_step_id,
            execution.retry_count,
            execution.state.model_dump(mode="json"),
            execution.workflow_definition.model_dump(mode="json"),
            execution.error,
            execution.metadata,
            execution.created_at,
            execution.updated_at,
            execution.completed_at,
            execution.failed_at,
        ]

    @staticmethod
    def _row_to_execution(row: asyncpg.Record) -> WorkflowExecution:
        return WorkflowExecution(
            execution_id=row["execution_id"],
            workflow_id=row["workflow_id"],
            trigger_type=row["trigger_type"],
            trigger_id=row["trigger_id"],
            user_id=row["user_id"],
            status=ExecutionStatus(row["status"]),
            current_step_id=row["current_step_id"],
            retry_count=row["retry_count"],
            state=ExecutionState.model_validate(row["state"]),
            workflow_definition=Plan.model_validate(row["workflow_definition"]),
            error=row["error"],
            metadata=row["metadata"] or {},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
            failed_at=row["failed_at"],
        )

    @staticmethod
    def _row_to_delay(row: asyncpg.Record) -> PendingDelay:
        return PendingDelay(
            delay_id=row["delay_id"],
            execution_id=row["execution_id"],
            step_id=row["step_id"],
            kind=row["kind"],
            resume_step_id=row["resume_step_id"],
            resume_at=row["resume_at"],
            status=DelayStatus(row["status"]),
            context=row["context"] or {},
            error=row["error"],
            created_at=row["created_at"],
            claimed_at=row["claimed_at"],
            executed_at=row["executed_at"],
        )

    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                f"INSERT INTO workflow_executions ({_EXECUTION_COLUMNS}) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)",
                *self._execution_args(execution),
            )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateAdmissionError(str(exc)) from exc
        finally:
            await conn.close()

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions WHERE execution_id = $1",
                execution_id,
            )
        finally:
            await conn.close()
        return self._row_to_execution(row) if row else None

    async def list_executions(
        self,
        status: ExecutionStatus | None = None,
        workflow_id: str | None = None,
        limit: int | None = None,
    ) -> list[WorkflowExecution]:
        clauses: list[str] = []
        args: list[Any] = []
        if status is not None:
            args.append(ExecutionStatus(status).value)
            clauses.append(f"status = ${len(args)}")
        if workflow_id is not None:
            args.append(workflow_id)
            clauses.append(f"workflow_id = ${len(args)}")
        query = f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"
        if limit is not None:
            args.append(limit)
            query += f" LIMIT ${len(args)}"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *args)
        finally:
            await conn.close()
        return [self._row_to_execution(r) for r in rows]

    async def find_executions(
        self,
        workflow_id: str,
        user_id: str,
        trigger_type: str | None = None,
        trigger_id: str | None = None,
        active_only: bool = False,
    ) -> list[WorkflowExecution]:
        args: list[Any] = [workflow_id, user_id]
        query = f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions WHERE workflow_id = $1 AND user_id = $2"
        if trigger_type is not None:
            args.append(trigger_type)
            query += f" AND trigger_type = ${len(args)}"
        if trigger_id is not None:
            args.append(trigger_id)
            query += f" AND trigger_id = ${len(args)}"
        if active_only:
            args.append(_TERMINAL)
            query += f" AND NOT (status = ANY(${len(args)}::text[]))"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *args)
        finally:
            await conn.close()
        return [self._row_to_execution(r) for r in rows]

    async def save_execution(
        self,
        execution: WorkflowExecution,
        delay: PendingDelay | None = None,
        expected_status: ExecutionStatus | None = None,
    ) -> bool:
        conn = await self._connect()
        try:
            async with conn.transaction():
                current = await conn.fetchval(
                    "SELECT status FROM workflow_executions WHERE execution_id = $1 FOR UPDATE",
                    execution.execution_id,
                )
                if current is not None and ExecutionStatus(current) in TERMINAL_STATUSES:
                    return False
                if expected_status is not None and (
                    current is None or ExecutionStatus(current) != expected_status
                ):
                    return False
                if current is None:
                    await conn.execute(
                        f"INSERT INTO workflow_executions ({_EXECUTION_COLUMNS}) "
                        "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16)",
                        *self._execution_args(execution),
                    )
                else:
                    await conn.execute(
                        """
                        UPDATE workflow_executions
                        SET status = $1, current_step_id = $2, retry_count = $3, state = $4,
                            workflow_definition = $5, error = $6, metadata = $7, updated_at = $8,
                            completed_at = $9, failed_at = $10
                        WHERE execution_id = $11
                        """,
                        execution.status.value,
                        execution.current_step_id,
                        execution.retry_count,
                        execution.state.model_dump(mode="json"),
                        execution.workflow_definition.model_dump(mode="json"),
                        execution.error,
                        execution.metadata,
                        execution.updated_at,
                        execution.completed_at,
                        execution.failed_at,
                        execution.execution_id,
                    )
                if delay is not None:
                    try:
                        await conn.execute(
                            f"INSERT INTO pending_delays ({_DELAY_COLUMNS}) "
                            "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)",
                            delay.delay_id,
                            delay.execution_id,
                            delay.step_id,
                            delay.kind,
                            delay.resume_step_id,
                            delay.resume_at,
                            delay.status.value,
                            delay.context,
                            delay.error,
                            delay.created_at,
                            delay.claimed_at,
                            delay.executed_at,
                        )
                    except asyncpg.UniqueViolationError as exc:
                        raise DuplicateDelayError(str(exc)) from exc
            return True
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def get_delay(self, delay_id: str) -> PendingDelay | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_DELAY_COLUMNS} FROM pending_delays WHERE delay_id = $1", delay_id
            )
        finally:
            await conn.close()
        return self._row_to_delay(row) if row else None

    async def list_delays(
        self, execution_id: str, status: DelayStatus | None = None
    ) -> list[PendingDelay]:
        args: list[Any] = [execution_id]
        query = f"SELECT {_DELAY_COLUMNS} FROM pending_delays WHERE execution_id = $1"
        if status is not None:
            args.append(DelayStatus(status).value)
            query += " AND status = $2"
        query += " ORDER BY created_at"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *args)
        finally:
            await conn.close()
        return [self._row_to_delay(r) for r in rows]

    async def due_delays(self, now: datetime, limit: int = 100) -> list[PendingDelay]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"""
                SELECT {_DELAY_COLUMNS} FROM pending_delays
                WHERE status = $1 AND resume_at <= $2
                ORDER BY resume_at LIMIT $3
                """,
                DelayStatus.PENDING.value,
                now,
                limit,
            )
        finally:
            await conn.close()
        return [self._row_to_delay(r) for r in rows]

    async def claim_delay(self, delay_id: str, now: datetime) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                "UPDATE pending_delays SET status = $1, claimed_at = $2 WHERE delay_id = $3 AND status = $4",
                DelayStatus.PROCESSING.value,
                now,
                delay_id,
                DelayStatus.PENDING.value,
            )
        finally:
            await conn.close()
        return result == "UPDATE 1"

    async def update_delay_status(
        self,
        delay_id: str,
        status: DelayStatus,
        error: Optional[str] = None,
        executed_at: Optional[datetime] = None,
    ) -> None:
        status = DelayStatus(status)
        conn = await self._connect()
        try:
            if status == DelayStatus.PENDING:
                await conn.execute(
                    "UPDATE pending_delays SET status = $1, error = $2, claimed_at = NULL WHERE delay_id = $3",
                    status.value,
                    error,
                    delay_id,
                )
            else:
                await conn.execute(
                    """
                    UPDATE pending_delays
                    SET status = $1, error = $2, executed_at = COALESCE($3, executed_at)
                    WHERE delay_id = $4
                    """,
                    status.value,
                    error,
                    executed_at,
                    delay_id,
                )
        finally:
            await conn.close()

    async def release_stale_delays(self, older_than: datetime) -> int:
        conn = await self._connect()
        try:
            result = await conn.execute(
                """
                UPDATE pending_delays SET status = $1, claimed_at = NULL
                WHERE status = $2 AND claimed_at IS NOT NULL AND claimed_at < $3
                """,
                DelayStatus.PENDING.value,
                DelayStatus.PROCESSING.value,
                older_than,
            )
        finally:
            await conn.close()
        return int(result.split()[-1])

    async def cancel_delays(self, execution_id: str) -> int:
        conn = await self._connect()
        try:
            result = await conn.execute(
                "UPDATE pending_delays SET status = $1 WHERE execution_id = $2 AND status IN ($3, $4)",
                DelayStatus.CANCELLED.value,
                execution_id,
                DelayStatus.PENDING.value,
                DelayStatus.PROCESSING.value,
            )
        finally:
            await conn.close()
        return int(result.split()[-1])
