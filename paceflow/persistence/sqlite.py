"""SQLite implementation of the execution repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

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

_TERMINAL_SQL = "'completed', 'failed', 'cancelled'"

_EXECUTION_COLUMNS = (
    "execution_id, workflow_id, trigger_type, trigger_id, user_id, status, "
    "current_step_id, retry_count, state, workflow_definition, error, metadata, "
    "created_at, updated_at, completed_at, failed_at"
)
_DELAY_COLUMNS = (
    "delay_id, execution_id, step_id, kind, resume_step_id, resume_at, status, "
    "context, error, created_at, claimed_at, executed_at"
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Serialize a timestamp as a sortable UTC ISO string."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteExecutionRepository(ExecutionRepository):
    """Persist execution state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
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
                state TEXT NOT NULL,
                workflow_definition TEXT NOT NULL,
                error TEXT,
                metadata TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                completed_at TEXT,
                failed_at TEXT
            )
            """
        )
        cur.execute(
            f"""
            CREATE UNIQUE INDEX IF NOT EXISTS ux_workflow_executions_active
            ON workflow_executions (workflow_id, user_id, trigger_type, trigger_id)
            WHERE status NOT IN ({_TERMINAL_SQL})
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS pending_delays (
                delay_id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                resume_step_id TEXT,
                resume_at TEXT NOT NULL,
                status TEXT NOT NULL,
                context TEXT,
                error TEXT,
                created_at TEXT NOT NULL,
                claimed_at TEXT,
                executed_at TEXT,
                UNIQUE (execution_id, step_id)
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_pending_delays_due ON pending_delays (status, resume_at)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute(query, params)
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.execute(query, params)
            return cur.fetchall()

    def _execution_params(self, execution: WorkflowExecution) -> tuple:
        return (
            execution.execution_id,
            execution.workflow_id,
            execution.trigger_type,
            execution.trigger_id,
            execution.user_id,
            execution.status.value,
            execution.current_step_id,
            execution.retry_count,
            execution.state.model_dump_json(),
            execution.workflow_definition.model_dump_json(),
            execution.error,
            json.dumps(execution.metadata, default=str),
            _ts(execution.created_at),
            _ts(execution.updated_at),
            _ts(execution.completed_at),
            _ts(execution.failed_at),
        )

    def _delay_params(self, delay: PendingDelay) -> tuple:
        return (
            delay.delay_id,
            delay.execution_id,
            delay.step_id,
            delay.kind,
            delay.resume_step_id,
            _ts(delay.resume_at),
            delay.status.value,
            json.dumps(delay.context, default=str),
            delay.error,
            _ts(delay.created_at),
            _ts(delay.claimed_at),
            _ts(delay.executed_at),
        )

    @staticmethod
    def _row_to_execution(row: sqlite3.Row) -> WorkflowExecution:
        return WorkflowExecution(
            execution_id=row["execution_id"],
            workflow_id=row["workflow_id"],
            trigger_type=row["trigger_type"],
            trigger_id=row["trigger_id"],
            user_id=row["user_id"],
            status=ExecutionStatus(row["status"]),
            current_step_id=row["current_step_id"],
            retry_count=row["retry_count"],
            state=ExecutionState.model_validate_json(row["state"]),
            workflow_definition=Plan.model_validate_json(row["workflow_definition"]),
            error=row["error"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            failed_at=_parse_ts(row["failed_at"]),
        )

    @staticmethod
    def _row_to_delay(row: sqlite3.Row) -> PendingDelay:
        return PendingDelay(
            delay_id=row["delay_id"],
            execution_id=row["execution_id"],
            step_id=row["step_id"],
            kind=row["kind"],
            resume_step_id=row["resume_step_id"],
            resume_at=_parse_ts(row["resume_at"]),
            status=DelayStatus(row["status"]),
            context=json.loads(row["context"]) if row["context"] else {},
            error=row["error"],
            created_at=_parse_ts(row["created_at"]),
            claimed_at=_parse_ts(row["claimed_at"]),
            executed_at=_parse_ts(row["executed_at"]),
        )

    def _insert_execution(self, execution: WorkflowExecution) -> None:
        placeholders = ", ".join("?" for _ in range(16))
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    f"INSERT INTO workflow_executions ({_EXECUTION_COLUMNS}) VALUES ({placeholders})",
                    self._execution_params(execution),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateAdmissionError(str(exc)) from exc

    def _save(
        self,
        execution: WorkflowExecution,
        delay: PendingDelay | None,
        expected_status: ExecutionStatus | None,
    ) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT status FROM workflow_executions WHERE execution_id = ?",
                (execution.execution_id,),
            ).fetchone()
            current = ExecutionStatus(row["status"]) if row is not None else None
            if current in TERMINAL_STATUSES:
                return False
            if expected_status is not None and current != expected_status:
                return False
            params = self._execution_params(execution)
            try:
                with self._conn:
                    if row is None:
                        placeholders = ", ".join("?" for _ in params)
                        self._conn.execute(
                            f"INSERT INTO workflow_executions ({_EXECUTION_COLUMNS}) VALUES ({placeholders})",
                            params,
                        )
                    else:
                        self._conn.execute(
                            """
                            UPDATE workflow_executions
                            SET status = ?, current_step_id = ?, retry_count = ?, state = ?,
                                workflow_definition = ?, error = ?, metadata = ?, updated_at = ?,
                                completed_at = ?, failed_at = ?
                            WHERE execution_id = ?
                            """,
                            (
                                execution.status.value,
                                execution.current_step_id,
                                execution.retry_count,
                                execution.state.model_dump_json(),
                                execution.workflow_definition.model_dump_json(),
                                execution.error,
                                json.dumps(execution.metadata, default=str),
                                _ts(execution.updated_at),
                                _ts(execution.completed_at),
                                _ts(execution.failed_at),
                                execution.execution_id,
                            ),
                        )
                    if delay is not None:
                        self._conn.execute(
                            f"INSERT INTO pending_delays ({_DELAY_COLUMNS}) VALUES ({', '.join('?' * 12)})",
                            self._delay_params(delay),
                        )
            except sqlite3.IntegrityError as exc:
                raise DuplicateDelayError(str(exc)) from exc
            return True

    # ------------------------------------------------------------------
    # Repository API
    async def create_execution(self, execution: WorkflowExecution) -> None:
        await asyncio.to_thread(self._insert_execution, execution)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions WHERE execution_id = ?",
            execution_id,
        )
        return self._row_to_execution(row) if row else None

    async def list_executions(
        self,
        status: ExecutionStatus | None = None,
        workflow_id: str | None = None,
        limit: int | None = None,
    ) -> list[WorkflowExecution]:
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(ExecutionStatus(status).value)
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        query = f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._row_to_execution(r) for r in rows]

    async def find_executions(
        self,
        workflow_id: str,
        user_id: str,
        trigger_type: str | None = None,
        trigger_id: str | None = None,
        active_only: bool = False,
    ) -> list[WorkflowExecution]:
        query = f"SELECT {_EXECUTION_COLUMNS} FROM workflow_executions WHERE workflow_id = ? AND user_id = ?"
        params: list[Any] = [workflow_id, user_id]
        if trigger_type is not None:
            query += " AND trigger_type = ?"
            params.append(trigger_type)
        if trigger_id is not None:
            query += " AND trigger_id = ?"
            params.append(trigger_id)
        if active_only:
            query += f" AND status NOT IN ({_TERMINAL_SQL})"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._row_to_execution(r) for r in rows]

    async def save_execution(
        self,
        execution: WorkflowExecution,
        delay: PendingDelay | None = None,
        expected_status: ExecutionStatus | None = None,
    ) -> bool:
        return await asyncio.to_thread(self._save, execution, delay, expected_status)

    async def get_delay(self, delay_id: str) -> PendingDelay | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_DELAY_COLUMNS} FROM pending_delays WHERE delay_id = ?",
            delay_id,
        )
        return self._row_to_delay(row) if row else None

    async def list_delays(
        self, execution_id: str, status: DelayStatus | None = None
    ) -> list[PendingDelay]:
        query = f"SELECT {_DELAY_COLUMNS} FROM pending_delays WHERE execution_id = ?"
        params: list[Any] = [execution_id]
        if status is not None:
            query += " AND status = ?"
            params.append(DelayStatus(status).value)
        query += " ORDER BY created_at"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._row_to_delay(r) for r in rows]

    async def due_delays(self, now: datetime, limit: int = 100) -> list[PendingDelay]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"""
            SELECT {_DELAY_COLUMNS} FROM pending_delays
            WHERE status = ? AND resume_at <= ?
            ORDER BY resume_at LIMIT ?
            """,
            DelayStatus.PENDING.value,
            _ts(now),
            limit,
        )
        return [self._row_to_delay(r) for r in rows]

    async def claim_delay(self, delay_id: str, now: datetime) -> bool:
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE pending_delays SET status = ?, claimed_at = ? WHERE delay_id = ? AND status = ?",
            DelayStatus.PROCESSING.value,
            _ts(now),
            delay_id,
            DelayStatus.PENDING.value,
        )
        return updated == 1

    async def update_delay_status(
        self,
        delay_id: str,
        status: DelayStatus,
        error: Optional[str] = None,
        executed_at: Optional[datetime] = None,
    ) -> None:
        status = DelayStatus(status)
        if status == DelayStatus.PENDING:
            await asyncio.to_thread(
                self._execute,
                "UPDATE pending_delays SET status = ?, error = ?, claimed_at = NULL WHERE delay_id = ?",
                status.value,
                error,
                delay_id,
            )
            return
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE pending_delays
            SET status = ?, error = ?, executed_at = COALESCE(?, executed_at)
            WHERE delay_id = ?
            """,
            status.value,
            error,
            _ts(executed_at),
            delay_id,
        )

    async def release_stale_delays(self, older_than: datetime) -> int:
        return await asyncio.to_thread(
            self._execute,
            """
            UPDATE pending_delays SET status = ?, claimed_at = NULL
            WHERE status = ? AND claimed_at IS NOT NULL AND claimed_at < ?
            """,
            DelayStatus.PENDING.value,
            DelayStatus.PROCESSING.value,
            _ts(older_than),
        )

    async def cancel_delays(self, execution_id: str) -> int:
        return await asyncio.to_thread(
            self._execute,
            "UPDATE pending_delays SET status = ? WHERE execution_id = ? AND status IN (?, ?)",
            DelayStatus.CANCELLED.value,
            execution_id,
            DelayStatus.PENDING.value,
            DelayStatus.PROCESSING.value,
        )

    def close(self) -> None:
        self._conn.close()
