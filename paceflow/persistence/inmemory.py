"""In-memory implementation of the execution repository."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict, Optional

from ..errors import DuplicateAdmissionError, DuplicateDelayError
from .models import DelayStatus, ExecutionStatus, PendingDelay, WorkflowExecution
from .repository import ExecutionRepository


class InMemoryExecutionRepository(ExecutionRepository):
    """Store execution state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never hold a reference to stored state.
    """

    def __init__(self) -> None:
        self._executions: Dict[str, WorkflowExecution] = {}
        self._delays: Dict[str, PendingDelay] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> None:
        with self._lock:
            key = execution.dedup_key()
            for existing in self._executions.values():
                if not existing.is_terminal and existing.dedup_key() == key:
                    raise DuplicateAdmissionError(
                        f"active execution {existing.execution_id} already exists for {key}"
                    )
            if execution.execution_id in self._executions:
                raise DuplicateAdmissionError(
                    f"execution {execution.execution_id} already exists"
                )
            self._executions[execution.execution_id] = execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def list_executions(
        self,
        status: ExecutionStatus | None = None,
        workflow_id: str | None = None,
        limit: int | None = None,
    ) -> list[WorkflowExecution]:
        items = [
            e
            for e in self._executions.values()
            if (status is None or e.status == status)
            and (workflow_id is None or e.workflow_id == workflow_id)
        ]
        items.sort(key=lambda e: e.created_at, reverse=True)
        if limit is not None:
            items = items[:limit]
        return [e.model_copy(deep=True) for e in items]

    async def find_executions(
        self,
        workflow_id: str,
        user_id: str,
        trigger_type: str | None = None,
        trigger_id: str | None = None,
        active_only: bool = False,
    ) -> list[WorkflowExecution]:
        return [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if e.workflow_id == workflow_id
            and e.user_id == user_id
            and (trigger_type is None or e.trigger_type == trigger_type)
            and (trigger_id is None or e.trigger_id == trigger_id)
            and not (active_only and e.is_terminal)
        ]

    async def save_execution(
        self,
        execution: WorkflowExecution,
        delay: PendingDelay | None = None,
        expected_status: ExecutionStatus | None = None,
    ) -> bool:
        with self._lock:
            current = self._executions.get(execution.execution_id)
            if current is not None and current.is_terminal:
                return False
            if expected_status is not None and (
                current is None or current.status != expected_status
            ):
                return False
            if delay is not None:
                for existing in self._delays.values():
                    if (
                        existing.execution_id == delay.execution_id
                        and existing.step_id == delay.step_id
                    ):
                        raise DuplicateDelayError(
                            f"delay already scheduled for {delay.execution_id}/{delay.step_id}"
                        )
                self._delays[delay.delay_id] = delay.model_copy(deep=True)
            self._executions[execution.execution_id] = execution.model_copy(deep=True)
            return True

    # ------------------------------------------------------------------
    async def get_delay(self, delay_id: str) -> PendingDelay | None:
        delay = self._delays.get(delay_id)
        return delay.model_copy(deep=True) if delay else None

    async def list_delays(
        self, execution_id: str, status: DelayStatus | None = None
    ) -> list[PendingDelay]:
        items = [
            d
            for d in self._delays.values()
            if d.execution_id == execution_id and (status is None or d.status == status)
        ]
        items.sort(key=lambda d: d.created_at)
        return [d.model_copy(deep=True) for d in items]

    async def due_delays(self, now: datetime, limit: int = 100) -> list[PendingDelay]:
        items = [
            d
            for d in self._delays.values()
            if d.status == DelayStatus.PENDING and d.resume_at <= now
        ]
        items.sort(key=lambda d: d.resume_at)
        return [d.model_copy(deep=True) for d in items[:limit]]

    async def claim_delay(self, delay_id: str, now: datetime) -> bool:
        with self._lock:
            delay = self._delays.get(delay_id)
            if delay is None or delay.status != DelayStatus.PENDING:
                return False
            delay.status = DelayStatus.PROCESSING
            delay.claimed_at = now
            return True

    async def update_delay_status(
        self,
        delay_id: str,
        status: DelayStatus,
        error: Optional[str] = None,
        executed_at: Optional[datetime] = None,
    ) -> None:
        with self._lock:
            delay = self._delays.get(delay_id)
            if delay is None:
                return
            delay.status = status
            delay.error = error
            if executed_at is not None:
                delay.executed_at = executed_at
            if status == DelayStatus.PENDING:
                delay.claimed_at = None

    async def release_stale_delays(self, older_than: datetime) -> int:
        released = 0
        with self._lock:
            for delay in self._delays.values():
                if (
                    delay.status == DelayStatus.PROCESSING
                    and delay.claimed_at is not None
                    and delay.claimed_at < older_than
                ):
                    delay.status = DelayStatus.PENDING
                    delay.claimed_at = None
                    released += 1
        return released

    async def cancel_delays(self, execution_id: str) -> int:
        cancelled = 0
        with self._lock:
            for delay in self._delays.values():
                if delay.execution_id == execution_id and delay.status in (
                    DelayStatus.PENDING,
                    DelayStatus.PROCESSING,
                ):
                    delay.status = DelayStatus.CANCELLED
                    cancelled += 1
        return cancelled
