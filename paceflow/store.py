"""Execution State Store: the single writer of executions and delays."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from .contracts import utcnow
from .errors import ExecutionNotFoundError
from .persistence import (
    DelayStatus,
    ExecutionRepository,
    ExecutionStatus,
    PendingDelay,
    WorkflowExecution,
)

logger = logging.getLogger(__name__)


class ExecutionStateStore:
    """Guards execution and delay records on top of a repository.

    The engine computes new execution values and hands them over; the store
    stamps them and writes execution and optional delay together.
    """

    def __init__(self, repository: ExecutionRepository) -> None:
        self.repository = repository

    # ------------------------------------------------------------------
    # Executions
    async def create(self, execution: WorkflowExecution) -> WorkflowExecution:
        await self.repository.create_execution(execution)
        logger.info(
            f"Created execution {execution.execution_id} for workflow {execution.workflow_id} "
            f"(user={execution.user_id}, trigger={execution.trigger_type}:{execution.trigger_id})"
        )
        return execution

    async def get(self, execution_id: str) -> Optional[WorkflowExecution]:
        return await self.repository.get_execution(execution_id)

    async def require(self, execution_id: str) -> WorkflowExecution:
        execution = await self.repository.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"execution {execution_id} not found")
        return execution

    async def status_of(self, execution_id: str) -> Optional[ExecutionStatus]:
        execution = await self.repository.get_execution(execution_id)
        return execution.status if execution else None

    async def commit(
        self,
        execution: WorkflowExecution,
        delay: Optional[PendingDelay] = None,
        now: Optional[datetime] = None,
        expected_status: Optional[ExecutionStatus] = None,
    ) -> bool:
        """Persist ``execution`` (and ``delay``) in one transaction.

        With ``expected_status`` the write only happens while the stored
        execution still has that status. Returns ``False`` when the write was
        refused, either for that reason or because the stored execution is
        already terminal.
        """
        execution.updated_at = now or utcnow()
        written = await self.repository.save_execution(
            execution, delay, expected_status=expected_status
        )
        if not written:
            logger.warning(
                f"Refused write to execution {execution.execution_id} "
                f"(expected {expected_status.value if expected_status else 'non-terminal'})"
            )
        return written

    async def list(
        self,
        status: Optional[ExecutionStatus] = None,
        workflow_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[WorkflowExecution]:
        return await self.repository.list_executions(
            status=status, workflow_id=workflow_id, limit=limit
        )

    async def find(
        self,
        workflow_id: str,
        user_id: str,
        trigger_type: Optional[str] = None,
        trigger_id: Optional[str] = None,
        active_only: bool = False,
    ) -> List[WorkflowExecution]:
        return await self.repository.find_executions(
            workflow_id,
            user_id,
            trigger_type=trigger_type,
            trigger_id=trigger_id,
            active_only=active_only,
        )

    # ------------------------------------------------------------------
    # Delays
    async def get_delay(self, delay_id: str) -> Optional[PendingDelay]:
        return await self.repository.get_delay(delay_id)

    async def pending_delays(self, execution_id: str) -> List[PendingDelay]:
        return await self.repository.list_delays(execution_id, status=DelayStatus.PENDING)

    async def delays(self, execution_id: str) -> List[PendingDelay]:
        return await self.repository.list_delays(execution_id)

    async def due_delays(self, now: datetime, limit: int = 100) -> List[PendingDelay]:
        return await self.repository.due_delays(now, limit)

    async def claim_delay(self, delay_id: str, now: datetime) -> bool:
        return await self.repository.claim_delay(delay_id, now)

    async def release_delay(self, delay_id: str) -> None:
        await self.repository.update_delay_status(delay_id, DelayStatus.PENDING)

    async def mark_delay_executed(self, delay_id: str, now: datetime) -> None:
        await self.repository.update_delay_status(
            delay_id, DelayStatus.EXECUTED, executed_at=now
        )

    async def mark_delay_failed(self, delay_id: str, error: str) -> None:
        await self.repository.update_delay_status(delay_id, DelayStatus.FAILED, error=error)

    async def cancel_delays(self, execution_id: str) -> int:
        return await self.repository.cancel_delays(execution_id)

    async def release_stale_delays(self, older_than: datetime) -> int:
        released = await self.repository.release_stale_delays(older_than)
        if released:
            logger.warning(f"Released {released} stale delay claims older than {older_than}")
        return released
