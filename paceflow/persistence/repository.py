"""Repository abstraction for execution state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from .models import DelayStatus, ExecutionStatus, PendingDelay, WorkflowExecution


class ExecutionRepository(Protocol):
    """Protocol for execution state persistence backends."""

    async def create_execution(self, execution: WorkflowExecution) -> None:
        """Insert a new execution.

        Raises ``DuplicateAdmissionError`` when a non-terminal execution with
        the same (workflow, user, trigger type, trigger id) already exists.
        """

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Retrieve an execution by id."""

    async def list_executions(
        self,
        status: ExecutionStatus | None = None,
        workflow_id: str | None = None,
        limit: int | None = None,
    ) -> list[WorkflowExecution]:
        """Return executions, newest first."""

    async def find_executions(
        self,
        workflow_id: str,
        user_id: str,
        trigger_type: str | None = None,
        trigger_id: str | None = None,
        active_only: bool = False,
    ) -> list[WorkflowExecution]:
        """Return executions matching the given dedup fields."""

    async def save_execution(
        self,
        execution: WorkflowExecution,
        delay: PendingDelay | None = None,
        expected_status: ExecutionStatus | None = None,
    ) -> bool:
        """Write the execution and optional new delay in one transaction.

        Returns ``False`` without writing when the persisted execution is
        already terminal, or when ``expected_status`` is given and the
        persisted status differs from it. Raises ``DuplicateDelayError`` if the delay
        conflicts with an existing (execution, step) pair.
        """

    async def get_delay(self, delay_id: str) -> PendingDelay | None:
        """Retrieve a delay by id."""

    async def list_delays(
        self, execution_id: str, status: DelayStatus | None = None
    ) -> list[PendingDelay]:
        """Return the delays of an execution ordered by creation."""

    async def due_delays(self, now: datetime, limit: int = 100) -> list[PendingDelay]:
        """Return pending delays with ``resume_at <= now``, oldest first."""

    async def claim_delay(self, delay_id: str, now: datetime) -> bool:
        """Atomically move a delay from pending to processing."""

    async def update_delay_status(
        self,
        delay_id: str,
        status: DelayStatus,
        error: Optional[str] = None,
        executed_at: Optional[datetime] = None,
    ) -> None:
        """Set the status of a delay."""

    async def release_stale_delays(self, older_than: datetime) -> int:
        """Return processing claims made before ``older_than`` to pending."""

    async def cancel_delays(self, execution_id: str) -> int:
        """Mark every pending or processing delay of an execution cancelled."""
