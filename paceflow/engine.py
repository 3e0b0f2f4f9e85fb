"""Durable execution engine: drive loop, manual controls and delay resume."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from .config import EngineConfig
from .contracts import AdmissionResult, RuntimeContext, Step, StepResult, utcnow
from .errors import (
    DuplicateDelayError,
    StepExecutionError,
    SuspensionInconsistencyError,
)
from .executors import ExecutorRegistry
from .persistence import (
    DelayStatus,
    ExecutionStatus,
    HistoryEntry,
    PendingDelay,
    StepSplice,
    WorkflowExecution,
)
from .state_machine import ExecutionEvent, transition
from .store import ExecutionStateStore
from .utils.retry import retry_delay_seconds

if TYPE_CHECKING:  # pragma: no cover
    from .admission import AdmissionController

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class WorkflowEngine:
    """Drives executions through their plans one step at a time.

    Progress is checkpointed through the :class:`ExecutionStateStore` after
    every step. A delay step stops the loop with the execution ``delayed``
    and its pointer on the delay's successor; the poller later calls
    :meth:`resume_from_delay`, which continues until the next delay, end or
    failure.
    """

    def __init__(
        self,
        store: ExecutionStateStore,
        executors: ExecutorRegistry,
        config: Optional[EngineConfig] = None,
        admission: Optional["AdmissionController"] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.executors = executors
        self.config = config or EngineConfig()
        self.admission = admission
        self.clock = clock

    # ------------------------------------------------------------------
    # Admission
    async def admit_trigger(
        self, trigger_type: str, raw: Dict[str, Any], start: bool = True
    ) -> AdmissionResult:
        """Admit a raw trigger event and, when created, start the execution."""
        if self.admission is None:
            raise RuntimeError("engine has no admission controller")
        result = await self.admission.process(trigger_type, raw)
        if start and result.success and result.execution_id and not (
            result.duplicate_prevented or result.skipped
        ):
            await self.start_execution(result.execution_id)
        return result

    # ------------------------------------------------------------------
    # Manual controls
    async def start_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self.store.require(execution_id)
        execution.status = transition(execution.status, ExecutionEvent.START)
        if execution.current_step_id is None and execution.workflow_definition.steps:
            execution.current_step_id = execution.workflow_definition.steps[0].id
        if not await self.store.commit(
            execution, now=self.clock(), expected_status=ExecutionStatus.PENDING
        ):
            return await self.store.require(execution_id)
        logger.info(f"Started execution {execution_id} ({execution.workflow_id})")
        return await self._drive(execution)

    async def _apply_control(
        self, execution_id: str, event: ExecutionEvent, reason: Optional[str] = None
    ) -> WorkflowExecution:
        # re-read until the write lands on the status the transition was computed from
        while True:
            execution = await self.store.require(execution_id)
            previous = execution.status
            execution.status = transition(previous, event)
            if reason is not None:
                execution.state.context["end_reason"] = reason
            if await self.store.commit(execution, now=self.clock(), expected_status=previous):
                return execution

    async def pause_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self._apply_control(execution_id, ExecutionEvent.PAUSE)
        logger.info(f"Paused execution {execution_id}")
        return execution

    async def resume_execution(self, execution_id: str) -> WorkflowExecution:
        """Resume a paused execution.

        If a delay is still outstanding the execution goes back to
        ``delayed`` and waits for it; otherwise it runs from its current step.
        """
        while True:
            execution = await self.store.require(execution_id)
            previous = execution.status
            execution.status = transition(previous, ExecutionEvent.RESUME)
            waiting = bool(await self.store.pending_delays(execution_id))
            if waiting:
                execution.status = transition(previous, ExecutionEvent.SUSPEND)
            if await self.store.commit(execution, now=self.clock(), expected_status=previous):
                break
        if waiting:
            logger.info(f"Resumed execution {execution_id}; waiting on pending delay")
            return execution
        logger.info(f"Resumed execution {execution_id} at {execution.current_step_id}")
        return await self._drive(execution)

    async def cancel_execution(
        self, execution_id: str, reason: str = "cancelled"
    ) -> WorkflowExecution:
        execution = await self._apply_control(execution_id, ExecutionEvent.CANCEL, reason)
        cancelled = await self.store.cancel_delays(execution_id)
        logger.info(
            f"Cancelled execution {execution_id} ({reason}); {cancelled} pending delays cancelled"
        )
        return execution

    async def stop_execution(self, execution_id: str) -> WorkflowExecution:
        return await self.cancel_execution(execution_id, reason="manual_stop")

    async def get_execution_status(self, execution_id: str) -> WorkflowExecution:
        return await self.store.require(execution_id)

    async def list_executions(
        self,
        status: Optional[ExecutionStatus] = None,
        workflow_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[WorkflowExecution]:
        return await self.store.list(status=status, workflow_id=workflow_id, limit=limit)

    # ------------------------------------------------------------------
    # Delay resumption
    async def resume_from_delay(self, delay_id: str) -> Optional[WorkflowExecution]:
        """Continue the execution suspended by ``delay_id``.

        Safe to call repeatedly: a delay that is no longer pending, or that
        another worker claimed first, is left alone. Returns the execution
        only when the delay moved it forward.
        """
        now = self.clock()
        delay = await self.store.get_delay(delay_id)
        if delay is None:
            error = SuspensionInconsistencyError(f"delay {delay_id} not found")
            logger.error(str(error))
            return None
        if delay.status != DelayStatus.PENDING:
            logger.info(f"Delay {delay_id} is {delay.status.value}; nothing to resume")
            return None
        if not await self.store.claim_delay(delay_id, now):
            logger.info(f"Delay {delay_id} was claimed by another worker")
            return None

        execution = await self.store.get(delay.execution_id)
        if execution is not None and execution.status == ExecutionStatus.PAUSED:
            await self.store.release_delay(delay_id)
            logger.info(
                f"Execution {execution.execution_id} is paused; delay {delay_id} released"
            )
            return None
        if (
            execution is not None
            and execution.status == ExecutionStatus.RUNNING
            and await self._is_latest_delay(execution, delay)
        ):
            # an earlier resume of this delay died mid-drive after waking the execution
            logger.warning(
                f"Execution {execution.execution_id} was left running by delay {delay_id}; "
                f"re-driving from {execution.current_step_id}"
            )
            self._restore(execution, delay)
            execution = await self._drive(execution)
            await self.store.mark_delay_executed(delay_id, self.clock())
            return execution
        if execution is None or execution.status != ExecutionStatus.DELAYED:
            found = execution.status.value if execution else "missing"
            error = SuspensionInconsistencyError(
                f"delay {delay_id} points at execution {delay.execution_id} which is {found}"
            )
            logger.error(str(error))
            await self.store.mark_delay_failed(delay_id, str(error))
            return None

        newer = [
            d
            for d in await self.store.pending_delays(execution.execution_id)
            if d.delay_id != delay_id
        ]
        if newer:
            # a previous resume of this delay already got further
            logger.warning(
                f"Delay {delay_id} superseded by {newer[0].delay_id} for execution "
                f"{execution.execution_id}; marking executed"
            )
            await self.store.mark_delay_executed(delay_id, now)
            return None

        self._restore(execution, delay)
        execution.status = transition(execution.status, ExecutionEvent.WAKE)
        if not await self.store.commit(
            execution, now=now, expected_status=ExecutionStatus.DELAYED
        ):
            current = await self.store.get(execution.execution_id)
            if current is not None and current.status == ExecutionStatus.PAUSED:
                await self.store.release_delay(delay_id)
            else:
                await self.store.mark_delay_executed(delay_id, now)
            return None
        logger.info(
            f"Resuming execution {execution.execution_id} from {delay.kind} {delay_id} "
            f"at step {execution.current_step_id}"
        )
        execution = await self._drive(execution)
        await self.store.mark_delay_executed(delay_id, self.clock())
        return execution

    async def recover_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        """Re-drive a running execution whose worker went away.

        Executions still holding an open delay are left to the delay poll.
        """
        execution = await self.store.require(execution_id)
        if execution.status != ExecutionStatus.RUNNING:
            return None
        open_delays = [
            d
            for d in await self.store.delays(execution_id)
            if d.status in (DelayStatus.PENDING, DelayStatus.PROCESSING)
        ]
        if open_delays:
            return None
        logger.warning(
            f"Recovering execution {execution_id} left running at {execution.current_step_id}"
        )
        return await self._drive(execution)

    async def _is_latest_delay(self, execution: WorkflowExecution, delay: PendingDelay) -> bool:
        return not [
            d
            for d in await self.store.delays(execution.execution_id)
            if d.delay_id != delay.delay_id and d.created_at >= delay.created_at
        ]

    def _restore(self, execution: WorkflowExecution, delay: PendingDelay) -> None:
        snapshot = delay.context or {}
        execution.state.context = {**snapshot.get("data", {}), **execution.state.context}
        plan = execution.workflow_definition
        step_id = execution.current_step_id
        if step_id is None or plan.index_of(step_id) is not None:
            return
        splices = [StepSplice.model_validate(s) for s in snapshot.get("dynamic_steps", [])]
        if splices:
            execution.state.dynamic_steps = splices

    @staticmethod
    def _snapshot(execution: WorkflowExecution) -> Dict[str, Any]:
        dumped = execution.state.model_dump(mode="json", include={"context", "dynamic_steps"})
        return {"data": dumped["context"], "dynamic_steps": dumped["dynamic_steps"]}

    # ------------------------------------------------------------------
    # Drive loop
    def _runtime_context(
        self, execution: WorkflowExecution, steps: List[Step], index: int, now: datetime
    ) -> RuntimeContext:
        following = steps[index + 1].id if index + 1 < len(steps) else None
        return RuntimeContext(
            execution_id=execution.execution_id,
            workflow_id=execution.workflow_id,
            user_id=execution.user_id,
            trigger_type=execution.trigger_type,
            trigger_id=execution.trigger_id,
            data=dict(execution.state.context),
            metadata=dict(execution.metadata),
            next_step_id=following,
            now=now,
        )

    async def _run_step(
        self, step: Step, context: RuntimeContext, execution: WorkflowExecution
    ) -> StepResult:
        try:
            executor = self.executors.get(step.kind)
            return await executor.execute(step, context, execution)
        except Exception as exc:
            error = StepExecutionError(step.id, str(exc) or exc.__class__.__name__)
            logger.error(f"Execution {execution.execution_id}: {error}")
            return StepResult.failed(str(exc) or exc.__class__.__name__)

    async def _drive(self, execution: WorkflowExecution) -> WorkflowExecution:
        while True:
            persisted = await self.store.status_of(execution.execution_id)
            if persisted != ExecutionStatus.RUNNING:
                logger.info(
                    f"Execution {execution.execution_id} is "
                    f"{persisted.value if persisted else 'missing'}; stopping"
                )
                return await self.store.get(execution.execution_id) or execution

            now = self.clock()
            if execution.current_step_id is None:
                return await self._complete(execution, now)
            steps = execution.state.effective_steps(execution.workflow_definition)
            index = next(
                (i for i, s in enumerate(steps) if s.id == execution.current_step_id), None
            )
            if index is None:
                return await self._fail(
                    execution, f"step {execution.current_step_id} not found in plan", now
                )

            step = steps[index]
            context = self._runtime_context(execution, steps, index, now)
            result = await self._run_step(step, context, execution)
            execution.state.history.append(
                HistoryEntry(
                    step_id=step.id,
                    outcome=(
                        "failed"
                        if not result.success
                        else "suspended" if result.suspend else "succeeded"
                    ),
                    timestamp=now,
                    result=result.result,
                    error=result.error,
                    branch=step.branch,
                )
            )

            if not result.success:
                return await self._handle_failure(execution, step, result, now)

            execution.retry_count = 0
            execution.error = None
            execution.state.context.update(result.context_updates)
            if result.extracted_steps:
                execution.state.dynamic_steps.append(
                    StepSplice(anchor_step_id=step.id, steps=result.extracted_steps)
                )

            if result.suspend:
                return await self._suspend(execution, step, result, now)
            if result.terminal or result.no_match:
                return await self._complete(execution, now)

            if result.next_steps:
                execution.current_step_id = result.next_steps[0]
            else:
                steps = execution.state.effective_steps(execution.workflow_definition)
                execution.current_step_id = steps[index + 1].id if index + 1 < len(steps) else None
            if execution.current_step_id is None:
                return await self._complete(execution, now)
            if not await self._checkpoint(execution, now):
                return await self.store.get(execution.execution_id) or execution

    async def _suspend(
        self, execution: WorkflowExecution, step: Step, result: StepResult, now: datetime
    ) -> WorkflowExecution:
        successor = result.next_steps[0] if result.next_steps else None
        execution.status = transition(execution.status, ExecutionEvent.SUSPEND)
        execution.current_step_id = successor
        delay = PendingDelay(
            execution_id=execution.execution_id,
            step_id=step.id,
            kind="delay",
            resume_step_id=successor,
            resume_at=result.resume_at or now,
            context=self._snapshot(execution),
            created_at=now,
        )
        return await self._commit_with_delay(execution, delay, now)

    async def _handle_failure(
        self, execution: WorkflowExecution, step: Step, result: StepResult, now: datetime
    ) -> WorkflowExecution:
        error = result.error or "step failed"
        if execution.retry_count < self.config.max_retries:
            execution.retry_count += 1
            backoff = retry_delay_seconds(
                execution.retry_count,
                base_delay=self.config.retry_base_delay,
                backoff_base=self.config.retry_backoff_base,
                jitter=self.config.retry_jitter,
            )
            execution.status = transition(execution.status, ExecutionEvent.SUSPEND)
            execution.error = error
            delay = PendingDelay(
                execution_id=execution.execution_id,
                step_id=f"{step.id}:retry:{execution.retry_count}",
                kind="retry",
                resume_step_id=step.id,
                resume_at=now + timedelta(seconds=backoff),
                context=self._snapshot(execution),
                created_at=now,
            )
            logger.warning(
                f"Execution {execution.execution_id} step {step.id} failed ({error}); "
                f"retry {execution.retry_count}/{self.config.max_retries} in {backoff:.1f}s"
            )
            return await self._commit_with_delay(execution, delay, now)
        return await self._fail(execution, error, now)

    async def _commit_with_delay(
        self, execution: WorkflowExecution, delay: PendingDelay, now: datetime
    ) -> WorkflowExecution:
        try:
            written = await self._checkpoint(execution, now, delay)
        except DuplicateDelayError as exc:
            logger.warning(
                f"Execution {execution.execution_id} already suspended at {delay.step_id}: {exc}"
            )
            return await self.store.get(execution.execution_id) or execution
        if not written:
            return await self.store.get(execution.execution_id) or execution
        logger.info(
            f"Execution {execution.execution_id} suspended at {delay.step_id} "
            f"until {delay.resume_at.isoformat()}"
        )
        return execution

    async def _complete(self, execution: WorkflowExecution, now: datetime) -> WorkflowExecution:
        execution.status = transition(execution.status, ExecutionEvent.COMPLETE)
        execution.completed_at = now
        execution.state.context.setdefault("end_reason", "completed")
        if await self._checkpoint(execution, now):
            logger.info(f"Execution {execution.execution_id} completed")
            return execution
        return await self.store.get(execution.execution_id) or execution

    async def _fail(
        self, execution: WorkflowExecution, error: str, now: datetime
    ) -> WorkflowExecution:
        execution.status = transition(execution.status, ExecutionEvent.FAIL)
        execution.error = error
        execution.failed_at = now
        if await self._checkpoint(execution, now):
            logger.error(f"Execution {execution.execution_id} failed: {error}")
            return execution
        return await self.store.get(execution.execution_id) or execution

    async def _checkpoint(
        self, execution: WorkflowExecution, now: datetime, delay: Optional[PendingDelay] = None
    ) -> bool:
        """Write drive loop progress while the stored execution is still running.

        A pause that landed while the step ran is kept: the step's progress
        is written under the paused status and ``False`` stops the loop.
        """
        if await self.store.commit(
            execution, delay, now=now, expected_status=ExecutionStatus.RUNNING
        ):
            return True
        persisted = await self.store.get(execution.execution_id)
        if persisted is None or persisted.status != ExecutionStatus.PAUSED:
            return False
        execution.status = ExecutionStatus.PAUSED
        execution.completed_at = None
        execution.failed_at = None
        if await self.store.commit(
            execution, delay, now=now, expected_status=ExecutionStatus.PAUSED
        ):
            logger.info(
                f"Execution {execution.execution_id} paused during a step; "
                f"stopping at {execution.current_step_id}"
            )
        return False
