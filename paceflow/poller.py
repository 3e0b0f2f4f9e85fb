"""Polling loop: admits inbox events and resumes due delays."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Iterable, List, Optional, TypeVar

from pydantic import BaseModel

from .config import PollerConfig
from .engine import WorkflowEngine
from .inbox import TriggerEvent, TriggerInbox
from .persistence import ExecutionStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CycleReport(BaseModel):
    triggers_seen: int = 0
    admitted: int = 0
    duplicates: int = 0
    rejected: int = 0
    delays_seen: int = 0
    resumed: int = 0
    errors: int = 0
    released: int = 0
    restarted: int = 0


class Poller:
    """The only component that initiates work.

    Each cycle fetches unprocessed inbox events and due delays and processes
    them with bounded concurrency. One item failing never stops the others;
    an item whose processing raised is left in place for the next cycle.
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        inbox: TriggerInbox,
        config: Optional[PollerConfig] = None,
    ) -> None:
        self.engine = engine
        self.inbox = inbox
        self.config = config or PollerConfig()
        self._stopping = asyncio.Event()

    async def _fan_out(
        self, items: Iterable[T], handler: Callable[[T], Awaitable[object]]
    ) -> List[object]:
        semaphore = asyncio.Semaphore(max(1, self.config.concurrency))

        async def run(item: T) -> object:
            async with semaphore:
                return await handler(item)

        return await asyncio.gather(*(run(item) for item in items), return_exceptions=True)

    # ------------------------------------------------------------------
    async def poll_triggers(self, report: Optional[CycleReport] = None) -> CycleReport:
        report = report or CycleReport()
        since = self.engine.clock() - timedelta(seconds=self.config.trigger_lookback_seconds)
        events = await self.inbox.fetch_unprocessed(since, self.config.batch_size)
        report.triggers_seen += len(events)

        async def handle(event: TriggerEvent) -> None:
            result = await self.engine.admit_trigger(
                event.trigger_type, event.payload, start=False
            )
            await self.inbox.mark_processed(event.event_id, None if result.success else result.error)
            if not result.success:
                report.rejected += 1
            elif result.duplicate_prevented:
                report.duplicates += 1
            elif not result.skipped:
                report.admitted += 1
                await self.engine.start_execution(result.execution_id)

        outcomes = await self._fan_out(events, handle)
        for event, outcome in zip(events, outcomes):
            if isinstance(outcome, BaseException):
                report.errors += 1
                logger.error(f"Inbox event {event.event_id} failed; will retry: {outcome}")
        return report

    async def poll_due_delays(self, report: Optional[CycleReport] = None) -> CycleReport:
        report = report or CycleReport()
        delays = await self.engine.store.due_delays(self.engine.clock(), self.config.batch_size)
        report.delays_seen += len(delays)

        outcomes = await self._fan_out(
            [d.delay_id for d in delays], self.engine.resume_from_delay
        )
        for delay, outcome in zip(delays, outcomes):
            if isinstance(outcome, BaseException):
                report.errors += 1
                logger.error(f"Resuming delay {delay.delay_id} failed; will retry: {outcome}")
            elif outcome is not None:
                report.resumed += 1
        return report

    async def recover(self, report: Optional[CycleReport] = None) -> CycleReport:
        """Re-drive work abandoned by a crashed worker.

        Delay claims older than the lease go back to pending. Executions
        admitted but never started within the lease are started, and running
        executions untouched for the lease with no open delay are re-driven.
        """
        report = report or CycleReport()
        cutoff = self.engine.clock() - timedelta(seconds=self.config.claim_lease_seconds)
        report.released += await self.engine.store.release_stale_delays(cutoff)

        stuck = [
            e
            for e in await self.engine.store.list(status=ExecutionStatus.PENDING)
            if e.created_at < cutoff
        ]
        outcomes = await self._fan_out([e.execution_id for e in stuck], self.engine.start_execution)
        for execution, outcome in zip(stuck, outcomes):
            if isinstance(outcome, BaseException):
                report.errors += 1
                logger.error(f"Starting stuck execution {execution.execution_id} failed: {outcome}")
            else:
                report.restarted += 1

        stalled = [
            e
            for e in await self.engine.store.list(status=ExecutionStatus.RUNNING)
            if e.updated_at < cutoff
        ]
        outcomes = await self._fan_out(
            [e.execution_id for e in stalled], self.engine.recover_execution
        )
        for execution, outcome in zip(stalled, outcomes):
            if isinstance(outcome, BaseException):
                report.errors += 1
                logger.error(f"Recovering execution {execution.execution_id} failed: {outcome}")
            elif outcome is not None:
                report.restarted += 1
        return report

    async def run_cycle(self) -> CycleReport:
        report = CycleReport()
        await self.recover(report)
        await self.poll_triggers(report)
        await self.poll_due_delays(report)
        logger.info(
            f"Poll cycle: {report.admitted} admitted, {report.duplicates} duplicates, "
            f"{report.rejected} rejected, {report.resumed}/{report.delays_seen} delays resumed, "
            f"{report.errors} errors"
        )
        return report

    async def run_forever(self, max_cycles: Optional[int] = None) -> None:
        cycles = 0
        self._stopping.clear()
        while not self._stopping.is_set():
            try:
                await self.run_cycle()
            except Exception as exc:
                logger.error(f"Poll cycle failed: {exc}")
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.config.interval_seconds)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stopping.set()
