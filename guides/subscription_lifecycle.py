"""Walk a subscription purchase through its lifecycle workflow.

Uses the in-memory backends and a manual clock so the multi-day delays in
``guides/rules/user_buys_subscription.yaml`` pass instantly.
"""

import asyncio
from datetime import timedelta
from pathlib import Path

from paceflow import TriggerEvent, build_engine, build_poller
from paceflow.config import PaceflowConfig
from paceflow.contracts import utcnow
from paceflow.inbox import InMemoryTriggerInbox
from paceflow.persistence import InMemoryExecutionRepository
from paceflow.rules import FileRuleSource


class ManualClock:
    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now


async def main():
    clock = ManualClock()
    config = PaceflowConfig()
    engine = build_engine(
        config,
        repository=InMemoryExecutionRepository(),
        rules=FileRuleSource(Path(__file__).parent / "rules"),
        clock=clock,
    )
    inbox = InMemoryTriggerInbox()
    poller = build_poller(engine, config, inbox=inbox)

    await inbox.add(
        TriggerEvent(
            trigger_type="user_buys_subscription",
            payload={
                "subscription_id": "sub-42",
                "user_id": "user-7",
                "product_package": "premium",
                "email": "ada@example.com",
            },
        )
    )

    report = await poller.run_cycle()
    print(f"Admitted {report.admitted} execution(s)")

    for day in range(1, 8):
        clock.now += timedelta(days=1)
        report = await poller.run_cycle()
        if report.resumed:
            print(f"Day {day}: resumed {report.resumed} delay(s)")

    for execution in await engine.list_executions():
        print(f"{execution.execution_id}: {execution.status.value}")
        for entry in execution.state.history:
            print(f"  - {entry.step_id} {entry.outcome}")


if __name__ == "__main__":
    asyncio.run(main())
