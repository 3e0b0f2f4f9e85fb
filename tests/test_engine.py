"""Engine tests: drive loop, delay resume, retries and manual controls."""

import asyncio
from datetime import timedelta

import pytest

from paceflow.compiler import compile_rule
from paceflow.errors import ExecutionNotFoundError, IllegalTransitionError
from paceflow.persistence import DelayStatus, ExecutionState, ExecutionStatus, WorkflowExecution


def act(label, name="notify"):
    return {"action": {"name": name, "params": {"label": label}}}


def make_execution(rule, data=None, user_id="u1", trigger_id="t1", workflow_id="wf"):
    plan = compile_rule(rule, workflow_id)
    return WorkflowExecution(
        workflow_id=workflow_id,
        trigger_type="user_created",
        trigger_id=trigger_id,
        user_id=user_id,
        current_step_id=plan.steps[0].id,
        state=ExecutionState(context=dict(data or {})),
        workflow_definition=plan,
    )


async def launch(engine, rule, **kwargs):
    execution = make_execution(rule, **kwargs)
    await engine.store.create(execution)
    return await engine.start_execution(execution.execution_id)


async def resume_next(engine, clock, execution_id):
    [delay] = await engine.store.pending_delays(execution_id)
    clock.now = delay.resume_at
    return await engine.resume_from_delay(delay.delay_id)


DRIP = {
    "and": [
        act("a1"),
        {"delay": {"minutes": 2}},
        act("a2"),
        {"delay": {"minutes": 2}},
        act("a3"),
        {"end": {}},
    ]
}


@pytest.mark.asyncio
async def test_start_runs_until_first_delay(engine, sender, clock):
    execution = await launch(engine, DRIP)

    assert execution.status == ExecutionStatus.DELAYED
    assert sender.labels() == ["a1"]
    assert execution.current_step_id == "step_3"

    [delay] = await engine.store.pending_delays(execution.execution_id)
    assert delay.step_id == "step_2"
    assert delay.resume_step_id == "step_3"
    assert (delay.resume_at - clock.now).total_seconds() == 120


@pytest.mark.asyncio
async def test_resume_stops_at_next_delay(engine, sender, clock):
    execution = await launch(engine, DRIP)

    execution = await resume_next(engine, clock, execution.execution_id)
    assert sender.labels() == ["a1", "a2"]
    assert execution.status == ExecutionStatus.DELAYED
    [delay] = await engine.store.pending_delays(execution.execution_id)
    assert delay.step_id == "step_4"

    execution = await resume_next(engine, clock, execution.execution_id)
    assert sender.labels() == ["a1", "a2", "a3"]
    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.state.context["end_reason"] == "completed"
    assert execution.completed_at == clock.now
    assert await engine.store.pending_delays(execution.execution_id) == []

    outcomes = [entry.outcome for entry in execution.state.history]
    assert outcomes == ["succeeded", "suspended", "succeeded", "suspended", "succeeded", "succeeded"]


@pytest.mark.asyncio
async def test_resume_twice_is_a_no_op(engine, sender, clock):
    execution = await launch(engine, DRIP)
    [delay] = await engine.store.pending_delays(execution.execution_id)
    clock.now = delay.resume_at

    first = await engine.resume_from_delay(delay.delay_id)
    second = await engine.resume_from_delay(delay.delay_id)

    assert first is not None
    assert second is None
    assert sender.labels() == ["a1", "a2"]
    stored = await engine.store.get_delay(delay.delay_id)
    assert stored.status == DelayStatus.EXECUTED
    assert stored.executed_at == clock.now


@pytest.mark.asyncio
async def test_resume_unknown_delay_returns_none(engine):
    assert await engine.resume_from_delay("missing") is None


@pytest.mark.asyncio
async def test_always_failing_step_is_retried_max_retries_times(engine, sender, clock):
    sender.fail = True
    execution = await launch(engine, {"and": [act("flaky"), act("never")]})
    assert execution.status == ExecutionStatus.DELAYED
    assert execution.retry_count == 1

    while execution.status == ExecutionStatus.DELAYED:
        execution = await resume_next(engine, clock, execution.execution_id)

    assert execution.status == ExecutionStatus.FAILED
    assert execution.error == "provider unavailable"
    assert sender.labels() == ["flaky"] * 4
    assert execution.retry_count == 3
    assert await engine.store.pending_delays(execution.execution_id) == []

    delays = await engine.store.delays(execution.execution_id)
    assert [d.step_id for d in delays] == ["step_1:retry:1", "step_1:retry:2", "step_1:retry:3"]
    assert all(d.kind == "retry" for d in delays)


@pytest.mark.asyncio
async def test_retry_backoff_grows(engine, sender, clock):
    sender.fail = True
    execution = await launch(engine, act("flaky"))
    waits = []
    while execution.status == ExecutionStatus.DELAYED:
        [delay] = await engine.store.pending_delays(execution.execution_id)
        waits.append((delay.resume_at - clock.now).total_seconds())
        execution = await resume_next(engine, clock, execution.execution_id)

    assert waits == [30.0, 60.0, 120.0]


@pytest.mark.asyncio
async def test_retry_succeeds_and_resets_counter(engine, sender, clock):
    sender.fail = True
    execution = await launch(engine, {"and": [act("flaky"), act("next")]})
    sender.fail = False

    execution = await resume_next(engine, clock, execution.execution_id)

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.retry_count == 0
    assert execution.error is None
    assert sender.labels() == ["flaky", "flaky", "next"]


@pytest.mark.asyncio
async def test_only_matching_branch_and_shared_tail_run(engine, sender):
    rule = {
        "and": [
            {
                "if": [
                    {"==": [{"var": "tier"}, "gold"]},
                    act("b1"),
                    {"==": [{"var": "tier"}, "silver"]},
                    act("b2"),
                    act("b3"),
                ]
            },
            act("t1"),
            act("t2"),
        ]
    }
    execution = await launch(engine, rule, data={"tier": "silver"})

    assert execution.status == ExecutionStatus.COMPLETED
    assert sender.labels() == ["b2", "t1", "t2"]
    assert {entry.branch for entry in execution.state.history} == {None, "step_1:1"}


@pytest.mark.asyncio
async def test_package_condition_calls_only_matching_action(engine, sender):
    rule = {
        "if": [
            {"==": [{"var": "package"}, "A"]},
            act("actionX"),
            {"==": [{"var": "package"}, "B"]},
            act("actionY"),
            act("actionZ"),
        ]
    }
    execution = await launch(engine, rule, data={"package": "B"})

    assert execution.status == ExecutionStatus.COMPLETED
    assert sender.labels() == ["actionY"]


@pytest.mark.asyncio
async def test_unmatched_condition_completes(engine, sender):
    rule = {"and": [{"if": [{"==": [{"var": "tier"}, "gold"]}, act("gold")]}, act("tail")]}
    execution = await launch(engine, rule, data={"tier": "bronze"})

    assert execution.status == ExecutionStatus.COMPLETED
    assert sender.calls == []


@pytest.mark.asyncio
async def test_end_step_records_reason(engine, sender):
    rule = {"and": [act("a"), {"end": {"reason": "timeout"}}, act("unreachable")]}
    execution = await launch(engine, rule)

    assert execution.status == ExecutionStatus.COMPLETED
    assert execution.state.context["end_reason"] == "timeout"
    assert sender.labels() == ["a"]


@pytest.mark.asyncio
async def test_shared_flow_runs_its_actions(engine, sender):
    execution = await launch(engine, {"shared_flow": "Welcome Follow-up Flow"})

    assert execution.status == ExecutionStatus.COMPLETED
    assert [call["params"]["template_id"] for call in sender.calls] == [
        "onboarding_materials",
        "dashboard_tour",
    ]


@pytest.mark.asyncio
async def test_unknown_shared_flow_fails_the_step(engine, sender):
    execution = await launch(engine, {"shared_flow": "does_not_exist"})

    assert execution.status == ExecutionStatus.DELAYED
    assert execution.error == "unknown shared flow 'does_not_exist'"


RUNTIME_SWITCH = {
    "and": [
        {
            "switch": {
                "var": "plan",
                "cases": {"pro": [act("pro"), {"delay": {"minutes": 5}}, act("pro-after")]},
                "default": act("basic"),
            }
        },
        act("tail"),
    ]
}


@pytest.mark.asyncio
async def test_runtime_branch_is_spliced_after_condition(engine, sender, clock):
    execution = await launch(engine, RUNTIME_SWITCH, data={"plan": "pro"})

    assert execution.status == ExecutionStatus.DELAYED
    assert sender.labels() == ["pro"]
    assert execution.current_step_id == "step_1.0.3"
    assert [s.id for s in execution.workflow_definition.steps] == ["step_1"]
    [splice] = execution.state.dynamic_steps
    assert splice.anchor_step_id == "step_1"

    execution = await resume_next(engine, clock, execution.execution_id)
    assert execution.status == ExecutionStatus.COMPLETED
    assert sender.labels() == ["pro", "pro-after", "tail"]


@pytest.mark.asyncio
async def test_resume_rebuilds_splice_from_delay_snapshot(engine, repository, sender, clock):
    execution = await launch(engine, RUNTIME_SWITCH, data={"plan": "pro"})
    stored = await repository.get_execution(execution.execution_id)
    stored.state.dynamic_steps = []
    await repository.save_execution(stored)

    execution = await resume_next(engine, clock, execution.execution_id)

    assert execution.status == ExecutionStatus.COMPLETED
    assert sender.labels() == ["pro", "pro-after", "tail"]


@pytest.mark.asyncio
async def test_runtime_default_branch(engine, sender):
    execution = await launch(engine, RUNTIME_SWITCH, data={"plan": "free"})

    assert execution.status == ExecutionStatus.COMPLETED
    assert sender.labels() == ["basic", "tail"]


@pytest.mark.asyncio
async def test_paused_execution_ignores_due_delay(engine, sender, clock):
    execution = await launch(engine, DRIP)
    paused = await engine.pause_execution(execution.execution_id)
    assert paused.status == ExecutionStatus.PAUSED

    [delay] = await engine.store.pending_delays(execution.execution_id)
    clock.now = delay.resume_at
    assert await engine.resume_from_delay(delay.delay_id) is None

    stored = await engine.store.get(execution.execution_id)
    assert stored.status == ExecutionStatus.PAUSED
    assert sender.labels() == ["a1"]
    assert (await engine.store.get_delay(delay.delay_id)).status == DelayStatus.PENDING

    resumed = await engine.resume_execution(execution.execution_id)
    assert resumed.status == ExecutionStatus.DELAYED

    execution = await engine.resume_from_delay(delay.delay_id)
    assert sender.labels() == ["a1", "a2"]


@pytest.mark.asyncio
async def test_resume_without_pending_delay_drives(engine, sender):
    execution = make_execution({"and": [act("a"), act("b")]})
    await engine.store.create(execution)
    await engine.pause_execution(execution.execution_id)

    resumed = await engine.resume_execution(execution.execution_id)

    assert resumed.status == ExecutionStatus.COMPLETED
    assert sender.labels() == ["a", "b"]


@pytest.mark.asyncio
async def test_cancel_cancels_pending_delays(engine, sender, clock):
    execution = await launch(engine, DRIP)
    [delay] = await engine.store.pending_delays(execution.execution_id)

    cancelled = await engine.cancel_execution(execution.execution_id)

    assert cancelled.status == ExecutionStatus.CANCELLED
    assert cancelled.state.context["end_reason"] == "cancelled"
    assert (await engine.store.get_delay(delay.delay_id)).status == DelayStatus.CANCELLED

    clock.now = delay.resume_at
    assert await engine.resume_from_delay(delay.delay_id) is None
    assert sender.labels() == ["a1"]


@pytest.mark.asyncio
async def test_stop_records_manual_stop(engine):
    execution = await launch(engine, DRIP)
    stopped = await engine.stop_execution(execution.execution_id)

    assert stopped.status == ExecutionStatus.CANCELLED
    assert stopped.state.context["end_reason"] == "manual_stop"


@pytest.mark.asyncio
async def test_pause_during_step_stops_the_loop(engine, sender):
    execution = make_execution({"and": [act("a1"), act("a2"), {"end": {}}]})
    await engine.store.create(execution)

    async def pause_on_a1(params):
        if params.get("label") == "a1":
            await engine.pause_execution(execution.execution_id)

    sender.on_send = pause_on_a1
    result = await engine.start_execution(execution.execution_id)

    assert result.status == ExecutionStatus.PAUSED
    assert sender.labels() == ["a1"]
    stored = await engine.store.get(execution.execution_id)
    assert stored.status == ExecutionStatus.PAUSED
    assert stored.current_step_id == "step_2"
    assert [entry.step_id for entry in stored.state.history] == ["step_1"]

    sender.on_send = None
    resumed = await engine.resume_execution(execution.execution_id)
    assert resumed.status == ExecutionStatus.COMPLETED
    assert sender.labels() == ["a1", "a2"]


@pytest.mark.asyncio
async def test_cancel_during_step_is_not_overwritten(engine, sender):
    execution = make_execution({"and": [act("a1"), act("a2")]})
    await engine.store.create(execution)

    async def cancel_on_a1(params):
        await engine.cancel_execution(execution.execution_id)

    sender.on_send = cancel_on_a1
    result = await engine.start_execution(execution.execution_id)

    assert result.status == ExecutionStatus.CANCELLED
    assert sender.labels() == ["a1"]


@pytest.mark.asyncio
async def test_resume_interrupted_mid_step_is_redriven(engine, sender, clock):
    execution = await launch(engine, DRIP)
    [delay] = await engine.store.pending_delays(execution.execution_id)
    clock.now = delay.resume_at

    async def crash_on_a2(params):
        if params.get("label") == "a2":
            sender.on_send = None
            raise asyncio.CancelledError()

    sender.on_send = crash_on_a2
    with pytest.raises(asyncio.CancelledError):
        await engine.resume_from_delay(delay.delay_id)

    stranded = await engine.store.get(execution.execution_id)
    assert stranded.status == ExecutionStatus.RUNNING
    assert (await engine.store.get_delay(delay.delay_id)).status == DelayStatus.PROCESSING

    clock.advance(hours=1)
    assert await engine.store.release_stale_delays(clock() - timedelta(minutes=5)) == 1
    execution = await engine.resume_from_delay(delay.delay_id)

    assert execution.status == ExecutionStatus.DELAYED
    assert sender.labels() == ["a1", "a2", "a2"]
    assert (await engine.store.get_delay(delay.delay_id)).status == DelayStatus.EXECUTED
    [following] = await engine.store.pending_delays(execution.execution_id)
    assert following.step_id == "step_4"


@pytest.mark.asyncio
async def test_delay_for_other_running_execution_is_inconsistent(engine, sender, clock):
    execution = await launch(engine, DRIP)
    [delay] = await engine.store.pending_delays(execution.execution_id)
    clock.now = delay.resume_at
    await engine.resume_from_delay(delay.delay_id)
    [following] = await engine.store.pending_delays(execution.execution_id)

    # the execution is running under a newer delay than the one being resumed
    stored = await engine.store.get(execution.execution_id)
    stored.status = ExecutionStatus.RUNNING
    await engine.store.commit(stored, now=clock())
    await engine.store.release_delay(delay.delay_id)

    assert await engine.resume_from_delay(delay.delay_id) is None
    failed = await engine.store.get_delay(delay.delay_id)
    assert failed.status == DelayStatus.FAILED
    assert "which is running" in failed.error
    assert sender.labels() == ["a1", "a2"]


@pytest.mark.asyncio
async def test_controls_reject_illegal_and_unknown(engine):
    execution = await launch(engine, act("only"))
    assert execution.status == ExecutionStatus.COMPLETED

    with pytest.raises(IllegalTransitionError):
        await engine.cancel_execution(execution.execution_id)
    with pytest.raises(IllegalTransitionError):
        await engine.resume_execution(execution.execution_id)
    with pytest.raises(ExecutionNotFoundError):
        await engine.pause_execution("missing")


@pytest.mark.asyncio
async def test_list_and_status(engine):
    done = await launch(engine, act("a"), trigger_id="t1")
    waiting = await launch(engine, DRIP, trigger_id="t2")

    delayed = await engine.list_executions(status=ExecutionStatus.DELAYED)
    assert [e.execution_id for e in delayed] == [waiting.execution_id]
    status = await engine.get_execution_status(done.execution_id)
    assert status.status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_terminal_execution_is_not_overwritten(engine, repository):
    execution = await launch(engine, act("a"))
    execution.status = ExecutionStatus.RUNNING

    assert await engine.store.commit(execution) is False
    stored = await repository.get_execution(execution.execution_id)
    assert stored.status == ExecutionStatus.COMPLETED


# Admission through the engine -------------------------------------------------


@pytest.mark.asyncio
async def test_once_per_user_prevents_second_execution(engine, rules, sender):
    rules.set_rule(
        "user_buys_subscription",
        {
            "and": [
                {"trigger": {"event": "user_buys_subscription", "reEntryRule": "once_per_user"}},
                {"send_email": {"template_id": "welcome", "label": "welcome"}},
            ]
        },
    )

    first = await engine.admit_trigger(
        "user_buys_subscription", {"subscription_id": "s1", "user_id": "u1", "product_package": "A"}
    )
    second = await engine.admit_trigger(
        "user_buys_subscription", {"subscription_id": "s2", "user_id": "u1", "product_package": "B"}
    )

    assert first.success and not first.duplicate_prevented
    assert second.success and second.duplicate_prevented
    assert second.execution_id is None

    executions = await engine.list_executions()
    assert len(executions) == 1
    assert executions[0].status == ExecutionStatus.COMPLETED
    assert sender.labels() == ["welcome"]


@pytest.mark.asyncio
async def test_same_trigger_admitted_twice_creates_one_row(engine, rules):
    rules.set_rule("user_buys_subscription", {"and": [{"delay": "1_day"}, act("later")]})
    raw = {"subscription_id": "s1", "user_id": "u1"}

    first = await engine.admit_trigger("user_buys_subscription", raw, start=False)
    second = await engine.admit_trigger("user_buys_subscription", raw, start=False)

    assert first.execution_id is not None
    assert second.duplicate_prevented
    executions = await engine.list_executions()
    assert [e.execution_id for e in executions] == [first.execution_id]
    assert executions[0].status == ExecutionStatus.PENDING


@pytest.mark.asyncio
async def test_engine_without_admission_refuses_triggers(repository):
    from paceflow.engine import WorkflowEngine
    from paceflow.executors import default_registry
    from paceflow.store import ExecutionStateStore

    engine = WorkflowEngine(ExecutionStateStore(repository), default_registry())
    with pytest.raises(RuntimeError):
        await engine.admit_trigger("user_created", {"user_id": "u1"})
