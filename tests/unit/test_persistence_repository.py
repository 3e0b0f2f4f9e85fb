from datetime import datetime, timedelta, timezone

import pytest

import paceflow.persistence as persistence
from paceflow.compiler import compile_rule
from paceflow.errors import DuplicateAdmissionError, DuplicateDelayError
from paceflow.persistence import (
    DelayStatus,
    ExecutionState,
    ExecutionStatus,
    HistoryEntry,
    InMemoryExecutionRepository,
    PendingDelay,
    SQLiteExecutionRepository,
    WorkflowExecution,
    get_repository,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
PLAN = compile_rule({"and": [{"send_email": {}}, {"delay": "1_day"}, {"send_email": {}}]}, "wf")


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "memory":
        yield InMemoryExecutionRepository()
    else:
        repository = SQLiteExecutionRepository(tmp_path / "paceflow.db")
        yield repository
        repository.close()


def execution(trigger_id="t1", user_id="u1", created_at=T0, **kwargs):
    return WorkflowExecution(
        workflow_id="wf",
        trigger_type="user_buys_subscription",
        trigger_id=trigger_id,
        user_id=user_id,
        current_step_id="step_1",
        workflow_definition=PLAN,
        state=ExecutionState(context={"product_package": "A"}),
        created_at=created_at,
        updated_at=created_at,
        **kwargs,
    )


def delay(execution_id, step_id="step_2", resume_at=T0 + timedelta(days=1)):
    return PendingDelay(
        execution_id=execution_id,
        step_id=step_id,
        resume_step_id="step_3",
        resume_at=resume_at,
        context={"data": {"product_package": "A"}},
        created_at=T0,
    )


@pytest.mark.asyncio
async def test_repository_crud(repo):
    ex = execution()
    await repo.create_execution(ex)

    ex.status = ExecutionStatus.DELAYED
    ex.current_step_id = "step_3"
    ex.state.history.append(HistoryEntry(step_id="step_1", outcome="succeeded", timestamp=T0))
    pending = delay(ex.execution_id)
    assert await repo.save_execution(ex, pending)

    stored = await repo.get_execution(ex.execution_id)
    assert stored.status == ExecutionStatus.DELAYED
    assert stored.current_step_id == "step_3"
    assert stored.workflow_definition == PLAN
    assert [h.step_id for h in stored.state.history] == ["step_1"]
    assert stored.created_at == T0

    [listed] = await repo.list_delays(ex.execution_id)
    assert listed.delay_id == pending.delay_id
    assert listed.resume_at == pending.resume_at
    assert listed.context == {"data": {"product_package": "A"}}
    assert await repo.get_execution("missing") is None


@pytest.mark.asyncio
async def test_active_duplicate_is_rejected_until_terminal(repo):
    first = execution()
    await repo.create_execution(first)
    with pytest.raises(DuplicateAdmissionError):
        await repo.create_execution(execution())

    first.status = ExecutionStatus.COMPLETED
    await repo.save_execution(first)
    await repo.create_execution(execution())
    assert len(await repo.find_executions("wf", "u1")) == 2
    assert len(await repo.find_executions("wf", "u1", active_only=True)) == 1


@pytest.mark.asyncio
async def test_terminal_execution_refuses_writes(repo):
    ex = execution(status=ExecutionStatus.CANCELLED)
    await repo.create_execution(ex)
    ex.status = ExecutionStatus.RUNNING
    assert await repo.save_execution(ex) is False
    assert (await repo.get_execution(ex.execution_id)).status == ExecutionStatus.CANCELLED


@pytest.mark.asyncio
async def test_save_with_expected_status_is_compare_and_set(repo):
    ex = execution()
    await repo.create_execution(ex)

    ex.status = ExecutionStatus.RUNNING
    assert await repo.save_execution(ex, expected_status=ExecutionStatus.PENDING)

    paused = ex.model_copy(deep=True)
    paused.status = ExecutionStatus.PAUSED
    assert await repo.save_execution(paused, expected_status=ExecutionStatus.RUNNING)

    ex.current_step_id = "step_2"
    pending = delay(ex.execution_id)
    assert not await repo.save_execution(ex, pending, expected_status=ExecutionStatus.RUNNING)

    stored = await repo.get_execution(ex.execution_id)
    assert stored.status == ExecutionStatus.PAUSED
    assert stored.current_step_id == "step_1"
    assert await repo.list_delays(ex.execution_id) == []


@pytest.mark.asyncio
async def test_one_delay_per_execution_step(repo):
    ex = execution()
    await repo.create_execution(ex)
    await repo.save_execution(ex, delay(ex.execution_id))
    with pytest.raises(DuplicateDelayError):
        await repo.save_execution(ex, delay(ex.execution_id))


@pytest.mark.asyncio
async def test_due_delays_and_claims(repo):
    ex = execution()
    await repo.create_execution(ex)
    early = delay(ex.execution_id, "step_2", T0 + timedelta(hours=1))
    late = delay(ex.execution_id, "step_4", T0 + timedelta(days=3))
    await repo.save_execution(ex, early)
    await repo.save_execution(ex, late)

    due = await repo.due_delays(T0 + timedelta(days=1))
    assert [d.delay_id for d in due] == [early.delay_id]

    now = T0 + timedelta(days=1)
    assert await repo.claim_delay(early.delay_id, now)
    assert not await repo.claim_delay(early.delay_id, now)
    assert await repo.due_delays(now) == []

    released = await repo.release_stale_delays(now + timedelta(minutes=10))
    assert released == 1
    assert (await repo.get_delay(early.delay_id)).status == DelayStatus.PENDING

    await repo.update_delay_status(early.delay_id, DelayStatus.EXECUTED, executed_at=now)
    stored = await repo.get_delay(early.delay_id)
    assert stored.status == DelayStatus.EXECUTED
    assert stored.executed_at == now

    assert await repo.cancel_delays(ex.execution_id) == 1
    statuses = {d.step_id: d.status for d in await repo.list_delays(ex.execution_id)}
    assert statuses == {"step_2": DelayStatus.EXECUTED, "step_4": DelayStatus.CANCELLED}


@pytest.mark.asyncio
async def test_list_executions_filters(repo):
    a = execution("t1", created_at=T0)
    b = execution("t2", created_at=T0 + timedelta(minutes=1), status=ExecutionStatus.DELAYED)
    await repo.create_execution(a)
    await repo.create_execution(b)

    assert [e.execution_id for e in await repo.list_executions()] == [b.execution_id, a.execution_id]
    assert [e.execution_id for e in await repo.list_executions(status=ExecutionStatus.PENDING)] == [
        a.execution_id
    ]
    assert len(await repo.list_executions(limit=1)) == 1
    assert await repo.list_executions(workflow_id="other") == []


@pytest.mark.asyncio
async def test_sqlite_survives_reopen(tmp_path):
    path = tmp_path / "paceflow.db"
    first = SQLiteExecutionRepository(path)
    ex = execution()
    await first.create_execution(ex)
    await first.save_execution(ex, delay(ex.execution_id))
    first.close()

    second = SQLiteExecutionRepository(path)
    assert (await second.get_execution(ex.execution_id)).execution_id == ex.execution_id
    assert len(await second.due_delays(T0 + timedelta(days=2))) == 1
    second.close()


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    assert isinstance(get_repository(), InMemoryExecutionRepository)

    repo = get_repository(f"sqlite://{tmp_path / 'db.sqlite'}")
    assert isinstance(repo, SQLiteExecutionRepository)
    assert persistence._repository_instance is repo
    repo.close()

    monkeypatch.setenv("PACEFLOW_DATABASE_URL", f"sqlite://{tmp_path / 'env.sqlite'}")
    persistence._repository_instance = None
    repo = get_repository()
    assert isinstance(repo, SQLiteExecutionRepository)
    repo.close()

    with pytest.raises(ValueError):
        get_repository("mysql://nope")
