"""Shared fixtures: a controllable clock, recording senders and engine wiring."""

from datetime import datetime, timedelta, timezone

import pytest

import paceflow.inbox as inbox_module
import paceflow.persistence as persistence
from paceflow.config import EngineConfig, PaceflowConfig
from paceflow.contracts import RuntimeContext
from paceflow.executors import default_registry
from paceflow.inbox import InMemoryTriggerInbox
from paceflow.persistence import InMemoryExecutionRepository
from paceflow.rules import InMemoryRuleSource
from paceflow.runtime import build_engine, build_poller
from paceflow.senders import ActionDispatcher, SenderResult


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSender:
    """Records every call; fails while ``fail`` is set.

    ``on_send`` is awaited with the params after each call is recorded.
    """

    required_params = ()

    def __init__(self):
        self.calls = []
        self.fail = False
        self.on_send = None

    async def send(self, action, params, context: RuntimeContext):
        self.calls.append({"action": action, "params": dict(params), "user_id": context.user_id})
        if self.on_send is not None:
            await self.on_send(params)
        if self.fail:
            return SenderResult(success=False, error="provider unavailable")
        return SenderResult(success=True, audit={"action": action, **params})

    def labels(self):
        return [call["params"].get("label") for call in self.calls]


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch, tmp_path):
    for name in (
        "PACEFLOW_CONFIG",
        "PACEFLOW_DATABASE_URL",
        "DATABASE_URL",
        "PACEFLOW_INBOX_URL",
        "PACEFLOW_RULES_PATH",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    persistence._repository_instance = None
    inbox_module._inbox_instance = None
    yield
    persistence._repository_instance = None
    inbox_module._inbox_instance = None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def dispatcher(sender):
    return ActionDispatcher({name: sender for name in ("send_email", "send_sms", "webhook", "notify")})


@pytest.fixture
def rules():
    return InMemoryRuleSource()


@pytest.fixture
def repository():
    return InMemoryExecutionRepository()


@pytest.fixture
def inbox():
    return InMemoryTriggerInbox()


@pytest.fixture
def engine(repository, rules, dispatcher, clock):
    config = PaceflowConfig(engine=EngineConfig(max_retries=3, retry_jitter=0.0))
    return build_engine(
        config,
        repository=repository,
        rules=rules,
        executors=default_registry(dispatcher),
        clock=clock,
    )


@pytest.fixture
def poller(engine, inbox):
    return build_poller(engine, PaceflowConfig(), inbox=inbox)
