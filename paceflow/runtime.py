"""Explicit wiring of the engine, admission controller and poller."""

from __future__ import annotations

from typing import Optional

from .admission import AdmissionController
from .config import PaceflowConfig, load_config
from .contracts import utcnow
from .engine import Clock, WorkflowEngine
from .executors import ExecutorRegistry, default_registry
from .flows import SharedFlowRegistry
from .inbox import TriggerInbox, get_inbox
from .persistence import ExecutionRepository, get_repository
from .poller import Poller
from .rules import FileRuleSource, InMemoryRuleSource, RuleSource
from .senders import ActionDispatcher
from .store import ExecutionStateStore
from .triggers import TriggerRegistry, default_triggers


def build_engine(
    config: Optional[PaceflowConfig] = None,
    repository: Optional[ExecutionRepository] = None,
    rules: Optional[RuleSource] = None,
    dispatcher: Optional[ActionDispatcher] = None,
    flows: Optional[SharedFlowRegistry] = None,
    triggers: Optional[TriggerRegistry] = None,
    executors: Optional[ExecutorRegistry] = None,
    clock: Clock = utcnow,
) -> WorkflowEngine:
    """Compose an engine with its admission controller.

    Anything not passed in is built from ``config``: the repository from
    ``database_url``, rules from ``rules_path`` and trigger bindings from
    ``triggers``.
    """
    config = config or load_config()
    if repository is None:
        repository = get_repository(config.database_url) if config.database_url else get_repository()
    if rules is None:
        rules = FileRuleSource(config.rules_path) if config.rules_path else InMemoryRuleSource()
    executors = executors or default_registry(dispatcher, flows)
    store = ExecutionStateStore(repository)
    admission = AdmissionController(
        triggers or default_triggers(config), rules, store, executors
    )
    return WorkflowEngine(store, executors, config.engine, admission=admission, clock=clock)


def build_poller(
    engine: WorkflowEngine,
    config: Optional[PaceflowConfig] = None,
    inbox: Optional[TriggerInbox] = None,
) -> Poller:
    config = config or load_config()
    if inbox is None:
        inbox = get_inbox(config.inbox_url) if config.inbox_url else get_inbox()
    return Poller(engine, inbox, config.poller)
