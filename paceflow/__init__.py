"""paceflow: durable lifecycle workflows driven by rule trees."""

from .compiler import RuleCompiler, compile_rule
from .contracts import AdmissionResult, Plan, Step, StepResult, TriggerContext
from .engine import WorkflowEngine
from .inbox import TriggerEvent, get_inbox
from .persistence import ExecutionStatus, WorkflowExecution, get_repository
from .poller import Poller
from .rules import FileRuleSource, InMemoryRuleSource
from .runtime import build_engine, build_poller
from .store import ExecutionStateStore

__version__ = "0.1.0"
__all__ = [
    "RuleCompiler",
    "compile_rule",
    "Plan",
    "Step",
    "StepResult",
    "TriggerContext",
    "AdmissionResult",
    "WorkflowEngine",
    "ExecutionStateStore",
    "ExecutionStatus",
    "WorkflowExecution",
    "TriggerEvent",
    "Poller",
    "FileRuleSource",
    "InMemoryRuleSource",
    "build_engine",
    "build_poller",
    "get_repository",
    "get_inbox",
]
