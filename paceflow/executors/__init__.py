from .action import ActionExecutor
from .base import StepExecutor
from .condition import ConditionExecutor
from .delay import DelayExecutor
from .end import EndExecutor
from .registry import ExecutorRegistry, default_registry
from .shared_flow import SharedFlowExecutor

__all__ = [
    "StepExecutor",
    "ActionExecutor",
    "DelayExecutor",
    "ConditionExecutor",
    "EndExecutor",
    "SharedFlowExecutor",
    "ExecutorRegistry",
    "default_registry",
]
