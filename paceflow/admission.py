"""Trigger admission: validate, dedup and create executions."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .compiler import RuleCompiler
from .constants import PRODUCT_KEYS
from .contracts import AdmissionResult, Plan, TriggerContext
from .errors import CompileError, DuplicateAdmissionError, ValidationError
from .executors import ExecutorRegistry
from .persistence import ExecutionState, ExecutionStatus, WorkflowExecution
from .rules import RuleSource
from .store import ExecutionStateStore
from .triggers import TriggerRegistry

logger = logging.getLogger(__name__)


def product_of(data: Dict[str, Any]) -> Optional[Any]:
    for key in PRODUCT_KEYS:
        if data.get(key) is not None:
            return data[key]
    return None


class AdmissionController:
    """Turns raw trigger events into pending executions.

    Compilation happens here and only here: the resulting plan is copied
    onto the execution so later rule edits never reach it.
    """

    def __init__(
        self,
        triggers: TriggerRegistry,
        rules: RuleSource,
        store: ExecutionStateStore,
        executors: ExecutorRegistry,
        compiler: Optional[RuleCompiler] = None,
    ) -> None:
        self.triggers = triggers
        self.rules = rules
        self.store = store
        self.executors = executors
        self.compiler = compiler or RuleCompiler()

    async def process(self, trigger_type: str, raw: Dict[str, Any]) -> AdmissionResult:
        trigger = self.triggers.get(trigger_type)
        if trigger is None:
            logger.warning(f"Rejected event for unregistered trigger type {trigger_type}")
            return AdmissionResult(
                success=False,
                trigger_type=trigger_type,
                error=f"Trigger type '{trigger_type}' is not registered",
            )

        try:
            context = trigger.validate(raw)
        except ValidationError as exc:
            logger.warning(f"Invalid {trigger_type} event: {exc}")
            return AdmissionResult(
                success=False, trigger_type=trigger_type, error=str(exc), errors=exc.errors
            )
        context.workflow_id = trigger.get_workflow_id(context)

        if not trigger.should_execute(context):
            logger.info(
                f"Trigger {trigger_type}:{context.trigger_id} skipped for workflow {context.workflow_id}"
            )
            return self._result(context, skipped=True)

        definition = await self.rules.get_rule(context.workflow_id)
        if definition is None:
            return self._failure(context, f"no rule defined for workflow '{context.workflow_id}'")
        try:
            plan = self.compiler.compile(definition.rule, context.workflow_id, definition.version)
        except CompileError as exc:
            logger.error(f"Rule for workflow {context.workflow_id} does not compile: {exc}")
            return self._failure(context, str(exc), [str(exc)])
        report = self.executors.validate_plan(plan)
        if not report.is_valid:
            logger.error(
                f"Rule for workflow {context.workflow_id} failed validation: {report.errors}"
            )
            return self._failure(context, "plan validation failed", report.errors)
        if plan.trigger_event and plan.trigger_event != trigger_type:
            logger.warning(
                f"Workflow {plan.workflow_id} declares trigger {plan.trigger_event} "
                f"but was admitted from {trigger_type}"
            )

        if await self._blocked_by_reentry(plan, context):
            logger.warning(
                f"Duplicate prevented by {plan.re_entry_rule} for user {context.user_id} "
                f"on workflow {context.workflow_id}"
            )
            return self._result(context, duplicate_prevented=True)

        execution = WorkflowExecution(
            execution_id=context.execution_id,
            workflow_id=context.workflow_id,
            trigger_type=context.trigger_type,
            trigger_id=context.trigger_id,
            user_id=context.user_id,
            status=ExecutionStatus.PENDING,
            current_step_id=plan.steps[0].id,
            state=ExecutionState(context=dict(context.entity_data)),
            workflow_definition=plan,
            metadata={**context.metadata, "re_entry_rule": plan.re_entry_rule},
            created_at=context.timestamp,
            updated_at=context.timestamp,
        )
        try:
            await self.store.create(execution)
        except DuplicateAdmissionError as exc:
            logger.warning(f"Duplicate admission for {trigger_type}:{context.trigger_id}: {exc}")
            return self._result(context, duplicate_prevented=True)
        return self._result(context, execution_id=execution.execution_id)

    async def _blocked_by_reentry(self, plan: Plan, context: TriggerContext) -> bool:
        rule = plan.re_entry_rule
        if rule == "always":
            return False
        if rule == "once_only":
            existing = await self.store.find(
                context.workflow_id,
                context.user_id,
                trigger_type=context.trigger_type,
                trigger_id=context.trigger_id,
            )
            return bool(existing)

        existing = [
            e
            for e in await self.store.find(context.workflow_id, context.user_id)
            if e.status != ExecutionStatus.CANCELLED
        ]
        if rule == "once_per_user":
            return bool(existing)
        if rule == "once_per_product":
            product = product_of(context.entity_data)
            return any(product_of(e.state.context) == product for e in existing)
        return False

    @staticmethod
    def _result(context: TriggerContext, **kwargs: Any) -> AdmissionResult:
        return AdmissionResult(
            success=True,
            trigger_type=context.trigger_type,
            workflow_id=context.workflow_id,
            context=context,
            **kwargs,
        )

    @staticmethod
    def _failure(
        context: TriggerContext, error: str, errors: Optional[List[str]] = None
    ) -> AdmissionResult:
        return AdmissionResult(
            success=False,
            trigger_type=context.trigger_type,
            workflow_id=context.workflow_id,
            error=error,
            errors=errors or [],
            context=context,
        )
