"""Tests for trigger validation and admission."""

import pytest

from paceflow.admission import AdmissionController
from paceflow.errors import ValidationError
from paceflow.executors import default_registry
from paceflow.persistence import ExecutionStatus
from paceflow.store import ExecutionStateStore
from paceflow.triggers import (
    UserBuysSubscriptionTrigger,
    UserSignsUpNewsletterTrigger,
    default_triggers,
)

SUBSCRIPTION = {"subscription_id": "s1", "user_id": "u1", "product_package": "A"}


def welcome(re_entry=None):
    trigger = {"event": "user_buys_subscription"}
    if re_entry:
        trigger["reEntryRule"] = re_entry
    return {"and": [{"trigger": trigger}, {"send_email": {"template_id": "welcome"}}]}


@pytest.fixture
def controller(repository, rules, dispatcher):
    return AdmissionController(
        default_triggers(), rules, ExecutionStateStore(repository), default_registry(dispatcher)
    )


def test_subscription_trigger_normalizes_aliases():
    trigger = UserBuysSubscriptionTrigger("wf")
    context = trigger.validate(
        {"id": "s9", "userId": "u9", "subscription_package": "B", "metadata": {"source": "stripe"}}
    )
    assert context.trigger_id == "s9"
    assert context.user_id == "u9"
    assert context.entity_data["product_package"] == "B"
    assert context.metadata == {"source": "stripe"}
    assert "metadata" not in context.entity_data


def test_subscription_trigger_reports_missing_fields():
    with pytest.raises(ValidationError) as excinfo:
        UserBuysSubscriptionTrigger("wf").validate({"product_package": "A"})
    assert len(excinfo.value.errors) == 2
    assert any(error.startswith("subscription_id") for error in excinfo.value.errors)


def test_newsletter_trigger_defaults_ids():
    context = UserSignsUpNewsletterTrigger("wf").validate(
        {"email": "ada@acme.io", "newsletter": "weekly"}
    )
    assert context.user_id == "ada@acme.io"
    assert context.trigger_id == "weekly:ada@acme.io"

    with pytest.raises(ValidationError):
        UserSignsUpNewsletterTrigger("wf").validate({"email": "not-an-email"})


@pytest.mark.asyncio
async def test_admission_creates_pending_execution(controller, rules, repository):
    rules.set_rule("user_buys_subscription", welcome())

    result = await controller.process("user_buys_subscription", {**SUBSCRIPTION, "plan": "gold"})

    assert result.success and result.execution_id
    execution = await repository.get_execution(result.execution_id)
    assert execution.status == ExecutionStatus.PENDING
    assert execution.current_step_id == "step_1"
    assert execution.state.context["plan"] == "gold"
    assert execution.metadata["re_entry_rule"] == "always"
    assert execution.workflow_definition.version == "1"


@pytest.mark.asyncio
async def test_rule_edits_do_not_reach_existing_executions(controller, rules, repository):
    rules.set_rule("user_buys_subscription", welcome())
    first = await controller.process("user_buys_subscription", SUBSCRIPTION)

    rules.set_rule("user_buys_subscription", {"send_sms": {"message": "hi"}})
    second = await controller.process(
        "user_buys_subscription", {**SUBSCRIPTION, "subscription_id": "s2"}
    )

    old = await repository.get_execution(first.execution_id)
    new = await repository.get_execution(second.execution_id)
    assert old.workflow_definition.steps[0].payload.action == "send_email"
    assert new.workflow_definition.steps[0].payload.action == "send_sms"
    assert new.workflow_definition.version == "2"


@pytest.mark.asyncio
async def test_rejections(controller, rules):
    unknown = await controller.process("user_deleted", {})
    assert not unknown.success
    assert "not registered" in unknown.error

    invalid = await controller.process("user_buys_subscription", {"user_id": "u1"})
    assert not invalid.success
    assert invalid.errors

    no_rule = await controller.process("user_buys_subscription", SUBSCRIPTION)
    assert not no_rule.success
    assert no_rule.error == "no rule defined for workflow 'user_buys_subscription'"

    rules.set_rule("user_buys_subscription", {"teleport": {}})
    broken = await controller.process("user_buys_subscription", SUBSCRIPTION)
    assert not broken.success
    assert "unknown node" in broken.error

    rules.set_rule("user_buys_subscription", {"action": {"name": "fax"}})
    invalid_plan = await controller.process("user_buys_subscription", SUBSCRIPTION)
    assert invalid_plan.error == "plan validation failed"
    assert invalid_plan.errors == ["step_1.payload.action: unknown action 'fax'"]


@pytest.mark.asyncio
async def test_inactive_subscription_is_skipped(controller, rules, repository):
    rules.set_rule("user_buys_subscription", welcome())
    result = await controller.process("user_buys_subscription", {**SUBSCRIPTION, "status": "past_due"})

    assert result.success and result.skipped
    assert await repository.list_executions() == []


@pytest.mark.asyncio
async def test_once_only_allows_new_trigger_ids(controller, rules, repository):
    rules.set_rule("user_buys_subscription", welcome("once_only"))
    first = await controller.process("user_buys_subscription", SUBSCRIPTION)
    execution = await repository.get_execution(first.execution_id)
    execution.status = ExecutionStatus.COMPLETED
    await repository.save_execution(execution)

    again = await controller.process("user_buys_subscription", SUBSCRIPTION)
    other = await controller.process("user_buys_subscription", {**SUBSCRIPTION, "subscription_id": "s2"})

    assert again.duplicate_prevented
    assert other.execution_id is not None


@pytest.mark.asyncio
async def test_once_per_product(controller, rules):
    rules.set_rule("user_buys_subscription", welcome("once_per_product"))
    first = await controller.process("user_buys_subscription", SUBSCRIPTION)
    same_product = await controller.process(
        "user_buys_subscription", {**SUBSCRIPTION, "subscription_id": "s2"}
    )
    other_product = await controller.process(
        "user_buys_subscription",
        {**SUBSCRIPTION, "subscription_id": "s3", "product_package": "B"},
    )

    assert first.execution_id
    assert same_product.duplicate_prevented
    assert other_product.execution_id and not other_product.duplicate_prevented


@pytest.mark.asyncio
async def test_cancelled_executions_do_not_block_once_per_user(controller, rules, repository):
    rules.set_rule("user_buys_subscription", welcome("once_per_user"))
    first = await controller.process("user_buys_subscription", SUBSCRIPTION)
    execution = await repository.get_execution(first.execution_id)
    execution.status = ExecutionStatus.CANCELLED
    await repository.save_execution(execution)

    second = await controller.process(
        "user_buys_subscription", {**SUBSCRIPTION, "subscription_id": "s2"}
    )
    assert second.execution_id and not second.duplicate_prevented
