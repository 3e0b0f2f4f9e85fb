"""Builtin lifecycle triggers."""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

from ..config import PaceflowConfig
from ..contracts import TriggerContext
from .base import BaseTrigger, TriggerRegistry


class _Event(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    metadata: Dict[str, Any] = Field(default_factory=dict)

    def entity_data(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"metadata"}, exclude_none=True)


class SubscriptionEvent(_Event):
    subscription_id: str = Field(validation_alias=AliasChoices("subscription_id", "id"))
    user_id: str = Field(validation_alias=AliasChoices("user_id", "userId"))
    product_package: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("product_package", "subscription_package", "package"),
    )
    status: str = "active"
    email: Optional[str] = None
    amount: Optional[float] = None


class NewsletterSignupEvent(_Event):
    email: str
    signup_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("signup_id", "id"))
    user_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("user_id", "userId"))
    newsletter: Optional[str] = None

    @model_validator(mode="after")
    def _default_ids(self) -> "NewsletterSignupEvent":
        if "@" not in self.email:
            raise ValueError("email must contain '@'")
        self.user_id = self.user_id or self.email
        self.signup_id = self.signup_id or f"{self.newsletter or 'newsletter'}:{self.email}"
        return self


class UserCreatedEvent(_Event):
    user_id: str = Field(validation_alias=AliasChoices("user_id", "userId", "id"))
    email: Optional[str] = None
    name: Optional[str] = None


class UserBuysSubscriptionTrigger(BaseTrigger):
    trigger_type = "user_buys_subscription"
    event_model = SubscriptionEvent

    def build_context(self, event: SubscriptionEvent) -> TriggerContext:
        return TriggerContext(
            workflow_id=self.workflow_id,
            trigger_type=self.trigger_type,
            trigger_id=event.subscription_id,
            user_id=event.user_id,
            entity_data=event.entity_data(),
            metadata=event.metadata,
        )

    def should_execute(self, context: TriggerContext) -> bool:
        return context.entity_data.get("status", "active") == "active"


class UserSignsUpNewsletterTrigger(BaseTrigger):
    trigger_type = "user_signs_up_newsletter"
    event_model = NewsletterSignupEvent

    def build_context(self, event: NewsletterSignupEvent) -> TriggerContext:
        return TriggerContext(
            workflow_id=self.workflow_id,
            trigger_type=self.trigger_type,
            trigger_id=event.signup_id,
            user_id=event.user_id,
            entity_data=event.entity_data(),
            metadata=event.metadata,
        )


class UserCreatedTrigger(BaseTrigger):
    trigger_type = "user_created"
    event_model = UserCreatedEvent

    def build_context(self, event: UserCreatedEvent) -> TriggerContext:
        return TriggerContext(
            workflow_id=self.workflow_id,
            trigger_type=self.trigger_type,
            trigger_id=event.user_id,
            user_id=event.user_id,
            entity_data=event.entity_data(),
            metadata=event.metadata,
        )


BUILTIN_TRIGGERS = (UserBuysSubscriptionTrigger, UserSignsUpNewsletterTrigger, UserCreatedTrigger)


def default_triggers(config: Optional[PaceflowConfig] = None) -> TriggerRegistry:
    """Registry of the builtin triggers bound to their configured workflows.

    A trigger missing from ``config.triggers`` starts the workflow named
    after its trigger type; a disabled one is not registered.
    """
    bindings = config.triggers if config else {}
    registry = TriggerRegistry()
    for trigger_cls in BUILTIN_TRIGGERS:
        binding = bindings.get(trigger_cls.trigger_type)
        if binding is not None and not binding.enabled:
            continue
        registry.register(trigger_cls(binding.workflow_id if binding else trigger_cls.trigger_type))
    return registry
