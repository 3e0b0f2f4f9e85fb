from .base import BaseTrigger, TriggerRegistry
from .builtin import (
    UserBuysSubscriptionTrigger,
    UserCreatedTrigger,
    UserSignsUpNewsletterTrigger,
    default_triggers,
)

__all__ = [
    "BaseTrigger",
    "TriggerRegistry",
    "UserBuysSubscriptionTrigger",
    "UserCreatedTrigger",
    "UserSignsUpNewsletterTrigger",
    "default_triggers",
]
