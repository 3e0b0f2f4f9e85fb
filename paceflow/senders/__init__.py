from .base import ActionDispatcher, ActionSender, SenderResult
from .console import LoggingEmailSender, LoggingSmsSender
from .webhook import WebhookSender


def default_dispatcher() -> ActionDispatcher:
    """Dispatcher wired with the logging senders and the webhook sender."""
    return ActionDispatcher(
        {
            "send_email": LoggingEmailSender(),
            "send_sms": LoggingSmsSender(),
            "webhook": WebhookSender(),
        }
    )


__all__ = [
    "ActionDispatcher",
    "ActionSender",
    "SenderResult",
    "LoggingEmailSender",
    "LoggingSmsSender",
    "WebhookSender",
    "default_dispatcher",
]
