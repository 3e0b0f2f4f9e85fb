"""Logging senders standing in for real email and SMS providers."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from ..contracts import RuntimeContext, utcnow
from .base import SenderResult

logger = logging.getLogger(__name__)


class _SafeDict(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render(template: str, values: Dict[str, Any]) -> str:
    """Fill ``{placeholders}`` from ``values``, leaving unknown ones intact."""
    return template.format_map(_SafeDict(values))


class LoggingEmailSender:
    """Logs emails instead of delivering them and keeps an outbox."""

    required_params = ()

    def __init__(self) -> None:
        self.outbox: List[Dict[str, Any]] = []

    async def send(
        self, action: str, params: Dict[str, Any], context: RuntimeContext
    ) -> SenderResult:
        recipient = params.get("to") or context.data.get("email")
        if not recipient:
            return SenderResult(success=False, error="no recipient for email")
        values = {**context.data, "user_id": context.user_id}
        record = {
            "channel": "email",
            "to": recipient,
            "subject": render(str(params.get("subject", "")), values),
            "template_id": params.get("template_id") or params.get("templateId"),
            "execution_id": context.execution_id,
            "sent_at": utcnow().isoformat(),
        }
        self.outbox.append(record)
        logger.info(
            f"Email {record['template_id'] or record['subject']!r} to {recipient} "
            f"(execution={context.execution_id})"
        )
        return SenderResult(success=True, audit=record)


class LoggingSmsSender:
    """Logs SMS messages instead of delivering them."""

    required_params = ("message",)

    def __init__(self) -> None:
        self.outbox: List[Dict[str, Any]] = []

    async def send(
        self, action: str, params: Dict[str, Any], context: RuntimeContext
    ) -> SenderResult:
        recipient = params.get("to") or context.data.get("phone")
        if not recipient:
            return SenderResult(success=False, error="no recipient for sms")
        record = {
            "channel": "sms",
            "to": recipient,
            "message": render(str(params["message"]), {**context.data, "user_id": context.user_id}),
            "execution_id": context.execution_id,
            "sent_at": utcnow().isoformat(),
        }
        self.outbox.append(record)
        logger.info(f"SMS to {recipient} (execution={context.execution_id})")
        return SenderResult(success=True, audit=record)
