"""HTTP webhook sender."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from ..contracts import RuntimeContext
from .base import SenderResult

logger = logging.getLogger(__name__)


class WebhookSender:
    """POST the step parameters and execution data to a URL."""

    required_params = ("url",)

    def __init__(
        self, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        self.timeout = timeout
        self._transport = transport

    async def send(
        self, action: str, params: Dict[str, Any], context: RuntimeContext
    ) -> SenderResult:
        url = params["url"]
        method = str(params.get("method", "POST")).upper()
        body = {
            "execution_id": context.execution_id,
            "workflow_id": context.workflow_id,
            "user_id": context.user_id,
            "data": context.data,
            "payload": params.get("payload", {}),
        }
        try:
            async with httpx.AsyncClient(
                timeout=params.get("timeout", self.timeout), transport=self._transport
            ) as client:
                response = await client.request(
                    method, url, json=body, headers=params.get("headers")
                )
        except httpx.HTTPError as exc:
            logger.error(f"Webhook {url} failed for execution {context.execution_id}: {exc}")
            return SenderResult(success=False, error=f"webhook request failed: {exc}")

        audit = {"channel": "webhook", "url": url, "status_code": response.status_code}
        if response.status_code >= 400:
            return SenderResult(
                success=False, audit=audit, error=f"webhook returned {response.status_code}"
            )
        return SenderResult(success=True, audit=audit)
