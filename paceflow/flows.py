"""Named, reusable action sequences invoked by ``shared_flow`` steps."""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from .contracts import ActionPayload


class SharedFlow(BaseModel):
    name: str
    title: str
    actions: List[ActionPayload] = Field(default_factory=list)


def _slug(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")
    return slug[: -len("_flow")] if slug.endswith("_flow") else slug


def _email(template_id: str, subject: str) -> ActionPayload:
    return ActionPayload(
        action="send_email", params={"template_id": template_id, "subject": subject}
    )


DEFAULT_FLOWS: List[SharedFlow] = [
    SharedFlow(
        name="welcome_follow_up",
        title="Welcome Follow-up Flow",
        actions=[
            _email("onboarding_materials", "Getting started with {product}"),
            _email("dashboard_tour", "Your dashboard is ready"),
        ],
    ),
    SharedFlow(
        name="engagement_nudge",
        title="Engagement Nudge Flow",
        actions=[_email("engagement_nudge", "We have something for you")],
    ),
    SharedFlow(
        name="value_highlight",
        title="Value Highlight Flow",
        actions=[_email("value_highlight", "Make the most of your subscription")],
    ),
    SharedFlow(
        name="newsletter_welcome",
        title="Newsletter Welcome Flow",
        actions=[_email("newsletter_welcome", "Welcome to our newsletter")],
    ),
]


class SharedFlowRegistry:
    """Fixed set of shared flows, looked up by name or display title."""

    def __init__(self, flows: Optional[Iterable[SharedFlow]] = None) -> None:
        self._flows: Dict[str, SharedFlow] = {}
        for flow in DEFAULT_FLOWS if flows is None else flows:
            self.register(flow)

    def register(self, flow: SharedFlow) -> None:
        self._flows[_slug(flow.name)] = flow

    def get(self, name: str) -> Optional[SharedFlow]:
        return self._flows.get(_slug(name))

    def names(self) -> List[str]:
        return sorted(flow.name for flow in self._flows.values())
