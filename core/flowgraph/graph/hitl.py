"""
Human-in-the-loop review contract.

A node with ``data.hitl.enabled`` computes a draft, then the executor hands an
HITLRequest to the caller and suspends until an HITLResponse (or a timeout)
comes back. The response action decides what flows downstream:

- approve: the draft
- modify:  the reviewer's replacement content
- reject:  the draft, routed through the node's ``rejected`` handle
- skip:    the node's input, unchanged
"""

import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class HITLMode(StrEnum):
    """What the reviewer is asked to do."""

    APPROVAL = "approval"  # accept or reject the draft
    INPUT = "input"  # supply content
    REVIEW = "review"  # inspect and optionally edit the draft


class HITLAction(StrEnum):
    APPROVE = "approve"
    REJECT = "reject"
    MODIFY = "modify"
    SKIP = "skip"


ALLOWED_ACTIONS: dict[HITLMode, list[HITLAction]] = {
    HITLMode.APPROVAL: [HITLAction.APPROVE, HITLAction.REJECT, HITLAction.SKIP],
    HITLMode.INPUT: [HITLAction.MODIFY, HITLAction.SKIP],
    HITLMode.REVIEW: [HITLAction.APPROVE, HITLAction.MODIFY, HITLAction.REJECT, HITLAction.SKIP],
}


class HITLOption(BaseModel):
    id: str
    label: str
    action: HITLAction = HITLAction.APPROVE


class HITLConfig(BaseModel):
    """Per-node review settings, stored under ``node.data["hitl"]``."""

    enabled: bool = False
    mode: HITLMode = HITLMode.APPROVAL
    prompt: str | None = None
    options: list[HITLOption] = Field(default_factory=list)
    timeout: float | None = Field(default=None, gt=0)  # seconds
    default_action: HITLAction | None = None

    model_config = {"extra": "allow"}


@dataclass
class HITLRequest:
    """What the caller receives while a run is AWAITING_HUMAN_INPUT."""

    id: str
    node_id: str
    node_label: str
    mode: HITLMode
    prompt: str
    content: str  # the node's draft output
    input: str = ""
    options: list[HITLOption] = field(default_factory=list)
    allowed_actions: list[HITLAction] = field(default_factory=list)
    timeout: float | None = None
    branch_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def expires_at(self) -> datetime | None:
        if self.timeout is None:
            return None
        return self.created_at + timedelta(seconds=self.timeout)

    @property
    def message(self) -> str:
        return self.prompt

    def to_dict(self) -> dict[str, Any]:
        expires_at = self.expires_at
        return {
            "id": self.id,
            "node_id": self.node_id,
            "node_label": self.node_label,
            "mode": self.mode.value,
            "prompt": self.prompt,
            "content": self.content,
            "input": self.input,
            "options": [option.model_dump() for option in self.options],
            "allowed_actions": [action.value for action in self.allowed_actions],
            "timeout": self.timeout,
            "branch_id": self.branch_id,
            "created_at": self.created_at.isoformat(),
            "expires_at": expires_at.isoformat() if expires_at else None,
        }


@dataclass
class HITLResponse:
    """The reviewer's decision."""

    action: HITLAction
    modified_content: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    request_id: str = ""
    responded_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "action": self.action.value,
            "modified_content": self.modified_content,
            "metadata": self.metadata,
            "responded_by": self.responded_by,
        }


HITLCallback = Callable[[HITLRequest], Awaitable[HITLResponse]]

DEFAULT_PROMPTS = {
    HITLMode.APPROVAL: "Approve this output to continue.",
    HITLMode.INPUT: "Provide the content for this step.",
    HITLMode.REVIEW: "Review and optionally edit this output.",
}


def generate_hitl_request_id() -> str:
    return f"hitl_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def build_request(
    config: HITLConfig,
    node_id: str,
    node_label: str,
    draft: str,
    node_input: str,
    branch_id: str | None = None,
) -> HITLRequest:
    return HITLRequest(
        id=generate_hitl_request_id(),
        node_id=node_id,
        node_label=node_label,
        mode=config.mode,
        prompt=config.prompt or DEFAULT_PROMPTS[config.mode],
        content=draft,
        input=node_input,
        options=list(config.options),
        allowed_actions=list(ALLOWED_ACTIONS[config.mode]),
        timeout=config.timeout,
        branch_id=branch_id,
    )
