"""Core types for permission, question and plan arbitration."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, NewType

CorrelationId = NewType("CorrelationId", str)


def new_correlation_id() -> CorrelationId:
    """Always a fresh UUID; channel ids are never used as correlation keys."""
    return CorrelationId(str(uuid.uuid4()))


class PermissionResponse(IntEnum):
    """Answer to a tool permission request."""

    DENY = 0
    ALLOW = 1
    ALLOW_ALWAYS = 2

    @property
    def allowed(self) -> bool:
        return self is not PermissionResponse.DENY

    @classmethod
    def from_decision(cls, allow: bool, remember: bool) -> PermissionResponse:
        if not allow:
            return cls.DENY
        return cls.ALLOW_ALWAYS if remember else cls.ALLOW


class RequestKind(Enum):
    PERMISSION = "permission"
    QUESTION = "question"
    PLAN = "plan"


class Resolution(Enum):
    """How a pending request ended."""

    DECISION = "decision"  # Answered by the user
    REMEMBERED = "remembered"  # Answered from a stored allow-always
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"  # Channel interrupted or service shut down
    DISPATCH_FAILED = "dispatch_failed"  # Dialog could not be shown


@dataclass(frozen=True)
class PermissionDecision:
    """A resolved permission request, as reported to listeners."""

    tool_name: str
    inputs: dict[str, Any]
    response: PermissionResponse
    resolution: Resolution
    channel_id: str | None = None
    message: str | None = None
    updated_input: dict[str, Any] | None = None

    @property
    def allowed(self) -> bool:
        return self.response.allowed

