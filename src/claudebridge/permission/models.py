"""Wire models exchanged with the presentation layer.

Host -> presentation: ``*Dialog`` ("show this dialog").
Presentation -> host: ``*Response`` / ``PermissionDecisionMessage``
("here is the decision"). JSON uses camelCase keys.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class WireModel(BaseModel):
    """Base model with populate_by_name enabled."""

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class PermissionDialog(WireModel):
    type: Literal["permission_request"] = "permission_request"
    request_id: str = Field(alias="requestId")
    channel_id: str | None = Field(default=None, alias="channelId")
    tool_name: str = Field(alias="toolName")
    inputs: dict[str, Any] = Field(default_factory=dict)
    suggestions: list[Any] | None = None


class QuestionDialog(WireModel):
    type: Literal["ask_user_question"] = "ask_user_question"
    request_id: str = Field(alias="requestId")
    channel_id: str | None = Field(default=None, alias="channelId")
    questions: list[Any] = Field(default_factory=list)


class PlanDialog(WireModel):
    type: Literal["plan_approval"] = "plan_approval"
    request_id: str = Field(alias="requestId")
    channel_id: str | None = Field(default=None, alias="channelId")
    plan: Any = None
    suggestions: list[Any] | None = None


Dialog = PermissionDialog | QuestionDialog | PlanDialog


class PermissionDecisionMessage(WireModel):
    request_id: str = Field(alias="requestId")
    allow: bool = False
    remember: bool = False
    reject_message: str | None = Field(default=None, alias="rejectMessage")
    updated_input: dict[str, Any] | None = Field(default=None, alias="updatedInput")


class QuestionResponseMessage(WireModel):
    request_id: str = Field(alias="requestId")
    cancelled: bool = False
    answers: dict[str, Any] | None = None


class PlanResponseMessage(WireModel):
    request_id: str = Field(alias="requestId")
    cancelled: bool = False
    approved: bool = False
    new_mode: str | None = Field(default=None, alias="newMode")
    feedback: str | None = None
