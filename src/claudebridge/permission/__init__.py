"""Permission, question and plan-approval arbitration."""

from claudebridge.permission.models import (
    Dialog,
    PermissionDecisionMessage,
    PermissionDialog,
    PlanDialog,
    PlanResponseMessage,
    QuestionDialog,
    QuestionResponseMessage,
)
from claudebridge.permission.service import (
    DialogPresenter,
    PermissionService,
    PresenterNotReady,
)
from claudebridge.permission.types import (
    CorrelationId,
    PermissionDecision,
    PermissionResponse,
    RequestKind,
    Resolution,
    new_correlation_id,
)

__all__ = [
    "CorrelationId",
    "Dialog",
    "DialogPresenter",
    "PermissionDecision",
    "PermissionDecisionMessage",
    "PermissionDialog",
    "PermissionResponse",
    "PermissionService",
    "PlanDialog",
    "PlanResponseMessage",
    "PresenterNotReady",
    "QuestionDialog",
    "QuestionResponseMessage",
    "RequestKind",
    "Resolution",
    "new_correlation_id",
]
