"""Routes dialog answers from the presentation layer to the PermissionService."""

from __future__ import annotations

from pydantic import ValidationError

from claudebridge.handlers.base import BaseMessageHandler
from claudebridge.logging import get_logger

log = get_logger("handlers")


class PermissionHandler(BaseMessageHandler):
    supported_types = (
        "permission_decision",
        "ask_user_question_response",
        "plan_approval_response",
    )

    def on_message(self, type: str, content: str) -> None:
        data = self.parse_object(type, content)
        if data is None:
            return

        service = self.context.permission_service
        submit = {
            "permission_decision": service.submit_permission_decision,
            "ask_user_question_response": service.submit_question_response,
            "plan_approval_response": service.submit_plan_response,
        }[type]

        try:
            accepted = submit(data)
        except ValidationError as e:
            log.warning("Invalid %s: %s", type, e)
            self.context.post("error", {"type": type, "error": f"Invalid {type}"})
            return

        if not accepted:
            # Timed out, cancelled or answered twice; the first answer stands
            log.info("Ignoring %s for request %s: not pending", type, data.get("requestId"))
