"""Rewind requests from the presentation layer."""

from __future__ import annotations

from typing import Any

from claudebridge.handlers.base import BaseMessageHandler
from claudebridge.logging import get_logger

log = get_logger("handlers")


class RewindHandler(BaseMessageHandler):
    """Handles ``rewind_files`` and posts a ``rewind_result``.

    Payload: ``{"sessionId": ..., "userMessageId": ..., "cwd": ...}``.
    """

    supported_types = ("rewind_files",)

    def on_message(self, type: str, content: str) -> None:
        data = self.parse_object(type, content)
        if data is None:
            return

        session_id = data.get("sessionId") or self.context.session_ids.get(data.get("channelId", ""))
        user_message_id = data.get("userMessageId")
        if not session_id or not user_message_id:
            self.context.post(
                "rewind_result",
                {"success": False, "error": "sessionId and userMessageId are required"},
            )
            return

        cwd = data.get("cwd") or self.context.default_cwd
        self.context.submit(self._rewind(session_id, user_message_id, cwd))

    async def _rewind(self, session_id: str, user_message_id: str, cwd: str | None) -> None:
        log.info("Rewinding session %s to message %s", session_id, user_message_id)
        result: dict[str, Any] = await self.context.bridge.rewind_files(session_id, user_message_id, cwd)
        self.context.post("rewind_result", result)
