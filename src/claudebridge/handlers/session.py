"""Send, interrupt and restart requests from the presentation layer."""

from __future__ import annotations

import json
from typing import Any

from claudebridge.bridge.base import SendRequest
from claudebridge.bridge.result import SDKResult
from claudebridge.handlers.base import BaseMessageHandler, HandlerContext
from claudebridge.logging import get_logger

log = get_logger("handlers")

DEFAULT_CHANNEL = "default"


class TranscriptForwarder:
    """MessageCallback that posts transcript updates to the outbox."""

    def __init__(self, context: HandlerContext, channel_id: str) -> None:
        self.context = context
        self.channel_id = channel_id

    def on_message(self, type: str, content: str) -> None:
        if type == "session_id":
            self.context.session_ids[self.channel_id] = content
        self.context.post("message", {"channelId": self.channel_id, "type": type, "content": content})

    def on_error(self, error: str) -> None:
        self.context.post("error", {"channelId": self.channel_id, "error": error})

    def on_complete(self, result: SDKResult) -> None:
        payload = result.to_dict()
        payload["channelId"] = self.channel_id
        self.context.post("complete", payload)


class SessionHandler(BaseMessageHandler):
    """Drives the bridge for one or more channels.

    ``send_message`` content is either plain text or a JSON object such as
    ``{"channelId": "c1", "message": "hi", "cwd": "/repo", "model": "..."}``.
    """

    supported_types = (
        "send_message",
        "send_message_with_attachments",
        "interrupt_session",
        "restart_session",
    )

    def on_message(self, type: str, content: str) -> None:
        if type in ("send_message", "send_message_with_attachments"):
            self._send(type, content)
            return

        data = self._parse_optional(content)
        if data is None:
            # Plain-text content names the channel
            data = {"channelId": content.strip()} if content and content.strip() else {}
        channel_id = data.get("channelId") or DEFAULT_CHANNEL
        if type == "interrupt_session":
            self.context.submit(self.context.bridge.interrupt_channel(channel_id))
        else:
            self.context.session_ids.pop(channel_id, None)
            self.context.submit(self._restart(channel_id, data.get("cwd")))

    def _send(self, type: str, content: str) -> None:
        data = self._parse_optional(content)
        if data is None:
            data = {"message": content}

        message = data.get("message")
        if not isinstance(message, str) or not message.strip():
            self.context.post("error", {"type": type, "error": "Message is empty"})
            return

        channel_id = data.get("channelId") or DEFAULT_CHANNEL
        request = SendRequest(
            message=message,
            session_id=data.get("sessionId") or self.context.session_ids.get(channel_id),
            cwd=data.get("cwd") or self.context.default_cwd,
            permission_mode=data.get("permissionMode"),
            model=data.get("model"),
            attachments=data.get("attachments") or [],
            opened_files=data.get("openedFiles"),
            agent_prompt=data.get("agentPrompt"),
            streaming=data.get("streaming"),
        )
        if type == "send_message_with_attachments" and not request.attachments:
            log.info("send_message_with_attachments without attachments; sending as text")

        self.context.submit(self._start(channel_id, request))

    async def _start(self, channel_id: str, request: SendRequest) -> None:
        bridge = self.context.bridge
        bridge.send_message(channel_id, request, TranscriptForwarder(self.context, channel_id))

    async def _restart(self, channel_id: str, cwd: str | None) -> None:
        reply = await self.context.bridge.restart_channel(channel_id, cwd=cwd)
        self.context.post("session_restarted", reply)

    @staticmethod
    def _parse_optional(content: str) -> dict[str, Any] | None:
        """JSON object payloads are structured; anything else is plain text."""
        text = content.strip() if content else ""
        if not text.startswith("{"):
            return None
        try:
            data = json.loads(text)
        except ValueError:
            return None
        return data if isinstance(data, dict) else None
