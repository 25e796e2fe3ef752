"""Message handler contract and shared context."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Coroutine
from typing import TYPE_CHECKING, Any, Protocol

from claudebridge.host import ImmediateUiContext, UiContext
from claudebridge.logging import get_logger

if TYPE_CHECKING:
    from claudebridge.bridge.claude import ClaudeSDKBridge
    from claudebridge.permission.service import PermissionService

log = get_logger("handlers")

# Host -> presentation: post(type, payload)
Outbox = Callable[[str, dict[str, Any]], None]


class MessageHandler(Protocol):
    """Claims and handles messages from the presentation layer."""

    supported_types: tuple[str, ...]

    def handle(self, type: str, content: str) -> bool:
        """Return True if the message was claimed."""
        ...


class HandlerContext:
    """Collaborators shared by all handlers.

    Handlers are called on the UI side; bridge work is scheduled onto
    ``loop`` and results travel back through ``outbox`` via ``ui``.
    """

    def __init__(
        self,
        bridge: ClaudeSDKBridge,
        permission_service: PermissionService,
        outbox: Outbox,
        loop: asyncio.AbstractEventLoop,
        ui: UiContext | None = None,
        default_cwd: str | None = None,
    ) -> None:
        self.bridge = bridge
        self.permission_service = permission_service
        self.loop = loop
        self.ui: UiContext = ui or ImmediateUiContext()
        self.default_cwd = default_cwd
        self.session_ids: dict[str, str] = {}
        self._outbox = outbox
        self._tasks: set[asyncio.Task[Any]] = set()

    def post(self, type: str, payload: dict[str, Any]) -> None:
        self.ui.invoke_later(self._outbox, type, payload)

    def submit(self, coro: Coroutine[Any, Any, Any]) -> None:
        """Run ``coro`` on the bridge loop from any thread."""
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is self.loop:
            task = self.loop.create_task(coro)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        else:
            asyncio.run_coroutine_threadsafe(coro, self.loop)

    async def drain(self) -> None:
        """Wait for work submitted from the loop thread."""
        while self._tasks:
            await asyncio.wait(set(self._tasks))


class BaseMessageHandler:
    """Common plumbing for handlers."""

    supported_types: tuple[str, ...] = ()

    def __init__(self, context: HandlerContext) -> None:
        self.context = context

    def matches_type(self, type: str) -> bool:
        return type in self.supported_types

    def handle(self, type: str, content: str) -> bool:
        if not self.matches_type(type):
            return False
        self.on_message(type, content)
        return True

    def on_message(self, type: str, content: str) -> None:
        raise NotImplementedError

    def parse_object(self, type: str, content: str) -> dict[str, Any] | None:
        """Decode a JSON object payload; report and return None if malformed."""
        try:
            data = json.loads(content) if content else {}
        except ValueError as e:
            log.warning("Malformed %s payload: %s", type, e)
            self.context.post("error", {"type": type, "error": f"Malformed payload: {e}"})
            return None
        if not isinstance(data, dict):
            self.context.post("error", {"type": type, "error": "Payload must be a JSON object"})
            return None
        return data
