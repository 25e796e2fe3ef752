"""Chain-of-handlers router for presentation-layer messages."""

from __future__ import annotations

from claudebridge.handlers.base import MessageHandler
from claudebridge.logging import TRACE, get_logger

log = get_logger("handlers")


class MessageDispatcher:
    """Offers each message to the registered handlers in order."""

    def __init__(self) -> None:
        self._handlers: list[MessageHandler] = []

    def register_handler(self, handler: MessageHandler) -> None:
        self._handlers.append(handler)

    def dispatch(self, type: str, content: str) -> bool:
        """Return True if some handler claimed the message."""
        for handler in self._handlers:
            if handler.handle(type, content):
                log.log(TRACE, "%s handled by %s", type, handler.__class__.__name__)
                return True
        log.debug("No handler for message type %s", type)
        return False

    @property
    def handler_count(self) -> int:
        return len(self._handlers)

    def clear(self) -> None:
        self._handlers.clear()
