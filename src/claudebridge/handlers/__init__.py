"""Routing of presentation-layer messages to the bridge and permission service."""

from claudebridge.handlers.base import BaseMessageHandler, HandlerContext, MessageHandler
from claudebridge.handlers.dispatcher import MessageDispatcher
from claudebridge.handlers.permission import PermissionHandler
from claudebridge.handlers.rewind import RewindHandler
from claudebridge.handlers.session import SessionHandler, TranscriptForwarder


def create_dispatcher(context: HandlerContext) -> MessageDispatcher:
    """Dispatcher with the standard session, permission and rewind handlers."""
    dispatcher = MessageDispatcher()
    dispatcher.register_handler(SessionHandler(context))
    dispatcher.register_handler(PermissionHandler(context))
    dispatcher.register_handler(RewindHandler(context))
    return dispatcher


__all__ = [
    "BaseMessageHandler",
    "HandlerContext",
    "MessageDispatcher",
    "MessageHandler",
    "PermissionHandler",
    "RewindHandler",
    "SessionHandler",
    "TranscriptForwarder",
    "create_dispatcher",
]
