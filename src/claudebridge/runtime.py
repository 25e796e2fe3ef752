"""Wiring of the bridge, permission service and message handlers.

A host creates one BridgeRuntime at startup and shuts it down at exit:

    runtime = BridgeRuntime.create(config, outbox=post_to_webview, presenter=webview)
    runtime.dispatcher.dispatch("send_message", '{"message": "hi"}')
    ...
    await runtime.shutdown()
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from claudebridge.bridge.claude import ClaudeSDKBridge
from claudebridge.bridge.directory import BridgeDirectoryResolver
from claudebridge.bridge.environment import EnvironmentConfigurator
from claudebridge.bridge.node_detector import NodeDetector
from claudebridge.bridge.process_manager import ProcessManager
from claudebridge.config.schema import Config
from claudebridge.handlers import HandlerContext, MessageDispatcher, create_dispatcher
from claudebridge.handlers.base import Outbox
from claudebridge.host import LoopUiContext, UiContext
from claudebridge.logging import get_logger
from claudebridge.permission.service import DialogPresenter, PermissionService

log = get_logger("runtime")


def _discard(type: str, payload: dict) -> None:
    pass


@dataclass
class BridgeRuntime:
    """Everything one host process needs, built from a Config."""

    config: Config
    process_manager: ProcessManager
    permission_service: PermissionService
    bridge: ClaudeSDKBridge
    context: HandlerContext
    dispatcher: MessageDispatcher

    @classmethod
    def create(
        cls,
        config: Config,
        outbox: Outbox | None = None,
        presenter: DialogPresenter | None = None,
        ui: UiContext | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
        cwd: str | None = None,
    ) -> BridgeRuntime:
        """Build the runtime on ``loop`` (default: the running loop)."""
        loop = loop or asyncio.get_running_loop()
        ui = ui or LoopUiContext(loop)

        process_manager = ProcessManager(config.process)
        permission_service = PermissionService(presenter, config.permissions, ui)
        bridge = ClaudeSDKBridge(
            process_manager,
            permission_service,
            node_detector=NodeDetector(config.node.path, config.node.min_major_version),
            resolver=BridgeDirectoryResolver(config.bridge.dir, config.bridge.script),
            env_configurator=EnvironmentConfigurator(),
            ui=ui,
            rewind_timeout=config.timeouts.rewind,
        )
        context = HandlerContext(
            bridge,
            permission_service,
            outbox or _discard,
            loop,
            ui=ui,
            default_cwd=cwd,
        )
        return cls(
            config=config,
            process_manager=process_manager,
            permission_service=permission_service,
            bridge=bridge,
            context=context,
            dispatcher=create_dispatcher(context),
        )

    async def shutdown(self) -> None:
        """Resolve open dialogs and stop every child process."""
        cancelled = self.permission_service.cancel_all()
        stopped = await self.bridge.cleanup_all_processes()
        await self.context.drain()
        self.bridge.close()
        self.dispatcher.clear()
        log.info("Runtime shut down (%d dialogs cancelled, %d processes stopped)", cancelled, stopped)
