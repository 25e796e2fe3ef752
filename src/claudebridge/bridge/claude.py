"""Claude provider for the bridge script."""

from __future__ import annotations

from typing import Any

from claudebridge.bridge.base import BaseSDKBridge, SendRequest, _ChannelRun
from claudebridge.bridge.environment import USE_STDIN_ENV
from claudebridge.bridge.rewind import REWIND_TIMEOUT, RewindOperations


class ClaudeSDKBridge(BaseSDKBridge):
    """Runs ``bridge.js claude <operation>`` commands.

    The request goes to stdin as one JSON line and stdin stays open, so
    permission, question and plan replies can be written back.
    """

    def __init__(self, *args: Any, rewind_timeout: float = REWIND_TIMEOUT, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._rewind = RewindOperations(
            self._node_detector,
            self._resolver,
            self._env,
            self._process_manager,
            provider=self.provider_name,
            timeout=rewind_timeout,
        )

    @property
    def provider_name(self) -> str:
        return "claude"

    def configure_environment(self, env: dict[str, str], request: SendRequest) -> None:
        super().configure_environment(env, request)
        env[USE_STDIN_ENV] = "true"

    def format_send_error(self, run: _ChannelRun, message: str) -> str:
        """Append Node.js diagnostics; most send errors are setup problems."""
        if run.node_path is None and run.node_version is None and run.work_dir is None:
            return message

        lines = [message, "", "**Environment Diagnostics**"]
        if run.node_path is not None:
            lines.append(f"  Node.js path: `{run.node_path}`")
        lines.append(f"  Node.js version: {run.node_version or 'unknown'}")
        if run.work_dir is not None:
            lines.append(f"  SDK directory: `{run.work_dir}`")
        return "\n".join(lines)

    async def rewind_files(
        self, session_id: str, user_message_id: str, cwd: str | None = None
    ) -> dict[str, Any]:
        return await self._rewind.rewind_files(session_id, user_message_id, cwd)
