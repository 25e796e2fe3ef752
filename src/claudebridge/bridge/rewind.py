"""Single-shot rewind-to-message round trip.

Unlike a streaming command, the request is written and stdin closed at
once; the last JSON object in the output is the answer.
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Any

from claudebridge.bridge.directory import BridgeDirectoryResolver
from claudebridge.bridge.environment import USE_STDIN_ENV, EnvironmentConfigurator, is_usable_cwd
from claudebridge.bridge.json_output import parse_last_json_object
from claudebridge.bridge.node_detector import NodeDetector
from claudebridge.bridge.process_manager import STREAM_LIMIT, ProcessManager, terminate_process
from claudebridge.errors import (
    BridgeError,
    BridgeNotReadyError,
    ErrorKind,
    ProcessSpawnError,
    describe_error,
)
from claudebridge.logging import get_logger

log = get_logger("rewind")

REWIND_TIMEOUT = 60.0

# Extra time to collect output after the process has exited
_OUTPUT_GRACE = 5.0


class RewindOperations:
    """Restores files to their state at a given user message."""

    def __init__(
        self,
        node_detector: NodeDetector,
        resolver: BridgeDirectoryResolver,
        env_configurator: EnvironmentConfigurator,
        process_manager: ProcessManager,
        provider: str = "claude",
        timeout: float = REWIND_TIMEOUT,
    ) -> None:
        self._node_detector = node_detector
        self._resolver = resolver
        self._env = env_configurator
        self._process_manager = process_manager
        self._provider = provider
        self._timeout = timeout

    async def rewind_files(
        self, session_id: str, user_message_id: str, cwd: str | None = None
    ) -> dict[str, Any]:
        """Run ``bridge.js <provider> rewindFiles``.

        Returns:
            The bridge's JSON answer, or ``{"success": bool, "error"?: str}``
            derived from the exit code when it printed none. Never raises.
        """
        pm = self._process_manager
        temp_dir: Path | None = None
        snapshot: frozenset[str] = frozenset()
        process: asyncio.subprocess.Process | None = None

        try:
            bridge_dir = self._resolver.find_sdk_dir()
            if bridge_dir is None:
                raise BridgeNotReadyError()
            node = await self._node_detector.get_node_executable()

            log.info("Rewinding session %s to message %s", session_id, user_message_id)
            payload = {"sessionId": session_id, "userMessageId": user_message_id, "cwd": cwd or ""}
            command = [node, str(bridge_dir / self._resolver.script), self._provider, "rewindFiles"]
            work_dir = cwd if is_usable_cwd(cwd) and Path(cwd).is_dir() else str(bridge_dir)

            temp_dir = pm.prepare_temp_dir()
            snapshot = pm.snapshot_temp_files(temp_dir)
            env = dict(os.environ)
            self._env.configure_project_path(env, cwd)
            self._env.configure_temp_dir(env, temp_dir)
            env[USE_STDIN_ENV] = "true"
            self._env.update_process_environment(env, node)

            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                    limit=STREAM_LIMIT,
                    cwd=work_dir,
                    env=env,
                )
            except OSError as e:
                raise ProcessSpawnError(command=" ".join(command), reason=str(e)) from e
            log.info("Rewind process started, pid %s", process.pid)

            await self._send_request(process, payload)
            reader = asyncio.create_task(self._collect_output(process))

            finished = True
            try:
                exit_code = await asyncio.wait_for(process.wait(), timeout=self._timeout)
            except asyncio.TimeoutError:
                finished = False
                log.warning("Rewind process timed out after %.0fs", self._timeout)
                await terminate_process(process, pm.config.terminate_grace, pm.config.kill_grace)
                exit_code = -1
            log.info("Rewind process exited with code %s", exit_code)

            try:
                output = await asyncio.wait_for(reader, timeout=_OUTPUT_GRACE)
            except asyncio.TimeoutError:
                output = ""

            parsed = parse_last_json_object(output.strip())
            if parsed is not None:
                return parsed

            response: dict[str, Any] = {"success": exit_code == 0}
            if exit_code != 0:
                if not finished:
                    response["error"] = "Rewind process timeout"
                else:
                    response["error"] = f"Process exited with code: {exit_code}"
            return response

        except BridgeError as e:
            log.warning("Rewind failed: %s", e)
            return {"success": False, "error": describe_error(e), "errorKind": e.kind.value}
        except Exception as e:
            log.exception("Rewind failed")
            return {"success": False, "error": describe_error(e), "errorKind": ErrorKind.INTERNAL.value}
        finally:
            if process is not None and process.returncode is None:
                await terminate_process(process, pm.config.terminate_grace, pm.config.kill_grace)
            pm.cleanup_temp_files(temp_dir, snapshot)

    async def _send_request(self, process: asyncio.subprocess.Process, payload: dict[str, Any]) -> None:
        stdin = process.stdin
        if stdin is None:
            return
        try:
            stdin.write((json.dumps(payload) + "\n").encode("utf-8"))
            await stdin.drain()
        except (ConnectionError, OSError) as e:
            log.warning("[%s] rewind: %s", ErrorKind.STDIN_WRITE_FAILED.value, e)
        finally:
            stdin.close()

    async def _collect_output(self, process: asyncio.subprocess.Process) -> str:
        if process.stdout is None:
            return ""
        output = (await process.stdout.read()).decode("utf-8", errors="replace")
        for line in output.splitlines():
            log.debug("rewind output: %s", line)
        return output
