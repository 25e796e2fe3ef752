"""Streaming command execution against a bridge child process.

One ``send_message`` call drives a command through

    STARTING -> RUNNING -> INTERRUPTED | COMPLETED | FAILED

STARTING resolves the bridge script and Node.js and spawns the child.
RUNNING writes the request to stdin and reads stdout line by line; each line
is classified into an event and handled in order. Permission, question and
plan requests are answered in their own task so the read loop keeps
draining stdout; transcript events that arrive meanwhile are held and
replayed in order once the decision has been written back. Process exit
finalizes the SDKResult exactly once, and cleanup runs on every path.
"""

from __future__ import annotations

import asyncio
import json
import os
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Coroutine
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from claudebridge.bridge.directory import BridgeDirectoryResolver
from claudebridge.bridge.environment import EnvironmentConfigurator, is_usable_cwd
from claudebridge.bridge.events import (
    DECISION_EVENTS,
    Diagnostic,
    Marker,
    Message,
    NodeLog,
    OutputEvent,
    Passthrough,
    PermissionRequest,
    PlanRequest,
    QuestionRequest,
    SendError,
    SessionId,
    Text,
    Thinking,
    classify,
)
from claudebridge.bridge.node_detector import NodeDetector, is_version_supported
from claudebridge.bridge.process_manager import STREAM_LIMIT, ProcessManager, terminate_process
from claudebridge.bridge.result import INTERRUPTED_MESSAGE, SDKResult
from claudebridge.errors import (
    BridgeError,
    BridgeNotReadyError,
    ErrorKind,
    NodeVersionError,
    ProcessSpawnError,
    describe_error,
)
from claudebridge.host import ImmediateUiContext, UiContext
from claudebridge.logging import TRACE, ChannelLogger, get_channel_logger, get_logger
from claudebridge.permission.service import PermissionService

log = get_logger("bridge")

# Lines logged at info level before switching to trace
_DIAG_LINES = 50


class CommandState(Enum):
    STARTING = "starting"
    RUNNING = "running"
    INTERRUPTED = "interrupted"
    COMPLETED = "completed"
    FAILED = "failed"


class MessageCallback(Protocol):
    """Receives transcript updates for one streaming command."""

    def on_message(self, type: str, content: str) -> None: ...

    def on_error(self, error: str) -> None: ...

    def on_complete(self, result: SDKResult) -> None: ...


class NullCallback:
    """MessageCallback that ignores everything."""

    def on_message(self, type: str, content: str) -> None:
        pass

    def on_error(self, error: str) -> None:
        pass

    def on_complete(self, result: SDKResult) -> None:
        pass


@dataclass
class SendRequest:
    """One user turn sent to the bridge."""

    message: str
    session_id: str | None = None
    cwd: str | None = None
    permission_mode: str | None = None
    model: str | None = None
    attachments: list[dict[str, Any]] = field(default_factory=list)
    opened_files: dict[str, Any] | None = None
    agent_prompt: str | None = None
    streaming: bool | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "message": self.message,
            "sessionId": self.session_id or "",
            "cwd": self.cwd or "",
            "permissionMode": self.permission_mode or "",
            "model": self.model or "",
        }
        if self.attachments:
            payload["attachments"] = [
                {k: att.get(k) for k in ("fileName", "mediaType", "data")}
                for att in self.attachments
                if att
            ]
        if self.opened_files:
            payload["openedFiles"] = self.opened_files
        if self.agent_prompt:
            payload["agentPrompt"] = self.agent_prompt
        if self.streaming is not None:
            payload["streaming"] = self.streaming
        return payload


@dataclass
class EnvironmentStatus:
    """Structured answer to check_environment."""

    ok: bool
    node_path: str | None = None
    node_version: str | None = None
    bridge_dir: str | None = None
    error_kind: ErrorKind | None = None
    message: str = ""


class _Interrupted(Exception):
    """Interrupt requested before the process was spawned."""


@dataclass
class _ChannelRun:
    """Mutable state of one streaming command."""

    channel_id: str
    callback: MessageCallback
    result: SDKResult = field(default_factory=SDKResult)
    state: CommandState = CommandState.STARTING
    task: asyncio.Task[SDKResult] | None = None
    process: asyncio.subprocess.Process | None = None
    assistant: list[str] = field(default_factory=list)
    had_send_error: bool = False
    last_node_error: str | None = None
    node_path: str | None = None
    node_version: str | None = None
    work_dir: str | None = None
    line_count: int = 0
    queued_requests: list[dict[str, Any]] = field(default_factory=list)
    held: deque[OutputEvent] = field(default_factory=deque)
    decision_active: bool = False
    decision_tasks: set[asyncio.Task[None]] = field(default_factory=set)
    closing: bool = False
    interrupt_requested: bool = False
    background: set[asyncio.Task[Any]] = field(default_factory=set)
    stdin_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    log: ChannelLogger = field(init=False)

    def __post_init__(self) -> None:
        self.log = get_channel_logger("bridge", self.channel_id)


class BaseSDKBridge(ABC):
    """Provider-independent streaming command machinery.

    Args:
        process_manager: Shared process ownership table.
        permission_service: Answers permission/question/plan requests.
            Without one, every request is denied.
        node_detector: Locates Node.js.
        resolver: Locates the bridge script.
        env_configurator: Prepares child environments.
        ui: Where MessageCallback methods run.
    """

    def __init__(
        self,
        process_manager: ProcessManager,
        permission_service: PermissionService | None = None,
        node_detector: NodeDetector | None = None,
        resolver: BridgeDirectoryResolver | None = None,
        env_configurator: EnvironmentConfigurator | None = None,
        ui: UiContext | None = None,
    ) -> None:
        self._process_manager = process_manager
        self._permission_service = permission_service
        self._node_detector = node_detector or NodeDetector()
        self._resolver = resolver or BridgeDirectoryResolver()
        self._env = env_configurator or EnvironmentConfigurator()
        self._ui: UiContext = ui or ImmediateUiContext()
        self._runs: dict[str, _ChannelRun] = {}
        self._remove_listener = process_manager.add_interrupt_listener(self._on_interrupt)

    # -- provider hooks ------------------------------------------------------

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider argument passed to the bridge script."""

    def operation_for(self, request: SendRequest) -> str:
        return "sendWithAttachments" if request.attachments else "send"

    def configure_environment(self, env: dict[str, str], request: SendRequest) -> None:
        """Provider-specific environment additions."""
        self._env.configure_attachment_env(env, bool(request.attachments))

    def format_send_error(self, run: _ChannelRun, message: str) -> str:
        return message

    # -- public API ----------------------------------------------------------

    @property
    def process_manager(self) -> ProcessManager:
        return self._process_manager

    @property
    def node_detector(self) -> NodeDetector:
        return self._node_detector

    @property
    def resolver(self) -> BridgeDirectoryResolver:
        return self._resolver

    def set_node_executable(self, path: str | None) -> None:
        self._node_detector.set_node_executable(path)

    async def get_node_executable(self) -> str:
        return await self._node_detector.get_node_executable()

    def get_channel_state(self, channel_id: str) -> CommandState | None:
        run = self._runs.get(channel_id)
        return run.state if run else None

    def launch_channel(
        self, channel_id: str, session_id: str | None = None, cwd: str | None = None
    ) -> dict[str, Any]:
        """Acknowledge a channel; the process starts on the first send."""
        reply: dict[str, Any] = {"success": True, "channelId": channel_id}
        if session_id is not None:
            reply["sessionId"] = session_id
        reply["message"] = f"{self.provider_name} channel ready (auto-launch on first send)"
        return reply

    def send_message(
        self,
        channel_id: str,
        request: SendRequest,
        callback: MessageCallback | None = None,
    ) -> asyncio.Task[SDKResult]:
        """Start a streaming command, or feed a running one.

        A channel never has two processes: while a command is in flight,
        the new request is written as an extra stdin line to the live
        process and the in-flight task is returned.

        Returns:
            Task resolving to the finalized SDKResult. It never raises
            except on cancellation.
        """
        run = self._runs.get(channel_id)
        if run is not None and run.task is not None and not run.task.done():
            run.log.info("Busy; forwarding follow-up to the running process")
            self._forward_followup(run, request.to_payload())
            return run.task

        run = _ChannelRun(channel_id=channel_id, callback=callback or NullCallback())
        self._runs[channel_id] = run
        run.task = asyncio.create_task(self._execute(run, request), name=f"bridge-{channel_id}")
        return run.task

    async def interrupt_channel(self, channel_id: str) -> bool:
        """Stop the channel's command; its result becomes "User interrupted"."""
        run = self._runs.get(channel_id)
        if run is not None and run.process is None:
            run.interrupt_requested = True
            if self._permission_service is not None:
                self._permission_service.cancel_channel(channel_id)
            return True
        return await self._process_manager.interrupt_channel(channel_id)

    async def restart_channel(
        self, channel_id: str, session_id: str | None = None, cwd: str | None = None
    ) -> dict[str, Any]:
        """Interrupt the channel, wait for its command to finish, re-launch."""
        run = self._runs.get(channel_id)
        await self.interrupt_channel(channel_id)
        if run is not None and run.task is not None:
            await asyncio.wait({run.task})
        return self.launch_channel(channel_id, session_id, cwd)

    async def check_environment(self) -> EnvironmentStatus:
        try:
            node = await self._node_detector.find_node_executable()
        except BridgeError as e:
            return EnvironmentStatus(False, error_kind=e.kind, message=describe_error(e))

        version = await self._node_detector.verify_node_path(node)
        if version is None:
            return EnvironmentStatus(
                False,
                node_path=node,
                error_kind=ErrorKind.NODE_NOT_FOUND,
                message=f"Node.js at {node} did not report a version",
            )
        minimum = self._node_detector.min_major_version
        if not is_version_supported(version, minimum):
            error = NodeVersionError(path=node, version=version, minimum=minimum)
            return EnvironmentStatus(
                False,
                node_path=node,
                node_version=version,
                error_kind=error.kind,
                message=describe_error(error),
            )

        bridge_dir = self._resolver.find_sdk_dir()
        if bridge_dir is None:
            return EnvironmentStatus(
                False,
                node_path=node,
                node_version=version,
                error_kind=ErrorKind.BRIDGE_NOT_READY,
                message=str(BridgeNotReadyError()),
            )

        log.info("Environment check passed for %s", self.provider_name)
        return EnvironmentStatus(
            True,
            node_path=node,
            node_version=version,
            bridge_dir=str(bridge_dir),
            message=f"Environment check passed for {self.provider_name}",
        )

    async def cleanup_all_processes(self) -> int:
        """Stop every process and wait for the commands to finalize."""
        tasks = [run.task for run in self._runs.values() if run.task is not None]
        count = await self._process_manager.cleanup_all_processes()
        if tasks:
            await asyncio.wait(tasks)
        return count

    def get_active_process_count(self) -> int:
        return self._process_manager.get_active_process_count()

    def close(self) -> None:
        """Detach from the process manager."""
        self._remove_listener()

    # -- execution -----------------------------------------------------------

    async def _execute(self, run: _ChannelRun, request: SendRequest) -> SDKResult:
        pm = self._process_manager
        result = run.result
        temp_dir: Path | None = None
        snapshot: frozenset[str] = frozenset()

        try:
            bridge_dir = self._resolver.find_sdk_dir()
            if bridge_dir is None:
                raise BridgeNotReadyError()

            node = await self._node_detector.get_node_executable()
            run.node_path = node
            run.node_version = await self._node_detector.verify_node_path(node)
            minimum = self._node_detector.min_major_version
            # An unverifiable path is left to fail at spawn
            if run.node_version is not None and not is_version_supported(run.node_version, minimum):
                raise NodeVersionError(path=node, version=run.node_version, minimum=minimum)
            run.work_dir = str(bridge_dir)
            run.log.info(
                "Starting %s command (node %s %s, bridge %s)",
                self.provider_name,
                node,
                run.node_version or "unknown",
                bridge_dir,
            )

            command = [
                node,
                str(bridge_dir / self._resolver.script),
                self.provider_name,
                self.operation_for(request),
            ]
            cwd = request.cwd if is_usable_cwd(request.cwd) and Path(request.cwd).is_dir() else str(bridge_dir)

            temp_dir = pm.prepare_temp_dir()
            snapshot = pm.snapshot_temp_files(temp_dir)
            env = self._build_environment(node, request, temp_dir)

            if run.interrupt_requested:
                raise _Interrupted()

            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,  # Merge stderr into stdout
                    cwd=cwd,
                    env=env,
                    limit=STREAM_LIMIT,
                )
            except OSError as e:
                raise ProcessSpawnError(command=" ".join(command), reason=str(e)) from e

            run.process = process
            pm.register_process(run.channel_id, process)
            run.state = CommandState.RUNNING
            run.log.info("Process started, pid %s", process.pid)

            if run.interrupt_requested:
                self._spawn_background(run, pm.interrupt_channel(run.channel_id))

            await self._write_line(run, request.to_payload())
            for queued in run.queued_requests:
                await self._write_line(run, queued)
            run.queued_requests.clear()

            await self._read_output(run, process)
            exit_code = await process.wait()
            await self._settle_decisions(run)

            interrupted = pm.was_interrupted(run.channel_id) or run.interrupt_requested
            run.log.info(
                "Exited: code=%s interrupted=%s send_error=%s lines=%d",
                exit_code,
                interrupted,
                run.had_send_error,
                run.line_count,
            )
            result.finalize(
                exit_code,
                interrupted,
                run.had_send_error,
                "".join(run.assistant),
                run.last_node_error,
            )
        except _Interrupted:
            result.finalize_failure(INTERRUPTED_MESSAGE, ErrorKind.INTERRUPTED)
        except BridgeError as e:
            run.log.warning("Failed: %s", e)
            result.finalize_failure(describe_error(e), e.kind, "".join(run.assistant))
        except asyncio.CancelledError:
            result.finalize_failure(INTERRUPTED_MESSAGE, ErrorKind.INTERRUPTED, "".join(run.assistant))
            raise
        except Exception as e:
            run.log.exception("Command crashed")
            result.finalize_failure(describe_error(e), ErrorKind.INTERNAL, "".join(run.assistant))
        finally:
            await self._cleanup(run, temp_dir, snapshot)

        self._set_terminal_state(run)
        self._report_terminal(run)
        return result

    def _build_environment(
        self, node: str, request: SendRequest, temp_dir: Path | None
    ) -> dict[str, str]:
        env = dict(os.environ)
        self._env.configure_project_path(env, request.cwd)
        self._env.configure_temp_dir(env, temp_dir)
        self.configure_environment(env, request)
        self._env.update_process_environment(env, node)
        return env

    async def _read_output(self, run: _ChannelRun, process: asyncio.subprocess.Process) -> None:
        stdout = process.stdout
        if stdout is None:
            return

        while True:
            try:
                raw = await stdout.readline()
            except ValueError:
                run.log.warning("Dropped an output line over %d bytes", STREAM_LIMIT)
                continue
            if not raw:
                break

            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            run.line_count += 1
            if run.line_count <= _DIAG_LINES:
                run.log.debug("line %d: %s", run.line_count, line)
            else:
                run.log.log(TRACE, "line %d: %s", run.line_count, line)

            event = classify(line)
            if event is None:
                continue
            if isinstance(event, Diagnostic):
                run.log.warning("[node error] %s", line)
                run.last_node_error = line
            self._dispatch(run, event)

    async def _cleanup(
        self, run: _ChannelRun, temp_dir: Path | None, snapshot: frozenset[str]
    ) -> None:
        pm = self._process_manager
        await self._settle_decisions(run)

        for task in list(run.background):
            await asyncio.wait({task})

        process = run.process
        if process is not None:
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
            pm.unregister_process(run.channel_id, process)
            await pm.wait_for_process_termination(process)
            if process.returncode is None:
                await terminate_process(process, pm.config.terminate_grace, pm.config.kill_grace)

        pm.cleanup_temp_files(temp_dir, snapshot)
        if self._runs.get(run.channel_id) is run:
            del self._runs[run.channel_id]

    def _set_terminal_state(self, run: _ChannelRun) -> None:
        result = run.result
        if result.error_kind is ErrorKind.INTERRUPTED:
            run.state = CommandState.INTERRUPTED
        elif result.success:
            run.state = CommandState.COMPLETED
        else:
            run.state = CommandState.FAILED

    def _report_terminal(self, run: _ChannelRun) -> None:
        result = run.result
        if result.success or result.error_kind is ErrorKind.INTERRUPTED:
            self._emit(run.callback.on_complete, result)
        elif result.error_kind is not ErrorKind.SEND_ERROR:
            # A latched send error was already reported when it arrived
            self._emit(run.callback.on_error, result.error or "Unknown error")

    # -- stdin ---------------------------------------------------------------

    async def _write_line(self, run: _ChannelRun, payload: dict[str, Any]) -> bool:
        """Write one JSON line to the child's stdin; failures are logged only."""
        process = run.process
        if process is None or process.stdin is None or process.stdin.is_closing():
            run.log.warning("[%s] stdin is closed", ErrorKind.STDIN_WRITE_FAILED.value)
            return False

        data = (json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8")
        async with run.stdin_lock:
            try:
                process.stdin.write(data)
                await process.stdin.drain()
            except (ConnectionError, OSError) as e:
                run.log.warning("[%s] %s", ErrorKind.STDIN_WRITE_FAILED.value, e)
                return False
        return True

    def _forward_followup(self, run: _ChannelRun, payload: dict[str, Any]) -> None:
        if run.process is None:
            run.queued_requests.append(payload)
            return
        self._spawn_background(run, self._write_line(run, payload))

    def _spawn_background(self, run: _ChannelRun, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        run.background.add(task)
        task.add_done_callback(run.background.discard)

    # -- event handling ------------------------------------------------------

    def _dispatch(self, run: _ChannelRun, event: OutputEvent) -> None:
        """Handle ``event`` now, or hold it behind an unanswered decision."""
        if run.decision_active:
            run.held.append(event)
            return
        self._handle(run, event)

    def _flush_held(self, run: _ChannelRun) -> None:
        while run.held and not run.decision_active:
            self._handle(run, run.held.popleft())

    def _handle(self, run: _ChannelRun, event: OutputEvent) -> None:
        if isinstance(event, DECISION_EVENTS):
            self._start_decision(run, event)
        elif isinstance(event, Text):
            self._on_text(run, event)
        elif isinstance(event, Thinking):
            self._on_thinking(run, event)
        elif isinstance(event, Message):
            self._on_transcript_message(run, event)
        elif isinstance(event, SendError):
            self._on_send_error(run, event)
        elif isinstance(event, SessionId):
            self._on_session_id(run, event)
        elif isinstance(event, Marker):
            self._emit(run.callback.on_message, event.name, event.payload)
        elif isinstance(event, Passthrough):
            self._emit(run.callback.on_message, event.type, event.raw)
        elif isinstance(event, (Diagnostic, NodeLog)):
            self._emit(run.callback.on_message, "node_log", event.line)

    def _on_text(self, run: _ChannelRun, event: Text) -> None:
        run.assistant.append(event.text)
        self._emit(run.callback.on_message, "content_delta" if event.delta else "content", event.text)

    def _on_thinking(self, run: _ChannelRun, event: Thinking) -> None:
        self._emit(run.callback.on_message, "thinking_delta" if event.delta else "thinking", event.text)

    def _on_transcript_message(self, run: _ChannelRun, event: Message) -> None:
        run.result.messages.append(event.payload)
        self._emit(run.callback.on_message, event.type, event.raw)

    def _on_send_error(self, run: _ChannelRun, event: SendError) -> None:
        message = self.format_send_error(run, event.message)
        run.log.error("Send error: %s", event.message)
        run.had_send_error = True
        run.result.record_send_error(message)
        self._emit(run.callback.on_error, message)

    def _on_session_id(self, run: _ChannelRun, event: SessionId) -> None:
        run.result.session_id = event.session_id
        self._emit(run.callback.on_message, "session_id", event.session_id)

    # -- decisions -----------------------------------------------------------

    def _start_decision(
        self, run: _ChannelRun, event: PermissionRequest | QuestionRequest | PlanRequest
    ) -> None:
        if run.closing:
            run.log.info("Ended; dropping unanswered %s", type(event).__name__)
            return
        run.decision_active = True
        task = asyncio.create_task(self._run_decision(run, event))
        run.decision_tasks.add(task)
        task.add_done_callback(run.decision_tasks.discard)

    async def _run_decision(
        self, run: _ChannelRun, event: PermissionRequest | QuestionRequest | PlanRequest
    ) -> None:
        try:
            if isinstance(event, PermissionRequest):
                reply = await self._answer_permission(run, event)
            elif isinstance(event, QuestionRequest):
                reply = await self._answer_question(run, event)
            else:
                reply = await self._answer_plan(run, event)
            await self._write_line(run, reply)
        except Exception:
            run.log.exception("Decision handling failed")
        finally:
            run.decision_active = False
            self._flush_held(run)

    async def _answer_permission(self, run: _ChannelRun, event: PermissionRequest) -> dict[str, Any]:
        reply: dict[str, Any] = {"type": "response", "id": event.request_id, "allow": False}
        service = self._permission_service
        if service is None:
            reply["message"] = f"Permission denied for {event.tool_name}"
            return reply

        run.log.info("Permission request: %s", event.tool_name)
        decision = await service.decide_permission(run.channel_id, event.tool_name, event.tool_input)
        reply["allow"] = decision.allowed
        if decision.message:
            reply["message"] = decision.message
        if decision.updated_input is not None:
            reply["updatedInput"] = decision.updated_input
        return reply

    async def _answer_question(self, run: _ChannelRun, event: QuestionRequest) -> dict[str, Any]:
        reply: dict[str, Any] = {"type": "response", "id": event.request_id, "allow": False}
        service = self._permission_service
        if service is None:
            return reply

        answers = await service.ask_user_question(run.channel_id, event.questions)
        if answers is not None:
            reply["allow"] = True
            reply["answers"] = answers
        return reply

    async def _answer_plan(self, run: _ChannelRun, event: PlanRequest) -> dict[str, Any]:
        reply: dict[str, Any] = {"type": "response", "id": event.request_id, "allow": False}
        service = self._permission_service
        if service is None:
            return reply

        outcome = await service.request_plan_approval(run.channel_id, event.plan, event.suggestions)
        if outcome is None:
            reply["cancelled"] = True
            return reply
        reply["allow"] = bool(outcome.get("approved"))
        reply["approved"] = reply["allow"]
        if "newMode" in outcome:
            reply["newMode"] = outcome["newMode"]
        if "feedback" in outcome:
            reply["message"] = outcome["feedback"]
        return reply

    async def _settle_decisions(self, run: _ChannelRun) -> None:
        """Resolve outstanding decisions once the child stops producing output."""
        run.closing = True
        if self._permission_service is not None:
            self._permission_service.cancel_channel(run.channel_id)
        while run.decision_tasks:
            await asyncio.wait(set(run.decision_tasks))
        run.decision_active = False
        self._flush_held(run)

    def _on_interrupt(self, channel_id: str) -> None:
        if self._permission_service is not None and channel_id in self._runs:
            self._permission_service.cancel_channel(channel_id)

    # -- callbacks -----------------------------------------------------------

    def _emit(self, fn: Any, *args: Any) -> None:
        self._ui.invoke_later(self._call_safely, fn, *args)

    @staticmethod
    def _call_safely(fn: Any, *args: Any) -> None:
        try:
            fn(*args)
        except Exception:
            log.exception("Message callback failed")
