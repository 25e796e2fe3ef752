"""Command-line interface for claudebridge."""

from __future__ import annotations

import argparse
import asyncio
import json
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from prompt_toolkit import PromptSession
from rich.console import Console
from rich.table import Table

from claudebridge import __version__
from claudebridge.bridge.base import SendRequest
from claudebridge.bridge.result import SDKResult
from claudebridge.config import load_config
from claudebridge.config.schema import Config
from claudebridge.logging import get_logger, setup_logging
from claudebridge.permission.models import (
    Dialog,
    PermissionDecisionMessage,
    PermissionDialog,
    PlanDialog,
    PlanResponseMessage,
    QuestionDialog,
    QuestionResponseMessage,
)
from claudebridge.permission.service import PermissionService
from claudebridge.runtime import BridgeRuntime

console = Console()
err_console = Console(stderr=True)

log = get_logger("cli")


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="claudebridge",
        description="Drive the Claude agent bridge script from the terminal",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=None,
        help="Increase log verbosity (can be repeated)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Extra config file layered above system/user/project config",
    )
    parser.add_argument(
        "--project",
        type=Path,
        help="Project root for project-level config and the working directory",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command")

    subparsers.add_parser(
        "doctor",
        help="Check Node.js and the bridge installation",
    )

    send_parser = subparsers.add_parser(
        "send",
        help="Send one message and stream the reply",
    )
    send_parser.add_argument("message", help="Message text")
    send_parser.add_argument("--channel", default="cli", help="Channel id")
    send_parser.add_argument("--session", help="Session id to resume")
    send_parser.add_argument("--model", help="Model override")
    send_parser.add_argument("--permission-mode", help="Permission mode passed to the agent")
    send_parser.add_argument(
        "--yes",
        action="store_true",
        help="Allow every tool permission without asking",
    )

    rewind_parser = subparsers.add_parser(
        "rewind",
        help="Restore files to their state at a user message",
    )
    rewind_parser.add_argument("session_id", help="Session id")
    rewind_parser.add_argument("user_message_id", help="User message id to rewind to")

    return parser


class ConsolePresenter:
    """Answers dialogs at the terminal.

    ``show_dialog`` runs on the event loop; the prompt itself runs in its
    own task so the bridge keeps reading output meanwhile.
    """

    def __init__(self, service: PermissionService, auto_allow: bool = False) -> None:
        self.service = service
        self.auto_allow = auto_allow
        self._session: PromptSession[str] | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._lock = asyncio.Lock()

    def show_dialog(self, dialog: Dialog) -> None:
        task = asyncio.get_running_loop().create_task(self._answer(dialog))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def close_dialog(self, request_id: str) -> None:
        console.print(f"[dim]Request {request_id[:8]} closed[/dim]")

    async def _ask(self, prompt: str) -> str:
        async with self._lock:
            if self._session is None:
                self._session = PromptSession()
            return (await self._session.prompt_async(prompt)).strip()

    async def _answer(self, dialog: Dialog) -> None:
        try:
            if isinstance(dialog, PermissionDialog):
                await self._answer_permission(dialog)
            elif isinstance(dialog, QuestionDialog):
                await self._answer_question(dialog)
            elif isinstance(dialog, PlanDialog):
                await self._answer_plan(dialog)
        except (EOFError, KeyboardInterrupt):
            # Leave the request pending; interrupt or shutdown resolves it
            console.print("[yellow]No answer given[/yellow]")

    async def _answer_permission(self, dialog: PermissionDialog) -> None:
        console.print(f"\n[bold]Permission requested:[/bold] {dialog.tool_name}")
        if dialog.inputs:
            console.print_json(data=dialog.inputs)

        if self.auto_allow:
            allow, remember = True, False
        else:
            answer = (await self._ask("Allow? [y]es / [n]o / [a]lways: ")).lower()
            allow = answer in ("y", "yes", "a", "always")
            remember = answer in ("a", "always")

        self.service.submit_permission_decision(
            PermissionDecisionMessage(request_id=dialog.request_id, allow=allow, remember=remember)
        )

    async def _answer_question(self, dialog: QuestionDialog) -> None:
        answers: dict[str, Any] = {}
        for item in dialog.questions:
            question = item.get("question", str(item)) if isinstance(item, dict) else str(item)
            console.print(f"\n[bold]{question}[/bold]")
            options = item.get("options", []) if isinstance(item, dict) else []
            for i, option in enumerate(options, 1):
                label = option.get("label", option) if isinstance(option, dict) else option
                console.print(f"  {i}. {label}")

            reply = await self._ask("> ")
            if not reply:
                self.service.submit_question_response(
                    QuestionResponseMessage(request_id=dialog.request_id, cancelled=True)
                )
                return
            if reply.isdigit() and 0 < int(reply) <= len(options):
                option = options[int(reply) - 1]
                reply = option.get("label", reply) if isinstance(option, dict) else str(option)
            answers[question] = reply

        self.service.submit_question_response(
            QuestionResponseMessage(request_id=dialog.request_id, answers=answers)
        )

    async def _answer_plan(self, dialog: PlanDialog) -> None:
        console.print("\n[bold]Plan approval requested[/bold]")
        console.print(dialog.plan if isinstance(dialog.plan, str) else json.dumps(dialog.plan, indent=2))

        answer = (await self._ask("Approve plan? [y]es / [n]o / [c]ancel: ")).lower()
        if answer in ("c", "cancel", ""):
            message = PlanResponseMessage(request_id=dialog.request_id, cancelled=True)
        elif answer in ("y", "yes"):
            message = PlanResponseMessage(request_id=dialog.request_id, approved=True)
        else:
            feedback = await self._ask("Feedback: ")
            message = PlanResponseMessage(
                request_id=dialog.request_id, approved=False, feedback=feedback or None
            )
        self.service.submit_plan_response(message)


class ConsoleTranscript:
    """MessageCallback that prints the streamed reply."""

    def __init__(self) -> None:
        self.streamed = False

    def on_message(self, type: str, content: str) -> None:
        if type == "content_delta":
            self.streamed = True
            console.print(content, end="", markup=False, highlight=False)
        elif type == "content" and not self.streamed:
            console.print(content, markup=False, highlight=False)
        elif type in ("thinking", "thinking_delta"):
            console.print(content, style="dim italic", end="" if type == "thinking_delta" else "\n")
        elif type == "session_id":
            console.print(f"[dim]session {content}[/dim]")
        else:
            log.debug("%s: %s", type, content)

    def on_error(self, error: str) -> None:
        err_console.print(f"[red]{error}[/red]")

    def on_complete(self, result: SDKResult) -> None:
        if self.streamed:
            console.print()


async def run_doctor(config: Config) -> int:
    runtime = BridgeRuntime.create(config)
    try:
        detection = await runtime.bridge.node_detector.detect_node_with_details()
        status = await runtime.bridge.check_environment()
    finally:
        await runtime.shutdown()

    table = Table(title="claudebridge environment")
    table.add_column("Check")
    table.add_column("Result")
    table.add_row("Node.js", detection.node_path or "[red]not found[/red]")
    table.add_row("Version", detection.node_version or "-")
    table.add_row("Detected via", detection.method.description if detection.method else "-")
    table.add_row("Minimum major", str(config.node.min_major_version))
    table.add_row("Bridge directory", status.bridge_dir or "[red]not ready[/red]")
    kind = status.error_kind.value if status.error_kind else "failed"
    table.add_row("Status", "[green]ok[/green]" if status.ok else f"[red]{kind}[/red]")
    console.print(table)

    if not detection.found:
        console.print(detection.user_friendly_message())
    elif not status.ok:
        console.print(f"[red]{status.message}[/red]")
    return 0 if status.ok else 1


async def run_send(config: Config, parsed: argparse.Namespace, cwd: str) -> int:
    runtime = BridgeRuntime.create(config, cwd=cwd)
    presenter = ConsolePresenter(runtime.permission_service, auto_allow=parsed.yes)
    runtime.permission_service.set_presenter(presenter)

    request = SendRequest(
        message=parsed.message,
        session_id=parsed.session,
        cwd=cwd,
        permission_mode=parsed.permission_mode,
        model=parsed.model,
    )
    task = runtime.bridge.send_message(parsed.channel, request, ConsoleTranscript())
    try:
        result = await task
    except asyncio.CancelledError:
        await runtime.bridge.interrupt_channel(parsed.channel)
        raise
    finally:
        await runtime.shutdown()

    if result.session_id:
        console.print(f"[dim]Session: {result.session_id} ({result.message_count} messages)[/dim]")
    return 0 if result.success else 1


async def run_rewind(config: Config, parsed: argparse.Namespace, cwd: str) -> int:
    runtime = BridgeRuntime.create(config, cwd=cwd)
    try:
        result = await runtime.bridge.rewind_files(parsed.session_id, parsed.user_message_id, cwd)
    finally:
        await runtime.shutdown()

    console.print_json(data=result)
    return 0 if result.get("success") else 1


def run_cli(args: Sequence[str]) -> int:
    """Run the CLI with the given arguments."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if parsed.command is None:
        parser.print_help()
        return 1

    project = str(parsed.project.resolve()) if parsed.project else None
    config = load_config(project_root=project, config_file=parsed.config)
    if parsed.verbose is not None:
        config.logging.verbose = parsed.verbose
    setup_logging(config.logging)

    cwd = project or str(Path.cwd())
    try:
        if parsed.command == "doctor":
            return asyncio.run(run_doctor(config))
        elif parsed.command == "send":
            return asyncio.run(run_send(config, parsed, cwd))
        elif parsed.command == "rewind":
            return asyncio.run(run_rewind(config, parsed, cwd))
    except KeyboardInterrupt:
        err_console.print("[yellow]Interrupted[/yellow]")
        return 130

    parser.print_help()
    return 1
