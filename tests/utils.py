"""Shared test utilities for claudebridge tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any

from claudebridge.bridge.base import SendRequest
from claudebridge.bridge.result import SDKResult
from claudebridge.permission.models import Dialog
from claudebridge.permission.service import PermissionService

# Stand-in for bridge.js, run with the test interpreter in place of Node.js.
# The scenario is picked by the "message" field of the first stdin line.
FAKE_BRIDGE = r'''
import json
import os
import sys
import time


def out(line):
    sys.stdout.write(line + "\n")
    sys.stdout.flush()


def read():
    line = sys.stdin.readline()
    return json.loads(line) if line.strip() else None


provider, operation = sys.argv[1], sys.argv[2]
request = read() or {}

if operation == "rewindFiles":
    mode = request.get("userMessageId")
    if mode == "hang":
        time.sleep(30)
    elif mode == "silent-fail":
        sys.exit(2)
    elif mode == "large":
        restored = ["src/module_%05d.py" % i for i in range(5000)]
        out(json.dumps({"success": True, "restored": restored}))
        sys.exit(0)
    out("[DEBUG] restoring")
    out(json.dumps({"success": True, "restored": ["a.py"], "session": request.get("sessionId")}))
    sys.exit(0)

scenario = request.get("message", "")

if scenario == "hello":
    out("[SESSION_ID] sess-1")
    out("[STREAM_START]")
    out('[MESSAGE] {"type": "assistant", "message": {"content": "Hello"}}')
    out('[CONTENT_DELTA] "Hel"')
    out('[CONTENT_DELTA] "lo"')
    out('[MESSAGE] {"type": "result"}')
    out("[STREAM_END]")
    sys.exit(0)

elif scenario == "fail":
    out("[UNCAUGHT_ERROR] boom")
    sys.exit(1)

elif scenario == "send_error":
    out('[SEND_ERROR] {"error": "API key missing"}')
    sys.exit(1)

elif scenario == "sleep":
    out("[STREAM_START]")
    time.sleep(30)

elif scenario == "permission":
    out(json.dumps({"type": "permission_request", "id": 7, "toolName": "Write",
                    "toolInput": {"file_path": "a.txt"}}))
    reply = read()
    out("[TOOL_RESULT] " + json.dumps(reply))
    out("[CONTENT] " + ("allowed" if reply and reply.get("allow") else "denied"))
    sys.exit(0)

elif scenario == "permission_then_text":
    out(json.dumps({"type": "permission_request", "id": 3, "toolName": "Bash",
                    "toolInput": {"command": "ls"}}))
    out("[CONTENT_DELTA] \"after\"")
    reply = read()
    out("[CONTENT_DELTA] \"-reply\"")
    sys.exit(0)

elif scenario == "question":
    out(json.dumps({"type": "ask_user_question", "id": 11,
                    "questions": [{"question": "Color?", "options": [{"label": "red"}]}]}))
    reply = read()
    out("[TOOL_RESULT] " + json.dumps(reply))
    sys.exit(0)

elif scenario == "plan":
    out(json.dumps({"type": "plan_approval", "id": 12, "plan": "1. do it"}))
    reply = read()
    out("[TOOL_RESULT] " + json.dumps(reply))
    sys.exit(0)

elif scenario == "followup":
    second = read()
    out("[CONTENT] " + (second or {}).get("message", "none"))
    sys.exit(0)

elif scenario == "env":
    tmp = os.environ.get("TMPDIR", "")
    with open(os.path.join(tmp, "claude-scratch-cwd"), "w") as f:
        f.write(os.getcwd())
    out("[CONTENT] " + json.dumps({
        "useStdin": os.environ.get("CLAUDE_USE_STDIN"),
        "tmp": tmp,
        "cwd": os.getcwd(),
        "projectPath": os.environ.get("PROJECT_PATH"),
        "permissionDir": os.environ.get("CLAUDE_PERMISSION_DIR"),
        "args": [provider, operation],
    }))
    sys.exit(0)

else:
    out("[CONTENT] echo:" + scenario)
    sys.exit(0)
'''


class ScriptedPresenter:
    """DialogPresenter that records dialogs and answers through ``reply``.

    ``reply(dialog)`` returns the decision payload to submit, or None to
    leave the request pending.
    """

    def __init__(self, service: PermissionService | None = None) -> None:
        self.service = service
        self.dialogs: list[Dialog] = []
        self.closed: list[str] = []
        self.reply: Callable[[Dialog], dict[str, Any] | None] = lambda dialog: None

    def show_dialog(self, dialog: Dialog) -> None:
        self.dialogs.append(dialog)
        answer = self.reply(dialog)
        if answer is None or self.service is None:
            return
        answer = {"requestId": dialog.request_id, **answer}
        if dialog.type == "permission_request":
            self.service.submit_permission_decision(answer)
        elif dialog.type == "ask_user_question":
            self.service.submit_question_response(answer)
        else:
            self.service.submit_plan_response(answer)

    def close_dialog(self, request_id: str) -> None:
        self.closed.append(request_id)


class RecordingCallback:
    """MessageCallback that keeps everything it is told."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []
        self.errors: list[str] = []
        self.completed: list[SDKResult] = []

    def on_message(self, type: str, content: str) -> None:
        self.messages.append((type, content))

    def on_error(self, error: str) -> None:
        self.errors.append(error)

    def on_complete(self, result: SDKResult) -> None:
        self.completed.append(result)

    def of_type(self, type: str) -> list[str]:
        return [content for kind, content in self.messages if kind == type]


def make_request(message: str, **kwargs: Any) -> SendRequest:
    """SendRequest whose message picks the fake bridge scenario."""
    return SendRequest(message=message, **kwargs)


async def wait_until(predicate: Callable[[], bool], timeout: float = 10.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


def fake_node(directory: Path, version: str = "v20.11.0", name: str = "node") -> Path:
    """Executable that answers --version like Node.js."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text(f"#!/bin/sh\necho {version}\n", encoding="utf-8")
    path.chmod(0o755)
    return path
