"""Classification of bridge output lines into typed events.

The bridge speaks two dialects on stdout: tagged text lines such as
``[CONTENT_DELTA] "..."`` and one-JSON-object-per-line messages such as
``{"type": "permission_request", ...}``. ``classify`` turns either into one
of the event dataclasses below; the provider handles each event type in
exactly one place.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

ERROR_MARKERS = (
    "[UNCAUGHT_ERROR]",
    "[UNHANDLED_REJECTION]",
    "[COMMAND_ERROR]",
    "[STARTUP_ERROR]",
    "[ERROR]",
    "[STDIN_ERROR]",
    "[STDIN_PARSE_ERROR]",
    "[GET_SESSION_ERROR]",
    "[PERSIST_ERROR]",
)

# Tags that carry no payload, or an opaque payload forwarded as-is
_MARKER_TAGS = {
    "[STREAM_START]": "stream_start",
    "[STREAM_END]": "stream_end",
    "[MESSAGE_START]": "message_start",
    "[MESSAGE_END]": "message_end",
    "[SLASH_COMMANDS]": "slash_commands",
    "[TOOL_RESULT]": "tool_result",
}


@dataclass(frozen=True)
class Text:
    """Assistant text; appended to the final result."""

    text: str
    delta: bool = False


@dataclass(frozen=True)
class Thinking:
    text: str
    delta: bool = False


@dataclass(frozen=True)
class Message:
    """A transcript message envelope; counted in SDKResult.messages."""

    type: str
    payload: dict[str, Any]
    raw: str


@dataclass(frozen=True)
class SendError:
    """Error reported by the bridge itself; latches the result error."""

    message: str


@dataclass(frozen=True)
class SessionId:
    session_id: str


@dataclass(frozen=True)
class Marker:
    """Stream lifecycle marker or opaque side-channel payload."""

    name: str
    payload: str = ""


@dataclass(frozen=True)
class Passthrough:
    """JSON message of a type this layer does not interpret."""

    type: str
    raw: str


@dataclass(frozen=True)
class Diagnostic:
    """Node.js error marker line, kept as the last known node error."""

    marker: str
    line: str


@dataclass(frozen=True)
class NodeLog:
    """Any other output; forwarded for debugging."""

    line: str


@dataclass(frozen=True)
class PermissionRequest:
    request_id: int
    tool_name: str
    tool_input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class QuestionRequest:
    request_id: int
    questions: list[Any] = field(default_factory=list)


@dataclass(frozen=True)
class PlanRequest:
    request_id: int
    plan: Any = None
    suggestions: list[Any] = field(default_factory=list)


OutputEvent = (
    Text
    | Thinking
    | Message
    | SendError
    | SessionId
    | Marker
    | Passthrough
    | Diagnostic
    | NodeLog
    | PermissionRequest
    | QuestionRequest
    | PlanRequest
)

DECISION_EVENTS = (PermissionRequest, QuestionRequest, PlanRequest)


def error_marker(line: str) -> str | None:
    """Return the error marker a line starts with, if any."""
    for marker in ERROR_MARKERS:
        if line.startswith(marker):
            return marker
    return None


def _decode_json_string(raw: str) -> str:
    # Deltas are JSON-encoded so embedded newlines survive line framing
    if raw.startswith(" "):
        raw = raw[1:]
    try:
        value = json.loads(raw)
    except ValueError:
        return raw
    return value if isinstance(value, str) else raw


def _request_id(msg: dict[str, Any]) -> int:
    try:
        return int(msg.get("id", 0))
    except (TypeError, ValueError):
        return 0


def _classify_tagged(line: str) -> OutputEvent | None:
    if line.startswith("[MESSAGE]"):
        body = line[len("[MESSAGE]"):].strip()
        try:
            payload = json.loads(body)
        except ValueError:
            return NodeLog(line)
        if not isinstance(payload, dict):
            return NodeLog(line)
        return Message(str(payload.get("type", "unknown")), payload, body)

    if line.startswith("[SEND_ERROR]"):
        body = line[len("[SEND_ERROR]"):].strip()
        message = body
        try:
            obj = json.loads(body)
        except ValueError:
            obj = None
        if isinstance(obj, dict) and "error" in obj:
            message = str(obj["error"])
        return SendError(message)

    # Longer tags first: [CONTENT] is a prefix of [CONTENT_DELTA]
    if line.startswith("[CONTENT_DELTA]"):
        return Text(_decode_json_string(line[len("[CONTENT_DELTA]"):]), delta=True)
    if line.startswith("[CONTENT]"):
        return Text(line[len("[CONTENT]"):].strip())
    if line.startswith("[THINKING_DELTA]"):
        return Thinking(_decode_json_string(line[len("[THINKING_DELTA]"):]), delta=True)
    if line.startswith("[THINKING]"):
        return Thinking(line[len("[THINKING]"):].strip())
    if line.startswith("[SESSION_ID]"):
        return SessionId(line[len("[SESSION_ID]"):].strip())

    for tag, name in _MARKER_TAGS.items():
        if line.startswith(tag):
            return Marker(name, line[len(tag):].strip())

    return None


def _classify_json(msg: dict[str, Any], line: str) -> OutputEvent:
    kind = str(msg.get("type", ""))

    if kind == "permission_request":
        tool_input = msg.get("toolInput")
        return PermissionRequest(
            request_id=_request_id(msg),
            tool_name=str(msg.get("toolName", "")),
            tool_input=tool_input if isinstance(tool_input, dict) else {},
        )
    if kind == "ask_user_question":
        questions = msg.get("questions")
        return QuestionRequest(
            request_id=_request_id(msg),
            questions=questions if isinstance(questions, list) else [],
        )
    if kind == "plan_approval":
        suggestions = msg.get("suggestions")
        return PlanRequest(
            request_id=_request_id(msg),
            plan=msg.get("plan"),
            suggestions=suggestions if isinstance(suggestions, list) else [],
        )
    if kind == "session_id":
        return SessionId(str(msg.get("sessionId", "")))
    if kind == "content":
        return Text(str(msg.get("text", "")))
    if kind == "content_delta":
        return Text(str(msg.get("delta", "")), delta=True)
    if kind == "thinking":
        return Thinking(str(msg.get("text", "")))
    if kind == "thinking_delta":
        return Thinking(str(msg.get("delta", "")), delta=True)
    if kind == "tool_use":
        return Marker("tool_use", json.dumps(msg.get("tool")))
    if kind == "tool_result":
        return Marker("tool_result", json.dumps(msg.get("result")))
    if kind == "event":
        event = msg.get("event")
        if not isinstance(event, dict):
            event = {}
        return Message(str(event.get("type", "unknown")), event, json.dumps(event))
    if kind == "done":
        return Marker("done")
    if kind == "error":
        return SendError(str(msg.get("message", "Unknown error")))
    return Passthrough(kind, line)


def classify(line: str) -> OutputEvent | None:
    """Classify one stdout line.

    Returns None for blank lines. Error markers become Diagnostic; tagged
    lines and JSON objects map to their event type; anything else is a
    NodeLog.
    """
    if not line.strip():
        return None

    marker = error_marker(line)
    if marker is not None:
        return Diagnostic(marker, line)

    if line.startswith("["):
        event = _classify_tagged(line)
        if event is not None:
            return event

    stripped = line.strip()
    if stripped.startswith("{"):
        try:
            msg = json.loads(stripped)
        except ValueError:
            msg = None
        if isinstance(msg, dict):
            return _classify_json(msg, stripped)

    return NodeLog(line)
