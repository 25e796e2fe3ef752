"""Tests for bridge output line classification."""

from __future__ import annotations

import json

import pytest

from claudebridge.bridge.events import (
    Diagnostic,
    Marker,
    Message,
    NodeLog,
    Passthrough,
    PermissionRequest,
    PlanRequest,
    QuestionRequest,
    SendError,
    SessionId,
    Text,
    Thinking,
    classify,
    error_marker,
)


class TestTaggedLines:
    """Test the [TAG] dialect."""

    def test_message_envelope(self) -> None:
        event = classify('[MESSAGE] {"type": "assistant", "id": 1}')
        assert isinstance(event, Message)
        assert event.type == "assistant"
        assert event.payload == {"type": "assistant", "id": 1}

    def test_message_with_bad_json_is_a_log_line(self) -> None:
        assert isinstance(classify("[MESSAGE] {not json"), NodeLog)

    def test_send_error_json_and_plain(self) -> None:
        """Test the error field is extracted when the payload is JSON."""
        assert classify('[SEND_ERROR] {"error": "quota"}') == SendError("quota")
        assert classify("[SEND_ERROR] plain failure") == SendError("plain failure")

    def test_content_and_delta(self) -> None:
        """Test deltas are JSON-decoded so escaped newlines survive."""
        assert classify("[CONTENT] Hello") == Text("Hello")
        assert classify('[CONTENT_DELTA] "line\\nnext"') == Text("line\nnext", delta=True)

    def test_delta_without_json_is_kept_raw(self) -> None:
        assert classify("[CONTENT_DELTA] raw") == Text("raw", delta=True)

    def test_thinking(self) -> None:
        assert classify("[THINKING] hmm") == Thinking("hmm")
        assert classify('[THINKING_DELTA] "h"') == Thinking("h", delta=True)

    def test_session_id(self) -> None:
        assert classify("[SESSION_ID] abc-123") == SessionId("abc-123")

    @pytest.mark.parametrize(
        "line, name",
        [
            ("[STREAM_START]", "stream_start"),
            ("[STREAM_END]", "stream_end"),
            ("[MESSAGE_START]", "message_start"),
            ("[MESSAGE_END]", "message_end"),
            ('[SLASH_COMMANDS] ["/help"]', "slash_commands"),
            ('[TOOL_RESULT] {"ok": true}', "tool_result"),
        ],
    )
    def test_markers(self, line: str, name: str) -> None:
        event = classify(line)
        assert isinstance(event, Marker)
        assert event.name == name

    @pytest.mark.parametrize(
        "line",
        [
            "[UNCAUGHT_ERROR] TypeError",
            "[UNHANDLED_REJECTION] x",
            "[COMMAND_ERROR] x",
            "[STARTUP_ERROR] x",
            "[ERROR] x",
            "[STDIN_ERROR] x",
            "[STDIN_PARSE_ERROR] x",
            "[GET_SESSION_ERROR] x",
            "[PERSIST_ERROR] x",
        ],
    )
    def test_error_markers_are_diagnostics(self, line: str) -> None:
        event = classify(line)
        assert isinstance(event, Diagnostic)
        assert event.line == line
        assert error_marker(line) == event.marker

    def test_unknown_tag_is_a_log_line(self) -> None:
        assert classify("[DEBUG] starting") == NodeLog("[DEBUG] starting")


class TestJsonLines:
    """Test the one-object-per-line dialect."""

    def test_permission_request(self) -> None:
        line = json.dumps({"type": "permission_request", "id": 4, "toolName": "Bash",
                           "toolInput": {"command": "ls"}})
        assert classify(line) == PermissionRequest(4, "Bash", {"command": "ls"})

    def test_permission_request_tolerates_bad_fields(self) -> None:
        event = classify('{"type": "permission_request", "id": "x", "toolInput": []}')
        assert event == PermissionRequest(0, "", {})

    def test_question_and_plan(self) -> None:
        question = classify('{"type": "ask_user_question", "id": 5, "questions": [{"question": "?"}]}')
        assert question == QuestionRequest(5, [{"question": "?"}])

        plan = classify('{"type": "plan_approval", "id": 6, "plan": "steps"}')
        assert plan == PlanRequest(6, "steps", [])

    def test_streaming_types(self) -> None:
        assert classify('{"type": "content", "text": "a"}') == Text("a")
        assert classify('{"type": "content_delta", "delta": "b"}') == Text("b", delta=True)
        assert classify('{"type": "thinking_delta", "delta": "c"}') == Thinking("c", delta=True)
        assert classify('{"type": "session_id", "sessionId": "s"}') == SessionId("s")

    def test_event_envelope_is_a_message(self) -> None:
        event = classify('{"type": "event", "event": {"type": "user", "text": "hi"}}')
        assert isinstance(event, Message)
        assert event.type == "user"

    def test_error_and_done(self) -> None:
        assert classify('{"type": "error", "message": "bad"}') == SendError("bad")
        assert classify('{"type": "done"}') == Marker("done")

    def test_unknown_type_passes_through(self) -> None:
        line = '{"type": "usage", "tokens": 3}'
        assert classify(line) == Passthrough("usage", line)


class TestOtherLines:
    """Test blank and free-form output."""

    @pytest.mark.parametrize("line", ["", "   ", "\t"])
    def test_blank_lines_are_skipped(self, line: str) -> None:
        assert classify(line) is None

    def test_plain_text(self) -> None:
        assert classify("npm WARN something") == NodeLog("npm WARN something")

    def test_json_array_is_a_log_line(self) -> None:
        assert classify("[1, 2, 3]") == NodeLog("[1, 2, 3]")
