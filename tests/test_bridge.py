"""Tests for streaming command execution against the fake bridge script."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

from claudebridge.bridge.base import CommandState
from claudebridge.bridge.claude import ClaudeSDKBridge
from claudebridge.bridge.directory import BridgeDirectoryResolver
from claudebridge.bridge.node_detector import NodeDetector
from claudebridge.bridge.process_manager import ProcessManager
from claudebridge.bridge.result import INTERRUPTED_MESSAGE
from claudebridge.errors import ErrorKind
from claudebridge.permission.service import PermissionService
from tests.utils import RecordingCallback, ScriptedPresenter, fake_node, make_request, wait_until


def tool_result(callback: RecordingCallback) -> dict:
    """The stdin reply the fake bridge echoed back."""
    return json.loads(callback.of_type("tool_result")[0])


class TestSuccessfulCommand:
    """Test a command that streams and exits cleanly."""

    async def test_streamed_reply(self, bridge: ClaudeSDKBridge, callback: RecordingCallback) -> None:
        result = await bridge.send_message("c1", make_request("hello"), callback)

        assert result.success is True
        assert result.error is None
        assert result.exit_code == 0
        assert result.final_result == "Hello"
        assert result.session_id == "sess-1"
        assert result.message_count == 2
        assert [m["type"] for m in result.messages] == ["assistant", "result"]

        assert callback.of_type("content_delta") == ["Hel", "lo"]
        assert callback.of_type("session_id") == ["sess-1"]
        assert callback.of_type("stream_start") == [""]
        assert callback.completed == [result]
        assert callback.errors == []

    async def test_channel_released_after_exit(
        self, bridge: ClaudeSDKBridge, process_manager: ProcessManager, callback: RecordingCallback
    ) -> None:
        await bridge.send_message("c1", make_request("hello"), callback)

        assert bridge.get_channel_state("c1") is None
        assert process_manager.get_process("c1") is None
        assert bridge.get_active_process_count() == 0

    async def test_environment_and_scratch_cleanup(
        self, bridge: ClaudeSDKBridge, process_manager: ProcessManager, callback: RecordingCallback
    ) -> None:
        result = await bridge.send_message("c1", make_request("env"), callback)
        seen = json.loads(result.final_result)
        temp_dir = process_manager.prepare_temp_dir()

        assert seen["useStdin"] == "true"
        assert seen["args"] == ["claude", "send"]
        assert seen["permissionDir"]
        assert Path(seen["tmp"]) == temp_dir.absolute()
        assert not (temp_dir / "claude-scratch-cwd").exists()

    async def test_attachments_select_operation(
        self, bridge: ClaudeSDKBridge, callback: RecordingCallback
    ) -> None:
        attachment = {"fileName": "a.png", "mediaType": "image/png", "data": "AA=="}
        result = await bridge.send_message(
            "c1", make_request("env", attachments=[attachment]), callback
        )
        assert json.loads(result.final_result)["args"] == ["claude", "sendWithAttachments"]

    async def test_user_cwd_used_when_it_exists(
        self, bridge: ClaudeSDKBridge, callback: RecordingCallback, tmp_path: Path
    ) -> None:
        project = tmp_path / "project"
        project.mkdir()
        result = await bridge.send_message("c1", make_request("env", cwd=str(project)), callback)
        seen = json.loads(result.final_result)

        assert Path(seen["cwd"]).resolve() == project.resolve()
        assert seen["projectPath"] == str(project)

    async def test_missing_cwd_falls_back_to_bridge_dir(
        self, bridge: ClaudeSDKBridge, bridge_dir: Path, callback: RecordingCallback, tmp_path: Path
    ) -> None:
        result = await bridge.send_message(
            "c1", make_request("env", cwd=str(tmp_path / "gone")), callback
        )
        assert Path(json.loads(result.final_result)["cwd"]).resolve() == bridge_dir.resolve()


class TestFailedCommand:
    """Test failure reporting."""

    async def test_non_zero_exit(self, bridge: ClaudeSDKBridge, callback: RecordingCallback) -> None:
        result = await bridge.send_message("c1", make_request("fail"), callback)

        assert result.success is False
        assert result.exit_code == 1
        assert result.error_kind is ErrorKind.NON_ZERO_EXIT
        assert result.error == "Process exited with code: 1\n\nDetails: [UNCAUGHT_ERROR] boom"
        assert callback.errors == [result.error]
        assert callback.completed == []
        assert callback.of_type("node_log") == ["[UNCAUGHT_ERROR] boom"]

    async def test_send_error_latched(self, bridge: ClaudeSDKBridge, callback: RecordingCallback) -> None:
        """Test the bridge's own error survives the exit code and is reported once."""
        result = await bridge.send_message("c1", make_request("send_error"), callback)

        assert result.success is False
        assert result.error_kind is ErrorKind.SEND_ERROR
        assert result.error.startswith("API key missing")
        assert "**Environment Diagnostics**" in result.error
        assert f"Node.js path: `{sys.executable}`" in result.error
        assert callback.errors == [result.error]

    async def test_bridge_not_ready(
        self,
        process_manager: ProcessManager,
        node_detector: NodeDetector,
        callback: RecordingCallback,
        tmp_path: Path,
    ) -> None:
        sdk = ClaudeSDKBridge(
            process_manager,
            node_detector=node_detector,
            resolver=BridgeDirectoryResolver(str(tmp_path / "not-extracted")),
        )
        result = await sdk.send_message("c1", make_request("hello"), callback)

        assert result.success is False
        assert result.error_kind is ErrorKind.BRIDGE_NOT_READY
        assert "not ready" in result.error
        assert callback.errors == [result.error]
        assert process_manager.get_active_process_count() == 0

    async def test_spawn_failure(
        self,
        process_manager: ProcessManager,
        bridge_dir: Path,
        callback: RecordingCallback,
        tmp_path: Path,
    ) -> None:
        detector = NodeDetector()
        detector.set_node_executable(str(tmp_path / "no-such-node"))
        sdk = ClaudeSDKBridge(
            process_manager, node_detector=detector, resolver=BridgeDirectoryResolver(str(bridge_dir))
        )

        result = await sdk.send_message("c1", make_request("hello"), callback)

        assert result.success is False
        assert result.error_kind is ErrorKind.SPAWN_FAILED
        assert callback.errors == [result.error]

    @pytest.mark.skipif(sys.platform == "win32", reason="uses /bin/sh scripts")
    async def test_unsupported_node_refused(
        self,
        process_manager: ProcessManager,
        bridge_dir: Path,
        callback: RecordingCallback,
        tmp_path: Path,
    ) -> None:
        """Test a manually chosen Node.js below the minimum never runs a command."""
        detector = NodeDetector()
        node = fake_node(tmp_path / "old", version="v16.20.0")
        assert (await detector.verify_and_cache_node_path(str(node))).found
        sdk = ClaudeSDKBridge(
            process_manager, node_detector=detector, resolver=BridgeDirectoryResolver(str(bridge_dir))
        )

        result = await sdk.send_message("c1", make_request("hello"), callback)
        status = await sdk.check_environment()
        sdk.close()

        assert result.success is False
        assert result.error_kind is ErrorKind.NODE_VERSION_UNSUPPORTED
        assert "v16.20.0" in result.error
        assert result.exit_code is None
        assert callback.errors == [result.error]
        assert callback.of_type("content_delta") == []
        assert not status.ok
        assert status.error_kind is ErrorKind.NODE_VERSION_UNSUPPORTED


class TestInterrupt:
    """Test user interrupts."""

    async def test_interrupt_running_command(
        self, bridge: ClaudeSDKBridge, process_manager: ProcessManager, callback: RecordingCallback
    ) -> None:
        task = bridge.send_message("c1", make_request("sleep"), callback)
        await wait_until(lambda: callback.of_type("stream_start"))
        assert bridge.get_channel_state("c1") is CommandState.RUNNING

        assert await bridge.interrupt_channel("c1") is True
        result = await task

        assert result.success is False
        assert result.error == INTERRUPTED_MESSAGE
        assert result.error_kind is ErrorKind.INTERRUPTED
        assert callback.completed == [result]
        assert callback.errors == []
        assert process_manager.get_active_process_count() == 0

    async def test_interrupt_before_spawn(
        self, bridge: ClaudeSDKBridge, process_manager: ProcessManager, callback: RecordingCallback
    ) -> None:
        """Test an interrupt that lands while Node.js is still being resolved."""
        task = bridge.send_message("c1", make_request("sleep"), callback)
        assert await bridge.interrupt_channel("c1") is True

        result = await task

        assert result.error == INTERRUPTED_MESSAGE
        assert result.exit_code is None
        assert callback.of_type("stream_start") == []
        assert process_manager.get_active_process_count() == 0

    async def test_interrupt_resolves_pending_dialog(
        self,
        bridge: ClaudeSDKBridge,
        presenter: ScriptedPresenter,
        permission_service: PermissionService,
        callback: RecordingCallback,
    ) -> None:
        task = bridge.send_message("c1", make_request("permission"), callback)
        await wait_until(lambda: presenter.dialogs)

        await bridge.interrupt_channel("c1")
        result = await task

        assert result.error == INTERRUPTED_MESSAGE
        assert permission_service.pending_count() == 0
        assert presenter.closed == [presenter.dialogs[0].request_id]

    async def test_restart_channel(self, bridge: ClaudeSDKBridge, callback: RecordingCallback) -> None:
        task = bridge.send_message("c1", make_request("sleep"), callback)
        await wait_until(lambda: callback.of_type("stream_start"))

        reply = await bridge.restart_channel("c1", session_id="s2")

        assert task.done()
        assert task.result().error == INTERRUPTED_MESSAGE
        assert reply == {
            "success": True,
            "channelId": "c1",
            "sessionId": "s2",
            "message": "claude channel ready (auto-launch on first send)",
        }

    async def test_cleanup_all_processes(
        self, bridge: ClaudeSDKBridge, callback: RecordingCallback
    ) -> None:
        task = bridge.send_message("c1", make_request("sleep"), callback)
        await wait_until(lambda: callback.of_type("stream_start"))

        assert await bridge.cleanup_all_processes() == 1
        assert task.done()
        result = task.result()
        assert result.success is False
        assert result.error == INTERRUPTED_MESSAGE
        assert result.error_kind is ErrorKind.INTERRUPTED
        assert callback.completed == [result]
        assert callback.errors == []
        assert bridge.get_active_process_count() == 0

    async def test_cleanup_resolves_pending_dialogs(
        self,
        bridge: ClaudeSDKBridge,
        presenter: ScriptedPresenter,
        permission_service: PermissionService,
        callback: RecordingCallback,
    ) -> None:
        task = bridge.send_message("c1", make_request("permission"), callback)
        await wait_until(lambda: presenter.dialogs)

        await bridge.cleanup_all_processes()

        assert task.result().error_kind is ErrorKind.INTERRUPTED
        assert permission_service.pending_count() == 0


class TestSingleProcessPerChannel:
    """Test that follow-ups reuse the running process."""

    async def test_followup_written_to_live_process(
        self, bridge: ClaudeSDKBridge, process_manager: ProcessManager, callback: RecordingCallback
    ) -> None:
        first = bridge.send_message("c1", make_request("followup"), callback)
        second = bridge.send_message("c1", make_request("second turn"), RecordingCallback())

        assert second is first
        result = await first
        assert result.final_result == "second turn"
        assert process_manager.get_active_process_count() == 0

    async def test_channels_are_independent(self, bridge: ClaudeSDKBridge) -> None:
        one, two = RecordingCallback(), RecordingCallback()
        first = bridge.send_message("c1", make_request("alpha"), one)
        second = bridge.send_message("c2", make_request("beta"), two)

        assert (await first).final_result == "echo:alpha"
        assert (await second).final_result == "echo:beta"


class TestDecisions:
    """Test permission, question and plan round trips over stdin."""

    async def test_permission_allowed(
        self, bridge: ClaudeSDKBridge, presenter: ScriptedPresenter, callback: RecordingCallback
    ) -> None:
        presenter.reply = lambda dialog: {"allow": True}

        result = await bridge.send_message("c1", make_request("permission"), callback)

        dialog = presenter.dialogs[0]
        assert dialog.tool_name == "Write"
        assert dialog.channel_id == "c1"
        assert dialog.inputs == {"file_path": "a.txt"}
        assert tool_result(callback) == {"type": "response", "id": 7, "allow": True}
        assert result.final_result == "allowed"

    async def test_permission_denied_with_message(
        self, bridge: ClaudeSDKBridge, presenter: ScriptedPresenter, callback: RecordingCallback
    ) -> None:
        presenter.reply = lambda dialog: {"allow": False, "rejectMessage": "not there"}

        result = await bridge.send_message("c1", make_request("permission"), callback)

        assert tool_result(callback) == {
            "type": "response",
            "id": 7,
            "allow": False,
            "message": "not there",
        }
        assert result.final_result == "denied"

    async def test_edited_input_forwarded(
        self, bridge: ClaudeSDKBridge, presenter: ScriptedPresenter, callback: RecordingCallback
    ) -> None:
        presenter.reply = lambda dialog: {"allow": True, "updatedInput": {"file_path": "b.txt"}}

        await bridge.send_message("c1", make_request("permission"), callback)

        assert tool_result(callback)["updatedInput"] == {"file_path": "b.txt"}

    async def test_without_permission_service_denies(
        self,
        process_manager: ProcessManager,
        node_detector: NodeDetector,
        bridge_dir: Path,
        callback: RecordingCallback,
    ) -> None:
        sdk = ClaudeSDKBridge(
            process_manager, node_detector=node_detector, resolver=BridgeDirectoryResolver(str(bridge_dir))
        )
        result = await sdk.send_message("c1", make_request("permission"), callback)

        assert tool_result(callback)["allow"] is False
        assert result.final_result == "denied"

    async def test_output_held_until_decision(
        self,
        bridge: ClaudeSDKBridge,
        presenter: ScriptedPresenter,
        permission_service: PermissionService,
        callback: RecordingCallback,
    ) -> None:
        """Test transcript output behind a pending decision is replayed in order."""
        task = bridge.send_message("c1", make_request("permission_then_text"), callback)
        await wait_until(lambda: presenter.dialogs)
        await wait_until(lambda: bridge._runs["c1"].held)

        assert callback.of_type("content_delta") == []

        permission_service.submit_permission_decision(
            {"requestId": presenter.dialogs[0].request_id, "allow": True}
        )
        result = await task

        assert callback.of_type("content_delta") == ["after", "-reply"]
        assert result.final_result == "after-reply"

    async def test_question_answers(
        self, bridge: ClaudeSDKBridge, presenter: ScriptedPresenter, callback: RecordingCallback
    ) -> None:
        presenter.reply = lambda dialog: {"answers": {"Color?": "red"}}

        await bridge.send_message("c1", make_request("question"), callback)

        assert presenter.dialogs[0].questions == [{"question": "Color?", "options": [{"label": "red"}]}]
        assert tool_result(callback) == {
            "type": "response",
            "id": 11,
            "allow": True,
            "answers": {"Color?": "red"},
        }

    async def test_question_cancelled(
        self, bridge: ClaudeSDKBridge, presenter: ScriptedPresenter, callback: RecordingCallback
    ) -> None:
        presenter.reply = lambda dialog: {"cancelled": True}

        await bridge.send_message("c1", make_request("question"), callback)

        assert tool_result(callback) == {"type": "response", "id": 11, "allow": False}

    async def test_plan_approved_with_mode(
        self, bridge: ClaudeSDKBridge, presenter: ScriptedPresenter, callback: RecordingCallback
    ) -> None:
        presenter.reply = lambda dialog: {"approved": True, "newMode": "acceptEdits"}

        await bridge.send_message("c1", make_request("plan"), callback)

        assert presenter.dialogs[0].plan == "1. do it"
        assert tool_result(callback) == {
            "type": "response",
            "id": 12,
            "allow": True,
            "approved": True,
            "newMode": "acceptEdits",
        }

    async def test_plan_cancelled(
        self, bridge: ClaudeSDKBridge, presenter: ScriptedPresenter, callback: RecordingCallback
    ) -> None:
        presenter.reply = lambda dialog: {"cancelled": True}

        await bridge.send_message("c1", make_request("plan"), callback)

        assert tool_result(callback) == {
            "type": "response",
            "id": 12,
            "allow": False,
            "cancelled": True,
        }


class TestChannelLifecycle:
    """Test the non-streaming channel operations."""

    def test_launch_channel(self, bridge: ClaudeSDKBridge) -> None:
        assert bridge.launch_channel("c9") == {
            "success": True,
            "channelId": "c9",
            "message": "claude channel ready (auto-launch on first send)",
        }

    async def test_check_environment(self, bridge: ClaudeSDKBridge, bridge_dir: Path) -> None:
        status = await bridge.check_environment()

        assert status.ok
        assert status.node_path == sys.executable
        assert status.bridge_dir == str(bridge_dir.resolve())

    async def test_check_environment_not_ready(
        self, process_manager: ProcessManager, node_detector: NodeDetector, tmp_path: Path
    ) -> None:
        sdk = ClaudeSDKBridge(
            process_manager,
            node_detector=node_detector,
            resolver=BridgeDirectoryResolver(str(tmp_path / "missing")),
        )
        status = await sdk.check_environment()

        assert not status.ok
        assert status.error_kind is ErrorKind.BRIDGE_NOT_READY

    async def test_unknown_channel_interrupt(self, bridge: ClaudeSDKBridge) -> None:
        assert await bridge.interrupt_channel("nobody") is False
