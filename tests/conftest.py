"""Root pytest configuration for all tests."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from claudebridge.bridge.claude import ClaudeSDKBridge
from claudebridge.bridge.directory import BridgeDirectoryResolver
from claudebridge.bridge.environment import EnvironmentConfigurator
from claudebridge.bridge.node_detector import NodeDetector
from claudebridge.bridge.process_manager import ProcessManager
from claudebridge.config import reset_config
from claudebridge.config.schema import PermissionConfig, ProcessConfig
from claudebridge.permission.service import PermissionService
from tests.utils import FAKE_BRIDGE, RecordingCallback, ScriptedPresenter


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch: pytest.MonkeyPatch):
    """Keep host config and environment overrides out of tests."""
    for name in ("CB_LOG", "CB_NODE_PATH", "CB_BRIDGE_DIR"):
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def bridge_dir(tmp_path: Path) -> Path:
    """Bridge installation directory holding the fake bridge.js."""
    directory = tmp_path / "ai-bridge"
    directory.mkdir()
    (directory / "bridge.js").write_text(FAKE_BRIDGE, encoding="utf-8")
    return directory


@pytest.fixture
def node_detector() -> NodeDetector:
    """Detector pinned to the test interpreter, which runs the fake bridge."""
    detector = NodeDetector(min_major_version=0)
    detector.set_node_executable(sys.executable)
    return detector


@pytest.fixture
def process_manager(tmp_path: Path) -> ProcessManager:
    config = ProcessConfig(terminate_grace=1.0, kill_grace=1.0, exit_wait=2.0)
    return ProcessManager(config, temp_root=tmp_path / "tmp")


@pytest.fixture
def presenter() -> ScriptedPresenter:
    return ScriptedPresenter()


@pytest.fixture
def permission_service(presenter: ScriptedPresenter) -> PermissionService:
    service = PermissionService(
        presenter, PermissionConfig(dialog_retries=3, dialog_retry_delay=0.01)
    )
    presenter.service = service
    return service


@pytest.fixture
def bridge(
    process_manager: ProcessManager,
    permission_service: PermissionService,
    node_detector: NodeDetector,
    bridge_dir: Path,
):
    sdk = ClaudeSDKBridge(
        process_manager,
        permission_service,
        node_detector=node_detector,
        resolver=BridgeDirectoryResolver(str(bridge_dir)),
        env_configurator=EnvironmentConfigurator(),
        rewind_timeout=5.0,
    )
    yield sdk
    sdk.close()


@pytest.fixture
def callback() -> RecordingCallback:
    return RecordingCallback()
