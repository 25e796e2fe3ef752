"""Configuration schema dataclasses for claudebridge.

Defines the structure of configuration at all levels (system, user, project).
All fields have defaults so partial configs merge together.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class NodeConfig:
    """Node.js runtime selection."""

    path: str | None = None  # Explicit executable; skips auto-detection
    min_major_version: int = 18


@dataclass
class BridgeConfig:
    """Location of the bundled bridge script."""

    dir: str | None = None  # Bridge installation directory
    script: str = "bridge.js"


@dataclass
class ProcessConfig:
    """Child process supervision.

    Example config.yaml:
        process:
          terminate_grace: 3.0
          kill_grace: 2.0
          temp_file_pattern: "claude-*-cwd"
    """

    terminate_grace: float = 3.0  # Seconds between terminate and forced kill
    kill_grace: float = 2.0  # Seconds to wait after forced kill
    exit_wait: float = 5.0  # Seconds to wait for exit after stdout closes
    temp_dir_name: str = "claude-agent-tmp"
    temp_file_pattern: str = "claude-*-cwd"  # Scratch files owned by the child


@dataclass
class TimeoutConfig:
    """Operation timeouts in seconds."""

    rewind: float = 60.0


@dataclass
class PermissionConfig:
    """Dialog wait policy.

    A timeout of None waits until the user answers, the channel is
    interrupted, or the presenter is shut down. A numeric timeout resolves
    the request to its safe default (deny / cancelled) when it fires.
    """

    permission_timeout: float | None = None
    question_timeout: float | None = None
    plan_timeout: float | None = None
    dialog_retries: int = 10  # Attempts to push a dialog to a presenter not yet loaded
    dialog_retry_delay: float = 0.2


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str | None = None  # DEBUG, INFO, WARNING, ERROR
    verbose: int | None = None  # 0-4, overrides level
    file: str | None = None  # Log file path


@dataclass
class Config:
    """Root configuration object."""

    node: NodeConfig = field(default_factory=NodeConfig)
    bridge: BridgeConfig = field(default_factory=BridgeConfig)
    process: ProcessConfig = field(default_factory=ProcessConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    permissions: PermissionConfig = field(default_factory=PermissionConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    extra: dict[str, Any] = field(default_factory=dict)  # Unknown top-level keys
