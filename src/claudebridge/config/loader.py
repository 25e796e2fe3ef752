"""Configuration file loading and caching.

Handles:
- YAML file parsing
- Environment variable overrides
- Config caching
- Conversion from dict to typed Config dataclass
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml

from claudebridge.config.merge import merge_configs
from claudebridge.config.paths import get_config_paths
from claudebridge.config.schema import (
    BridgeConfig,
    Config,
    LoggingConfig,
    NodeConfig,
    PermissionConfig,
    ProcessConfig,
    TimeoutConfig,
)

# Module logger (may not be configured yet at import time)
_log = logging.getLogger("claudebridge.config")

_cached_config: Config | None = None

_KNOWN_KEYS = {"node", "bridge", "process", "timeouts", "permissions", "logging"}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file, returning empty dict if not found or invalid."""
    if not path.exists():
        return {}

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
    except yaml.YAMLError as e:
        _log.warning("Invalid YAML in %s: %s", path, e)
        return {}
    except PermissionError:
        _log.debug("Permission denied reading %s", path)
        return {}
    except OSError as e:
        _log.warning("Error reading %s: %s", path, e)
        return {}


def env_overrides() -> dict[str, Any]:
    """Build config dict from environment variables (highest priority).

    CB_LOG       -> logging.file
    CB_NODE_PATH -> node.path
    CB_BRIDGE_DIR -> bridge.dir
    """
    overrides: dict[str, Any] = {}

    log_path = os.environ.get("CB_LOG")
    if log_path:
        overrides.setdefault("logging", {})["file"] = log_path

    node_path = os.environ.get("CB_NODE_PATH")
    if node_path:
        overrides.setdefault("node", {})["path"] = node_path

    bridge_dir = os.environ.get("CB_BRIDGE_DIR")
    if bridge_dir:
        overrides.setdefault("bridge", {})["dir"] = bridge_dir

    return overrides


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        _log.warning("Ignoring non-numeric timeout: %r", value)
        return None


def dict_to_config(data: dict[str, Any]) -> Config:
    """Convert merged dict to typed Config dataclass."""
    node_data = data.get("node", {})
    node = NodeConfig(
        path=node_data.get("path"),
        min_major_version=int(node_data.get("min_major_version", 18)),
    )

    bridge_data = data.get("bridge", {})
    bridge = BridgeConfig(
        dir=bridge_data.get("dir"),
        script=bridge_data.get("script", "bridge.js"),
    )

    process_data = data.get("process", {})
    process = ProcessConfig(
        terminate_grace=float(process_data.get("terminate_grace", 3.0)),
        kill_grace=float(process_data.get("kill_grace", 2.0)),
        exit_wait=float(process_data.get("exit_wait", 5.0)),
        temp_dir_name=process_data.get("temp_dir_name", "claude-agent-tmp"),
        temp_file_pattern=process_data.get("temp_file_pattern", "claude-*-cwd"),
    )

    timeout_data = data.get("timeouts", {})
    timeouts = TimeoutConfig(
        rewind=float(timeout_data.get("rewind", 60.0)),
    )

    perm_data = data.get("permissions", {})
    permissions = PermissionConfig(
        permission_timeout=_optional_float(perm_data.get("permission_timeout")),
        question_timeout=_optional_float(perm_data.get("question_timeout")),
        plan_timeout=_optional_float(perm_data.get("plan_timeout")),
        dialog_retries=int(perm_data.get("dialog_retries", 10)),
        dialog_retry_delay=float(perm_data.get("dialog_retry_delay", 0.2)),
    )

    log_data = data.get("logging", {})
    logging_config = LoggingConfig(
        level=log_data.get("level"),
        verbose=log_data.get("verbose"),
        file=log_data.get("file"),
    )

    extra = {k: v for k, v in data.items() if k not in _KNOWN_KEYS}

    return Config(
        node=node,
        bridge=bridge,
        process=process,
        timeouts=timeouts,
        permissions=permissions,
        logging=logging_config,
        extra=extra,
    )


def load_config(
    project_root: str | None = None,
    config_file: str | Path | None = None,
) -> Config:
    """Load and merge config from all sources.

    Priority order (highest to lowest):
    1. Environment variables
    2. ``config_file``, when given
    3. Project config ($project_root/.claudebridge/config.yaml)
    4. User config
    5. System config

    Args:
        project_root: Project directory for project-level config.
        config_file: Extra YAML file layered above the standard ones.

    Returns:
        Merged Config object.
    """
    global _cached_config

    cacheable = project_root is None and config_file is None
    if _cached_config is not None and cacheable:
        return _cached_config

    layers: list[dict[str, Any]] = []

    for path in get_config_paths(project_root):
        config_data = load_yaml_file(path)
        if config_data:
            _log.debug("Loaded config from %s", path)
            layers.append(config_data)

    if config_file is not None:
        path = Path(config_file)
        if not path.exists():
            _log.warning("Config file %s not found", path)
        layers.append(load_yaml_file(path))

    env_config = env_overrides()
    if env_config:
        layers.append(env_config)

    config = dict_to_config(merge_configs(*layers))

    # Only the global config is cached
    if cacheable:
        _cached_config = config

    return config


def get_config() -> Config:
    """Get the cached global config, loading it on first use."""
    if _cached_config is None:
        return load_config()
    return _cached_config


def reset_config() -> None:
    """Drop the cached config."""
    global _cached_config
    _cached_config = None

