"""Configuration management for claudebridge.

Hierarchical YAML-based configuration with:
- System-level config (/etc/claudebridge/ or %PROGRAMDATA%)
- User-level config (~/.config/claudebridge/ or %APPDATA%)
- Project-level config ($project_root/.claudebridge/)
- Environment variable overrides (highest priority)

Example usage:
    from claudebridge.config import load_config

    config = load_config(project_root="/path/to/project")
    print(config.node.min_major_version)
    print(config.permissions.permission_timeout)
"""

from claudebridge.config.loader import (
    get_config,
    load_config,
    reset_config,
)
from claudebridge.config.paths import (
    get_config_paths,
    get_project_config_path,
    get_system_config_path,
    get_user_config_path,
)
from claudebridge.config.schema import (
    BridgeConfig,
    Config,
    LoggingConfig,
    NodeConfig,
    PermissionConfig,
    ProcessConfig,
    TimeoutConfig,
)

__all__ = [
    "Config",
    "load_config",
    "get_config",
    "reset_config",
    "BridgeConfig",
    "LoggingConfig",
    "NodeConfig",
    "PermissionConfig",
    "ProcessConfig",
    "TimeoutConfig",
    "get_config_paths",
    "get_system_config_path",
    "get_user_config_path",
    "get_project_config_path",
]
