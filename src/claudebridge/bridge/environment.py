"""Per-process environment preparation for bridge children.

All functions mutate the given environment mapping in place.
"""

from __future__ import annotations

import os
import sys
import tempfile
from collections.abc import MutableMapping
from pathlib import Path

from claudebridge.logging import get_logger

log = get_logger("env")

PERMISSION_DIR_ENV = "CLAUDE_PERMISSION_DIR"
USE_STDIN_ENV = "CLAUDE_USE_STDIN"

_IGNORED_CWD_VALUES = ("", "undefined", "null")


def is_usable_cwd(cwd: str | None) -> bool:
    """False for empty values and the "undefined"/"null" a UI may send."""
    return cwd is not None and cwd not in _IGNORED_CWD_VALUES


def _is_windows() -> bool:
    return sys.platform == "win32"


def _path_contains(path_env: str, target: str) -> bool:
    if _is_windows():
        return target.lower() in path_env.lower()
    return target in path_env


def _extra_search_dirs() -> list[str]:
    if _is_windows():
        candidates = [
            (os.environ.get("ProgramFiles"), "nodejs"),
            (os.environ.get("APPDATA"), "npm"),
            (os.environ.get("LOCALAPPDATA"), os.path.join("Programs", "nodejs")),
        ]
        return [os.path.join(base, rel) for base, rel in candidates if base]
    return [
        "/usr/local/bin",
        "/opt/homebrew/bin",
        "/usr/bin",
        "/bin",
        "/usr/sbin",
        "/sbin",
        str(Path.home() / ".nvm" / "current" / "bin"),
    ]


class EnvironmentConfigurator:
    """Builds the environment a bridge child runs with."""

    def __init__(self, permission_dir: str | None = None) -> None:
        self._permission_dir = permission_dir
        self._cached_permission_dir: str | None = None

    def update_process_environment(
        self, env: MutableMapping[str, str], node_executable: str | None
    ) -> None:
        """Put the Node.js directory and common install dirs on PATH.

        Also defaults HOME and sets the permission directory variable.
        """
        path = env.get("PATH", "")
        parts = [path] if path else []

        if node_executable and node_executable != "node":
            node_dir = os.path.dirname(node_executable)
            if node_dir and not _path_contains(path, node_dir):
                parts.append(node_dir)

        for extra in _extra_search_dirs():
            if not _path_contains(path, extra):
                parts.append(extra)

        new_path = os.pathsep.join(parts)
        if _is_windows():
            for key in [k for k in env if k.upper() == "PATH"]:
                del env[key]
            env["Path"] = new_path
        env["PATH"] = new_path

        if not env.get("HOME"):
            env["HOME"] = str(Path.home())

        self.configure_permission_env(env)

    def configure_permission_env(self, env: MutableMapping[str, str]) -> None:
        permission_dir = self.get_permission_directory()
        if permission_dir:
            env.setdefault(PERMISSION_DIR_ENV, permission_dir)

    def get_permission_directory(self) -> str:
        """Directory shared with the bridge for permission files; created on demand."""
        if self._cached_permission_dir is not None:
            return self._cached_permission_dir

        directory = Path(self._permission_dir or Path(tempfile.gettempdir()) / "claude-permission")
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            log.error("Failed to prepare permission dir %s: %s", directory, e)
        self._cached_permission_dir = str(directory.absolute())
        return self._cached_permission_dir

    def configure_temp_dir(self, env: MutableMapping[str, str], temp_dir: Path | None) -> None:
        if temp_dir is None:
            return
        tmp_path = str(Path(temp_dir).absolute())
        env["TMPDIR"] = tmp_path
        env["TEMP"] = tmp_path
        env["TMP"] = tmp_path

    def configure_project_path(self, env: MutableMapping[str, str], cwd: str | None) -> None:
        if not is_usable_cwd(cwd):
            return
        env["IDEA_PROJECT_PATH"] = cwd
        env["PROJECT_PATH"] = cwd

    def configure_attachment_env(self, env: MutableMapping[str, str], has_attachments: bool) -> None:
        if has_attachments:
            env[USE_STDIN_ENV] = "true"

    def clear_cache(self) -> None:
        self._cached_permission_dir = None
