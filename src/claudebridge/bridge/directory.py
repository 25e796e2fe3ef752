"""Resolve the installed bridge script directory."""

from __future__ import annotations

from pathlib import Path

from claudebridge.logging import get_logger

log = get_logger("bridge")

DEFAULT_SCRIPT = "bridge.js"

# Searched after the configured directory, relative to the user's home
_HOME_CANDIDATES = (
    Path(".claudebridge") / "ai-bridge",
    Path(".claude-gui") / "ai-bridge",
)


class BridgeDirectoryResolver:
    """Finds the directory holding the bridge script.

    ``find_sdk_dir`` returns None, never raises, while nothing valid is
    installed; callers report that as "bridge not ready" and retry later.
    """

    def __init__(self, configured_dir: str | None = None, script: str = DEFAULT_SCRIPT) -> None:
        self._configured_dir = configured_dir
        self._script = script
        self._cached: Path | None = None

    @property
    def script(self) -> str:
        return self._script

    def is_valid_bridge_dir(self, directory: Path | None) -> bool:
        if directory is None or not directory.is_dir():
            return False
        return (directory / self._script).is_file()

    def find_sdk_dir(self) -> Path | None:
        if self._cached is not None and self.is_valid_bridge_dir(self._cached):
            return self._cached

        candidates: list[Path] = []
        if self._configured_dir:
            candidates.append(Path(self._configured_dir).expanduser())
        home = Path.home()
        candidates += [home / rel for rel in _HOME_CANDIDATES]

        for candidate in candidates:
            if self.is_valid_bridge_dir(candidate):
                self._cached = candidate.resolve()
                log.debug("Bridge directory: %s", self._cached)
                return self._cached

        log.info(
            "Bridge directory not ready; looked in: %s",
            ", ".join(str(c) for c in candidates),
        )
        return None

    def script_path(self) -> Path | None:
        directory = self.find_sdk_dir()
        return directory / self._script if directory else None

    def set_sdk_dir(self, path: str | None) -> None:
        self._configured_dir = path
        self._cached = None

    def clear_cache(self) -> None:
        self._cached = None
