"""Locate and validate a Node.js executable.

Detection order:
1. Explicitly configured path (config ``node.path`` / ``CB_NODE_PATH``)
2. ``which node`` in a login shell (zsh, then bash) or ``where node`` on Windows
3. Known install locations (nvm, Homebrew, Volta, fnm, system)
4. Directories on PATH
5. A direct ``node --version`` call
"""

from __future__ import annotations

import asyncio
import os
import re
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from claudebridge.errors import NodeNotFoundError, NodeVersionError
from claudebridge.logging import get_logger

log = get_logger("node")

MIN_NODE_MAJOR_VERSION = 18

VERIFY_TIMEOUT = 5.0

_WINDOWS_NODE_PATHS = (
    r"C:\Program Files\nodejs\node.exe",
    r"C:\Program Files (x86)\nodejs\node.exe",
    r"C:\ProgramData\chocolatey\bin\node.exe",
    r"%USERPROFILE%\scoop\apps\nodejs\current\node.exe",
    r"%USERPROFILE%\scoop\apps\nodejs-lts\current\node.exe",
    r"%APPDATA%\nvm\current\node.exe",
    r"%USERPROFILE%\.fnm\node-versions\default\installation\node.exe",
    r"%USERPROFILE%\.volta\bin\node.exe",
    r"%LOCALAPPDATA%\Programs\nodejs\node.exe",
)

_MAJOR_RE = re.compile(r"^v?(\d+)")


def _is_windows() -> bool:
    return sys.platform == "win32"


class DetectionMethod(Enum):
    CONFIGURED = "configured"
    WHERE_COMMAND = "where_command"
    WHICH_COMMAND = "which_command"
    KNOWN_PATH = "known_path"
    PATH_VARIABLE = "path_variable"
    FALLBACK = "fallback"

    @property
    def description(self) -> str:
        return _METHOD_DESCRIPTIONS[self]


_METHOD_DESCRIPTIONS = {
    DetectionMethod.CONFIGURED: "Configured path",
    DetectionMethod.WHERE_COMMAND: "Windows where command",
    DetectionMethod.WHICH_COMMAND: "Unix which command",
    DetectionMethod.KNOWN_PATH: "Known installation path",
    DetectionMethod.PATH_VARIABLE: "PATH environment variable",
    DetectionMethod.FALLBACK: "Direct node invocation",
}


@dataclass
class NodeDetectionResult:
    """Outcome of a Node.js search, successful or not."""

    found: bool
    node_path: str | None = None
    node_version: str | None = None
    method: DetectionMethod | None = None
    tried_paths: list[str] = field(default_factory=list)
    error_message: str | None = None

    @classmethod
    def success(
        cls,
        node_path: str,
        node_version: str,
        method: DetectionMethod,
        tried_paths: list[str] | None = None,
    ) -> NodeDetectionResult:
        return cls(True, node_path, node_version, method, list(tried_paths or []))

    @classmethod
    def failure(
        cls, error_message: str, tried_paths: list[str] | None = None
    ) -> NodeDetectionResult:
        return cls(False, tried_paths=list(tried_paths or []), error_message=error_message)

    def user_friendly_message(self) -> str:
        """Render the result as guidance for the user."""
        if self.found:
            return f"Node.js detected: {self.node_path} ({self.node_version})"

        lines = ["Node.js not found", ""]
        if self.error_message:
            lines += [f"Error: {self.error_message}", ""]
        if self.tried_paths:
            lines.append("Tried paths:")
            lines += [f"  - {path}" for path in self.tried_paths]
            lines.append("")

        if _is_windows():
            lines += [
                "Windows installation:",
                "1. Download and install Node.js from https://nodejs.org/",
                "2. Restart the application after installation",
                "3. Ensure the Node.js installation directory is on PATH",
            ]
        elif sys.platform == "darwin":
            lines += [
                "macOS installation:",
                "1. Using Homebrew: brew install node",
                "2. Or download from https://nodejs.org/",
            ]
        else:
            lines += [
                "Linux installation:",
                "1. Ubuntu/Debian: sudo apt install nodejs",
                "2. CentOS/RHEL: sudo yum install nodejs",
                "3. Or use nvm: https://github.com/nvm-sh/nvm",
            ]
        return "\n".join(lines) + "\n"


def parse_major_version(version: str | None) -> int:
    """Major version from "v20.10.0" or "20.10.0"; 0 when unparseable."""
    if not version:
        return 0
    match = _MAJOR_RE.match(version.strip())
    return int(match.group(1)) if match else 0


def is_version_supported(
    version: str | None, minimum: int = MIN_NODE_MAJOR_VERSION
) -> bool:
    return parse_major_version(version) >= minimum


async def _first_output_line(*cmd: str, timeout: float = VERIFY_TIMEOUT) -> tuple[int | None, str]:
    """Run a short command and return (exit code, first stdout line)."""
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        log.debug("    Could not run %s: %s", cmd[0], e)
        return None, ""

    try:
        stdout_data, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        try:
            process.kill()
            await process.wait()
        except ProcessLookupError:
            pass  # Process already gone
        log.debug("    Timed out: %s", " ".join(cmd))
        return None, ""

    output = stdout_data.decode("utf-8", errors="replace").strip()
    first_line = output.splitlines()[0].strip() if output else ""
    return process.returncode, first_line


def _expand_windows_vars(path: str) -> str:
    home = str(Path.home())
    replacements = {
        "%USERPROFILE%": home,
        "%APPDATA%": os.environ.get("APPDATA", ""),
        "%LOCALAPPDATA%": os.environ.get("LOCALAPPDATA", ""),
    }
    for var, value in replacements.items():
        path = path.replace(var, value)
    return path


def _homebrew_sort_key(path: Path) -> int:
    # "node" (unversioned) sorts last, "node@22" before "node@18"
    if path.name == "node":
        return 0
    return parse_major_version(path.name[len("node@"):])


class NodeDetector:
    """Finds a Node.js executable and caches the answer.

    Args:
        configured_path: Executable to try before any search.
        min_major_version: Oldest supported major version.
    """

    def __init__(
        self,
        configured_path: str | None = None,
        min_major_version: int = MIN_NODE_MAJOR_VERSION,
    ) -> None:
        self._configured_path = configured_path
        self._min_major_version = min_major_version
        self._cached_executable: str | None = None
        self._cached_result: NodeDetectionResult | None = None

    @property
    def min_major_version(self) -> int:
        return self._min_major_version

    @property
    def cached_detection_result(self) -> NodeDetectionResult | None:
        return self._cached_result

    @property
    def cached_node_version(self) -> str | None:
        return self._cached_result.node_version if self._cached_result else None

    async def find_node_executable(self) -> str:
        """Return a usable Node.js path.

        Raises:
            NodeNotFoundError: Nothing usable was found.
            NodeVersionError: The detected Node.js is too old.
        """
        if self._cached_executable is not None:
            return self._cached_executable

        result = await self.detect_node_with_details()
        if not result.found or result.node_path is None:
            log.warning("Unable to detect Node.js")
            raise NodeNotFoundError(
                message=result.error_message or "Node.js not found",
                tried_paths=list(result.tried_paths),
                guidance=result.user_friendly_message(),
            )

        if not is_version_supported(result.node_version, self._min_major_version):
            raise NodeVersionError(
                path=result.node_path,
                version=result.node_version or "unknown",
                minimum=self._min_major_version,
            )

        self._cache(result)
        return result.node_path

    async def detect_node_with_details(self) -> NodeDetectionResult:
        """Search every location in order and report what was tried."""
        tried: list[str] = []
        log.info("Searching for Node.js (platform: %s)", sys.platform)

        for detect in (
            self._detect_configured,
            self._detect_via_system_command,
            self._detect_via_known_paths,
            self._detect_via_path,
            self._detect_via_fallback,
        ):
            result = await detect(tried)
            if result is not None:
                return result

        return NodeDetectionResult.failure("Node.js not found in any known paths", tried)

    async def verify_node_path(self, path: str) -> str | None:
        """Run ``path --version``; return the version string or None."""
        exit_code, version = await _first_output_line(path, "--version")
        if exit_code == 0 and version:
            return version
        return None

    async def verify_and_cache_node_path(self, path: str | None) -> NodeDetectionResult:
        """Validate a user-supplied path and make it the cached executable."""
        if not path:
            self.clear_cache()
            return NodeDetectionResult.failure("Node.js path not specified")

        version = await self.verify_node_path(path)
        if version is not None:
            result = NodeDetectionResult.success(path, version, DetectionMethod.CONFIGURED)
        else:
            result = NodeDetectionResult.failure(
                f"Unable to verify specified Node.js path: {path}"
            )
            self._cached_executable = None
        self._cache(result)
        return result

    def set_node_executable(self, path: str | None) -> None:
        """Use ``path`` without verification; clears any detection result."""
        self._cached_executable = path
        self._cached_result = None

    async def get_node_executable(self) -> str:
        if self._cached_executable is None:
            return await self.find_node_executable()
        return self._cached_executable

    def clear_cache(self) -> None:
        self._cached_executable = None
        self._cached_result = None

    def _cache(self, result: NodeDetectionResult) -> None:
        self._cached_result = result
        if result.found and result.node_path:
            self._cached_executable = result.node_path

    async def _check_candidate(
        self, path: str, method: DetectionMethod, tried: list[str]
    ) -> NodeDetectionResult | None:
        tried.append(path)
        version = await self.verify_node_path(path)
        if version is None:
            return None
        log.info("Found Node.js via %s: %s (%s)", method.description, path, version)
        return NodeDetectionResult.success(path, version, method, tried)

    async def _detect_configured(self, tried: list[str]) -> NodeDetectionResult | None:
        if not self._configured_path:
            return None
        return await self._check_candidate(
            self._configured_path, DetectionMethod.CONFIGURED, tried
        )

    async def _detect_via_system_command(self, tried: list[str]) -> NodeDetectionResult | None:
        if _is_windows():
            _, path = await _first_output_line("where", "node")
            if path:
                return await self._check_candidate(path, DetectionMethod.WHERE_COMMAND, tried)
            return None

        for shell in ("/bin/zsh", "/bin/bash"):
            if not Path(shell).exists():
                log.debug("  Skipping %s (not found)", shell)
                continue
            _, path = await _first_output_line(shell, "-l", "-c", "which node")
            if path.startswith("/") and "not found" not in path:
                result = await self._check_candidate(path, DetectionMethod.WHICH_COMMAND, tried)
                if result is not None:
                    return result
        return None

    def _known_paths(self) -> list[str]:
        home = Path.home()
        paths: list[str] = []

        if _is_windows():
            paths += [_expand_windows_vars(p) for p in _WINDOWS_NODE_PATHS]
            nvm_home = Path(os.environ.get("NVM_HOME") or Path(os.environ.get("APPDATA", "")) / "nvm")
            if nvm_home.is_dir():
                versions = sorted(
                    (d for d in nvm_home.iterdir() if d.is_dir() and d.name.startswith("v")),
                    key=lambda d: d.name,
                    reverse=True,
                )
                paths += [str(d / "node.exe") for d in versions]
            return paths

        nvm_dir = home / ".nvm" / "versions" / "node"
        if nvm_dir.is_dir():
            versions = sorted((d for d in nvm_dir.iterdir() if d.is_dir()), key=lambda d: d.name, reverse=True)
            paths += [str(d / "bin" / "node") for d in versions]

        for opt_dir in (Path("/opt/homebrew/opt"), Path("/usr/local/opt")):
            if opt_dir.is_dir():
                node_dirs = [d for d in opt_dir.iterdir() if d.name == "node" or d.name.startswith("node@")]
                node_dirs.sort(key=_homebrew_sort_key, reverse=True)
                paths += [str(d / "bin" / "node") for d in node_dirs]

        paths += [
            "/usr/local/bin/node",
            "/opt/homebrew/bin/node",
            "/usr/bin/node",
            str(home / ".volta" / "bin" / "node"),
            str(home / ".fnm" / "aliases" / "default" / "bin" / "node"),
        ]
        return paths

    async def _detect_via_known_paths(self, tried: list[str]) -> NodeDetectionResult | None:
        for path in self._known_paths():
            candidate = Path(path)
            if not candidate.exists():
                tried.append(path)
                continue
            if not _is_windows() and not os.access(candidate, os.X_OK):
                tried.append(path)
                log.debug("  Skipping non-executable: %s", path)
                continue
            result = await self._check_candidate(path, DetectionMethod.KNOWN_PATH, tried)
            if result is not None:
                return result
        return None

    async def _detect_via_path(self, tried: list[str]) -> NodeDetectionResult | None:
        path_env = os.environ.get("PATH", "")
        if not path_env:
            return None

        node_name = "node.exe" if _is_windows() else "node"
        for directory in path_env.split(os.pathsep):
            if not directory:
                continue
            candidate = Path(directory) / node_name
            if not candidate.exists():
                tried.append(str(candidate))
                continue
            result = await self._check_candidate(str(candidate), DetectionMethod.PATH_VARIABLE, tried)
            if result is not None:
                return result
        return None

    async def _detect_via_fallback(self, tried: list[str]) -> NodeDetectionResult | None:
        tried.append("node (direct call)")
        version = await self.verify_node_path("node")
        if version is None:
            return None
        return NodeDetectionResult.success("node", version, DetectionMethod.FALLBACK, tried)
