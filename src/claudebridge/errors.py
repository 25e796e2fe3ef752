"""Error taxonomy for the bridge layer.

Expected, frequent failures (no JSON in output, node binary missing from a
candidate path) are reported as None or structured results by the lower
layers. The exceptions below are raised where a caller has to branch on the
failure; the bridge converts all of them into a failed SDKResult.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ErrorKind(Enum):
    """Terminal failure category attached to an SDKResult."""

    BRIDGE_NOT_READY = "bridge_not_ready"  # Bridge files not extracted yet; retry later
    NODE_NOT_FOUND = "node_not_found"
    NODE_VERSION_UNSUPPORTED = "node_version_unsupported"
    SPAWN_FAILED = "spawn_failed"
    STDIN_WRITE_FAILED = "stdin_write_failed"
    INTERRUPTED = "interrupted"
    NON_ZERO_EXIT = "non_zero_exit"
    SEND_ERROR = "send_error"
    INTERNAL = "internal"

    @property
    def is_configuration_error(self) -> bool:
        """True for user-actionable setup problems (never a crash)."""
        return self in (
            ErrorKind.BRIDGE_NOT_READY,
            ErrorKind.NODE_NOT_FOUND,
            ErrorKind.NODE_VERSION_UNSUPPORTED,
        )


class BridgeError(Exception):
    """Base class for bridge failures that carry an ErrorKind."""

    kind: ErrorKind = ErrorKind.INTERNAL


@dataclass
class NodeNotFoundError(BridgeError):
    """Raised when no usable Node.js executable could be located."""

    message: str = "Node.js not found"
    tried_paths: list[str] = field(default_factory=list)
    guidance: str = ""

    kind = ErrorKind.NODE_NOT_FOUND

    def __str__(self) -> str:
        return self.message


@dataclass
class BridgeNotReadyError(BridgeError):
    """Raised when the bridge directory or script is not installed yet.

    Distinct from a runtime failure: extraction may still be in progress and
    the caller should retry later.
    """

    location: str | None = None

    kind = ErrorKind.BRIDGE_NOT_READY

    def __str__(self) -> str:
        if self.location:
            return f"Bridge not ready: {self.location}"
        return "Bridge directory not ready (extraction in progress)"


@dataclass
class ProcessSpawnError(BridgeError):
    """Raised when the child process could not be started."""

    command: str
    reason: str

    kind = ErrorKind.SPAWN_FAILED

    def __str__(self) -> str:
        return f"Failed to start bridge process ({self.command}): {self.reason}"


@dataclass
class NodeVersionError(BridgeError):
    """Raised when the detected Node.js is older than the supported minimum."""

    path: str
    version: str
    minimum: int

    kind = ErrorKind.NODE_VERSION_UNSUPPORTED

    def __str__(self) -> str:
        return (
            f"Node.js {self.version} at {self.path} is not supported; "
            f"version {self.minimum} or newer is required"
        )


def describe_error(error: BaseException) -> str:
    """User-facing text for a failure, with setup guidance when available."""
    if isinstance(error, NodeNotFoundError) and error.guidance:
        return f"{error}\n\n{error.guidance}"
    return str(error) or type(error).__name__
