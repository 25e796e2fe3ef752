"""Bridge process layer: Node.js detection, supervision and the streaming protocol."""

from claudebridge.bridge.base import (
    BaseSDKBridge,
    CommandState,
    EnvironmentStatus,
    MessageCallback,
    NullCallback,
    SendRequest,
)
from claudebridge.bridge.claude import ClaudeSDKBridge
from claudebridge.bridge.directory import BridgeDirectoryResolver
from claudebridge.bridge.environment import EnvironmentConfigurator
from claudebridge.bridge.json_output import extract_last_json_line, parse_last_json_object
from claudebridge.bridge.node_detector import (
    DetectionMethod,
    NodeDetectionResult,
    NodeDetector,
    is_version_supported,
    parse_major_version,
)
from claudebridge.bridge.process_manager import ProcessManager, terminate_process
from claudebridge.bridge.result import SDKResult
from claudebridge.bridge.rewind import RewindOperations

__all__ = [
    "BaseSDKBridge",
    "BridgeDirectoryResolver",
    "ClaudeSDKBridge",
    "CommandState",
    "DetectionMethod",
    "EnvironmentConfigurator",
    "EnvironmentStatus",
    "MessageCallback",
    "NodeDetectionResult",
    "NodeDetector",
    "NullCallback",
    "ProcessManager",
    "RewindOperations",
    "SDKResult",
    "SendRequest",
    "extract_last_json_line",
    "is_version_supported",
    "parse_last_json_object",
    "parse_major_version",
    "terminate_process",
]
