"""Extract the authoritative JSON result from noisy child-process output.

Bridge runtimes may print banners and diagnostics before the real result,
so the last line that parses as a JSON object wins.
"""

from __future__ import annotations

import json
from typing import Any


def _as_object(candidate: str) -> dict[str, Any] | None:
    try:
        value = json.loads(candidate)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def extract_last_json_line(text: str | None) -> str | None:
    """Return the last line of ``text`` that parses as a JSON object.

    If no single line parses, the whole (stripped) text is tried as one
    object, which covers pretty-printed results. Never raises.

    Args:
        text: Combined stdout/stderr of a finished process.

    Returns:
        The JSON text, or None when nothing parses.
    """
    if not text:
        return None

    for line in reversed(text.splitlines()):
        line = line.strip()
        if line.startswith("{") and _as_object(line) is not None:
            return line

    whole = text.strip()
    if whole.startswith("{") and _as_object(whole) is not None:
        return whole

    return None


def parse_last_json_object(text: str | None) -> dict[str, Any] | None:
    """Like extract_last_json_line, but returns the decoded object."""
    line = extract_last_json_line(text)
    if line is None:
        return None
    return _as_object(line)
