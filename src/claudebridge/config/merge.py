"""Cascading merge for layered configuration dicts."""

from __future__ import annotations

from typing import Any


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge ``override`` into a copy of ``base``.

    Rules:
    - Nested mappings merge recursively
    - Lists and scalars from ``override`` replace the base value
    - A None in ``override`` leaves the base value untouched, so a project
      file can mention a key without clearing the user's setting

    Returns:
        A new dictionary; neither input is modified.
    """
    merged = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def merge_configs(*layers: dict[str, Any]) -> dict[str, Any]:
    """Fold config layers from lowest to highest priority."""
    merged: dict[str, Any] = {}
    for layer in layers:
        if layer:
            merged = deep_merge(merged, layer)
    return merged
