"""Shared utilities for msfs-sdk-tools."""

from __future__ import annotations


def format_size(size: int) -> str:
    """Format byte size as human-readable string.

    Example:
        >>> format_size(1536)
        '1.5 KB'
    """
    if size < 0:
        return "0 B"

    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024.0:
            return f"{size} B" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024.0
    return f"{value:.1f} TB"


def display_name(version: str) -> str:
    """Human name of a product line, e.g. ``msfs2024`` -> ``MSFS 2024``."""
    if version.lower().startswith("msfs"):
        return f"MSFS {version[4:]}"
    return version
