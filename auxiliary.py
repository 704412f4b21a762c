#!/usr/bin/env python3
"""
Auxiliary utility functions for Therapeia

Provides size, duration and path formatting shared by the console output,
the log stream and the report templates.
"""

import glob
import os
import pathlib
from typing import Optional


def format_bytes(size_bytes: int) -> str:
    """Format byte size into human-readable string

    Args:
        size_bytes: Size in bytes to format

    Returns:
        Formatted string like "1.2 GiB", "345 MiB", "12 KiB", or "789 B"
    """
    if size_bytes >= 1024**3:
        return f"{size_bytes / (1024**3):.1f} GiB"
    if size_bytes >= 1024**2:
        return f"{size_bytes / (1024**2):.1f} MiB"
    if size_bytes >= 1024:
        return f"{size_bytes / 1024:.1f} KiB"
    return f"{size_bytes} B"


def format_kilobytes(size_kb: int) -> str:
    """Format a kilobyte count (the accounting unit) for display"""
    return format_bytes(max(0, size_kb) * 1024)


def format_duration(seconds: float) -> str:
    """Format a duration as "Xm Ys"

    Args:
        seconds: Duration in seconds (fractions are truncated)

    Returns:
        Formatted string like "3m 7s"
    """
    total = max(0, int(seconds))
    return f"{total // 60}m {total % 60}s"


def format_path_for_display(path, home_path: Optional[str] = None) -> str:
    """Shorten a path under the home directory to ~/...

    Only a leading home directory is replaced, so "/Users/ann/Library" becomes
    "~/Library" while "/Volumes/Backup/Users/ann" is left alone.
    """
    path = str(path)
    home = (home_path or str(pathlib.Path.home())).rstrip("/")
    if home and (path == home or path.startswith(home + "/")):
        return "~" + path[len(home) :]
    return path


def expand_targets(pattern: str) -> list[str]:
    """Expand ~, environment variables and glob wildcards in a target pattern

    Args:
        pattern: Path pattern such as "~/Library/Caches/*" or "$TMPDIR/**/*.db"

    Returns:
        Sorted list of existing paths matching the pattern
    """
    expanded = os.path.expandvars(os.path.expanduser(pattern))
    if glob.has_magic(expanded):
        return sorted(glob.glob(expanded, recursive=True))
    return [expanded] if os.path.lexists(expanded) else []
