"""Path validation for the file collaborator and built-in tools."""

from __future__ import annotations

import logging
import os
import sys

logger = logging.getLogger(__name__)

_IS_WINDOWS = sys.platform == "win32"

# Paths that should never be accessible via tools
_BLOCKED_PATHS = {
    "/etc/shadow",
    "/etc/passwd",
    "/etc/sudoers",
}

_BLOCKED_PREFIXES = (
    "/proc/",
    "/sys/",
    "/dev/",
)


def safe_resolve(path: str) -> str:
    """Absolute, normalized form of ``path``.

    On Windows abspath is used so mapped drive letters are not turned into UNC
    paths; on POSIX realpath also resolves symlinks.
    """
    if _IS_WINDOWS:
        return os.path.normpath(os.path.abspath(path))
    return os.path.realpath(path)


def validate_path(path: str, working_dir: str, confine: bool = False) -> tuple[str, str | None]:
    """Validate and resolve a file path.

    Returns (resolved_path, error_message). When ``confine`` is set the path must
    resolve inside ``working_dir``.
    """
    if not path:
        return "", "Path is empty"
    if "\x00" in path:
        return "", "Path contains null bytes"

    if os.path.isabs(path):
        resolved = safe_resolve(path)
    else:
        resolved = safe_resolve(os.path.join(working_dir, path))

    for blocked in _BLOCKED_PATHS:
        if resolved in (blocked, safe_resolve(blocked)):
            logger.warning("Blocked access to sensitive path: %s", resolved)
            return "", f"Access denied: {path}"

    for prefix in _BLOCKED_PREFIXES:
        if resolved.startswith(prefix) or resolved == prefix.rstrip("/"):
            logger.warning("Blocked access to system path: %s", resolved)
            return "", f"Access denied: {path}"

    if confine:
        root = safe_resolve(working_dir)
        if resolved != root and not resolved.startswith(root.rstrip(os.sep) + os.sep):
            logger.warning("Blocked path outside project root: %s", resolved)
            return "", f"Path is outside the project directory: {path}"

    return resolved, None
