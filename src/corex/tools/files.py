"""File collaborator: read, write and list files under a project root."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Protocol

from ..errors import FileAccessError
from .security import validate_path

logger = logging.getLogger(__name__)

_MAX_LIST_ENTRIES = 2000
_SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", "dist", "build", ".mypy_cache", ".pytest_cache"}


class FileStore(Protocol):
    async def read(self, path: str) -> str: ...

    async def write(self, path: str, text: str) -> None: ...

    async def list(self, path: str = ".") -> list[str]: ...


class LocalFileStore:
    """FileStore backed by the local filesystem.

    Relative paths resolve against ``root``. Every failure is raised as a
    FileAccessError whose message is safe to put in the transcript.
    """

    def __init__(self, root: str | os.PathLike[str], confine: bool = False) -> None:
        self.root = str(root)
        self.confine = confine

    def resolve(self, path: str) -> str:
        resolved, error = validate_path(path, self.root, confine=self.confine)
        if error:
            raise FileAccessError(path, error)
        return resolved

    async def read(self, path: str) -> str:
        resolved = self.resolve(path)
        if not os.path.isfile(resolved):
            raise FileAccessError(path, "File not found")
        try:
            with open(resolved, encoding="utf-8", newline="") as f:
                return f.read()
        except UnicodeDecodeError:
            raise FileAccessError(path, "File is not valid UTF-8 text") from None
        except OSError as e:
            raise FileAccessError(path, e.strerror or str(e)) from e

    async def write(self, path: str, text: str) -> None:
        resolved = self.resolve(path)
        try:
            os.makedirs(os.path.dirname(resolved), exist_ok=True)
            with open(resolved, "w", encoding="utf-8", newline="") as f:
                f.write(text)
        except OSError as e:
            raise FileAccessError(path, e.strerror or str(e)) from e
        logger.debug("Wrote %d chars to %s", len(text), resolved)

    async def list(self, path: str = ".") -> list[str]:
        """Files under ``path`` relative to it, recursively, skipping build and VCS folders."""
        resolved = self.resolve(path)
        base = Path(resolved)
        if not base.is_dir():
            raise FileAccessError(path, "Directory not found")

        entries: list[str] = []
        try:
            for dirpath, dirnames, filenames in os.walk(base):
                dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS)
                rel_dir = Path(dirpath).relative_to(base)
                for name in sorted(filenames):
                    entries.append((rel_dir / name).as_posix())
                    if len(entries) >= _MAX_LIST_ENTRIES:
                        return entries
        except OSError as e:
            raise FileAccessError(path, e.strerror or str(e)) from e
        return entries
