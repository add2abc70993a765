"""list_files tool."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from .files import FileStore

_MAX_RESULTS = 500


class ListFilesParams(BaseModel):
    path: str = "."


DEFINITION: dict[str, Any] = {
    "name": "list_files",
    "description": "List files in a project directory, recursively.",
    "parameters": {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Directory path (default: project root)"},
        },
        "required": [],
    },
}


async def handle(params: ListFilesParams, *, files: FileStore) -> dict[str, Any]:
    entries = await files.list(params.path or ".")
    return {
        "path": params.path,
        "files": entries[:_MAX_RESULTS],
        "count": len(entries),
        "truncated": len(entries) > _MAX_RESULTS,
    }
