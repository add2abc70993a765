"""write_file tool."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from .files import FileStore


class WriteFileParams(BaseModel):
    path: str = Field(min_length=1)
    content: str


DEFINITION: dict[str, Any] = {
    "name": "write_file",
    "description": "Write or replace a file in the project. Creates parent directories if needed.",
    "parameters": {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "File path (relative to the project or absolute)"},
            "content": {"type": "string", "description": "The full content to write to the file"},
        },
        "required": ["path", "content"],
    },
}


async def handle(params: WriteFileParams, *, files: FileStore) -> dict[str, Any]:
    await files.write(params.path, params.content)
    return {
        "status": "ok",
        "path": params.path,
        "bytes_written": len(params.content.encode("utf-8")),
    }
