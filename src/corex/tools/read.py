"""read_file tool."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from .files import FileStore

_MAX_OUTPUT = 100_000


class ReadFileParams(BaseModel):
    path: str = Field(min_length=1)
    offset: int = Field(default=1, ge=1)
    limit: int | None = Field(default=None, ge=1)


DEFINITION: dict[str, Any] = {
    "name": "read_file",
    "description": "Read the contents of a file from the project.",
    "parameters": {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": 'Path relative to the project (e.g. "src/app.py")'},
            "offset": {"type": "integer", "description": "Line number to start reading from (1-based). Optional."},
            "limit": {"type": "integer", "description": "Maximum number of lines to read. Optional."},
        },
        "required": ["path"],
    },
}


async def handle(params: ReadFileParams, *, files: FileStore) -> dict[str, Any]:
    text = await files.read(params.path)
    lines = text.splitlines(keepends=True)
    start = params.offset - 1
    end = start + params.limit if params.limit else len(lines)
    content = "".join(lines[start:end])
    if len(content) > _MAX_OUTPUT:
        content = content[:_MAX_OUTPUT] + "\n... (truncated)"
    return {"path": params.path, "content": content, "total_lines": len(lines)}
