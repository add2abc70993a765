"""run_terminal tool: execute a shell command in the project directory."""

from __future__ import annotations

import asyncio
from typing import Any

from pydantic import AliasChoices, BaseModel, Field

_MAX_OUTPUT = 100_000
_DEFAULT_TIMEOUT = 120


class RunTerminalParams(BaseModel):
    command: str = Field(min_length=1, validation_alias=AliasChoices("command", "cmd"))
    timeout: int = Field(default=_DEFAULT_TIMEOUT, ge=1, le=600)


DEFINITION: dict[str, Any] = {
    "name": "run_terminal",
    "description": (
        "Execute a terminal command in the project directory and return stdout, stderr and exit code. "
        "Use it to run builds, tests, package managers or git. Default timeout is 120 seconds."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": 'The command to execute (e.g. "git status")'},
            "timeout": {"type": "integer", "description": "Timeout in seconds (default 120, max 600)"},
        },
        "required": ["command"],
    },
}


def _truncate(text: str) -> str:
    if len(text) > _MAX_OUTPUT:
        return text[:_MAX_OUTPUT] + "\n... (truncated)"
    return text


async def handle(params: RunTerminalParams, *, working_dir: str) -> dict[str, Any]:
    if "\x00" in params.command:
        return {"error": "Command contains null bytes", "exit_code": -1}

    try:
        proc = await asyncio.create_subprocess_shell(
            params.command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=working_dir,
        )
    except OSError as e:
        return {"error": str(e), "exit_code": -1}

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=params.timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return {"error": f"Command timed out after {params.timeout}s", "exit_code": -1}
    except asyncio.CancelledError:
        proc.kill()
        await proc.wait()
        raise

    exit_code = proc.returncode or 0
    result: dict[str, Any] = {
        "command": params.command,
        "stdout": _truncate(stdout.decode("utf-8", errors="replace")),
        "stderr": _truncate(stderr.decode("utf-8", errors="replace")),
        "exit_code": exit_code,
    }
    if exit_code != 0:
        result["error"] = f"Command exited with status {exit_code}"
    return result
