"""Tool registry: validated, failure-capturing dispatch to built-in and plugin tools."""

from __future__ import annotations

import functools
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine

from pydantic import BaseModel, ValidationError

from ..errors import CorexError, ToolExecutionError
from .files import FileStore
from .tiers import ToolTier as ToolTier
from .tiers import get_tool_tier

logger = logging.getLogger(__name__)

ToolHandler = Callable[..., Coroutine[Any, Any, dict[str, Any]]]

_TOOL_NAME_RE = re.compile(r"^[A-Za-z0-9_\-]{1,128}$")
_MAX_RESULT_CHARS = 20_000


@dataclass
class ToolResult:
    tool_name: str
    success: bool
    payload: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @classmethod
    def failure(cls, tool_name: str, error: str) -> "ToolResult":
        return cls(tool_name=tool_name, success=False, error=error)

    def to_message(self) -> str:
        """Render as the content of the user-role turn fed back to the model."""
        if self.success:
            body = json.dumps(self.payload, indent=2, default=str, ensure_ascii=False)
        else:
            body = json.dumps({"error": self.error, **self.payload}, indent=2, default=str, ensure_ascii=False)
        if len(body) > _MAX_RESULT_CHARS:
            body = body[:_MAX_RESULT_CHARS] + "\n... (truncated)"
        status = "ok" if self.success else "failed"
        return f"Tool result ({self.tool_name}, {status}):\n{body}"


@dataclass
class _RegisteredTool:
    handler: ToolHandler
    definition: dict[str, Any]
    params_model: type[BaseModel] | None = None


class ToolRegistry:
    """Registry of tools the model can call by name.

    Known tools register a pydantic model for their parameters and receive a
    validated instance. Plugin tools register without one and receive the raw dict.
    """

    def __init__(self) -> None:
        self._tools: dict[str, _RegisteredTool] = {}

    def register(
        self,
        name: str,
        handler: ToolHandler,
        definition: dict[str, Any] | None = None,
        params_model: type[BaseModel] | None = None,
    ) -> None:
        if not _TOOL_NAME_RE.match(name):
            raise ValueError(f"Invalid tool name: {name!r}")
        if name in self._tools:
            logger.warning("Replacing already registered tool: %s", name)
        self._tools[name] = _RegisteredTool(handler, definition or {"name": name}, params_model)

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def list_tools(self) -> list[str]:
        return list(self._tools.keys())

    def get_definition(self, name: str) -> dict[str, Any] | None:
        tool = self._tools.get(name)
        return tool.definition if tool else None

    def render_prompt(self) -> str:
        """Describe every registered tool for the system prompt."""
        lines = ["Available tools:"]
        for name, tool in self._tools.items():
            defn = tool.definition
            tier = get_tool_tier(name).name.lower()
            lines.append(f"- {name} ({tier}): {defn.get('description', '')}")
            props = defn.get("parameters", {}).get("properties", {})
            required = set(defn.get("parameters", {}).get("required", []))
            for pname, pinfo in props.items():
                flag = "required" if pname in required else "optional"
                lines.append(f"    {pname} ({pinfo.get('type', 'any')}, {flag}): {pinfo.get('description', '')}")
        return "\n".join(lines)

    async def execute(self, name: str, parameters: dict[str, Any]) -> ToolResult:
        """Run one tool. Never raises for tool-level problems; they become failed results."""
        tool = self._tools.get(name)
        if tool is None:
            logger.warning("Model requested unknown tool: %s", name)
            return ToolResult.failure(name, f"Unknown tool: {name}")

        args: Any = parameters
        if tool.params_model is not None:
            try:
                args = tool.params_model.model_validate(parameters)
            except ValidationError as e:
                problems = "; ".join(
                    f"{'.'.join(str(p) for p in err['loc']) or 'parameters'}: {err['msg']}" for err in e.errors()
                )
                return ToolResult.failure(name, f"Invalid parameters: {problems}")

        try:
            payload = await tool.handler(args)
        except ToolExecutionError as e:
            return ToolResult.failure(name, e.message)
        except CorexError as e:
            return ToolResult.failure(name, str(e))
        except Exception as e:
            logger.exception("Tool %s raised", name)
            return ToolResult.failure(name, f"{type(e).__name__}: {e}")

        if not isinstance(payload, dict):
            payload = {"result": payload}
        if "error" in payload:
            rest = {k: v for k, v in payload.items() if k != "error"}
            return ToolResult(tool_name=name, success=False, payload=rest, error=str(payload["error"]))
        return ToolResult(tool_name=name, success=True, payload=payload)


def register_default_tools(registry: ToolRegistry, files: FileStore, working_dir: str) -> None:
    """Register the built-in tools against one file collaborator and project directory."""
    from . import list_files, plan, read, terminal, write

    registry.register(
        read.DEFINITION["name"], functools.partial(read.handle, files=files), read.DEFINITION, read.ReadFileParams
    )
    registry.register(
        write.DEFINITION["name"], functools.partial(write.handle, files=files), write.DEFINITION, write.WriteFileParams
    )
    registry.register(
        list_files.DEFINITION["name"],
        functools.partial(list_files.handle, files=files),
        list_files.DEFINITION,
        list_files.ListFilesParams,
    )
    registry.register(
        terminal.DEFINITION["name"],
        functools.partial(terminal.handle, working_dir=working_dir),
        terminal.DEFINITION,
        terminal.RunTerminalParams,
    )
    registry.register(plan.DEFINITION["name"], plan.handle, plan.DEFINITION, plan.PlanTaskParams)
