"""Rich-based terminal output for the CLI chat."""

from __future__ import annotations

import os
from typing import Any

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.padding import Padding

from ..services.agent_loop import AgentEvent
from ..services.orchestrator import TurnResult

console = Console(stderr=True)
# Separate console for the model's answer so it can be piped
_stdout_console = Console()

GOLD = "#C5A059"  # accents
SLATE = "#94A3B8"  # labels
MUTED = "#8b8b8b"  # secondary text
ERROR_RED = "#CD6B6B"

_PHASE_LABELS = {
    "connecting": "Connecting...",
    "waiting": "Waiting for first token...",
    "streaming": "Thinking...",
}


def _short_path(path: str) -> str:
    home = os.path.expanduser("~")
    if path.startswith(home):
        return "~" + path[len(home) :]
    return path


def _humanize_tool(tool_name: str, parameters: dict[str, Any]) -> str:
    """Turn a tool call into a one-line breadcrumb."""
    if tool_name == "run_terminal":
        cmd = str(parameters.get("command", parameters.get("cmd", "")))
        if len(cmd) > 100:
            cmd = cmd[:97] + "..."
        return f"$ {cmd}"
    if tool_name == "read_file":
        return f"Reading {_short_path(str(parameters.get('path', '')))}"
    if tool_name == "write_file":
        return f"Writing {_short_path(str(parameters.get('path', '')))}"
    if tool_name == "list_files":
        return f"Listing {_short_path(str(parameters.get('path', '.')))}"
    if tool_name == "plan_task":
        return f"Planning: {parameters.get('task', '')}"

    for v in parameters.values():
        if isinstance(v, str) and v:
            preview = v if len(v) <= 40 else v[:37] + "..."
            return f"{tool_name} {preview}"
    return tool_name


def render_event(event: AgentEvent) -> None:
    """Render loop progress. Streaming snapshots are not echoed; the final answer is."""
    kind = event.kind
    data = event.data
    if kind == "phase":
        label = _PHASE_LABELS.get(data.get("phase", ""))
        if label:
            console.print(f"  [{MUTED}]{label}[/{MUTED}]")
    elif kind == "retrying":
        console.print(
            f"  [{MUTED}]Retrying ({data.get('attempt')}/{data.get('max_attempts')}) "
            f"in {data.get('delay', 0):.1f}s...[/{MUTED}]"
        )
    elif kind == "tool_call_start":
        summary = _humanize_tool(data.get("tool_name", ""), data.get("parameters") or {})
        console.print(f"  [{GOLD}]>[/{GOLD}] {escape(summary)}")
    elif kind == "tool_call_end":
        if data.get("success"):
            console.print(f"    [{MUTED}]ok[/{MUTED}]")
        else:
            console.print(f"    [{ERROR_RED}]failed: {escape(str(data.get('error') or ''))}[/{ERROR_RED}]")
    elif kind == "denied":
        console.print(
            f"  [yellow]Not executed:[/yellow] {escape(data.get('tool_name', ''))} "
            f"[{MUTED}]({escape(data.get('reason', ''))})[/{MUTED}]"
        )
    elif kind == "cap_exceeded":
        console.print(f"  [yellow]Stopped after {data.get('max_iterations')} tool iterations[/yellow]")


def render_turn(result: TurnResult) -> None:
    if result.display_text.strip():
        _stdout_console.print(Padding(Markdown(result.display_text), (0, 2, 0, 2)))
    for outcome in result.outcomes:
        color = MUTED if outcome.success else ERROR_RED
        console.print(f"  [{color}]{escape(outcome.message)}[/{color}]")
    if result.loop.interrupted:
        console.print(f"  [{MUTED}](interrupted)[/{MUTED}]")
    console.print()


def render_error(message: str) -> None:
    console.print(f"\n[red bold]Error:[/red bold] {escape(message)}")


def render_info(message: str) -> None:
    console.print(f"  [{MUTED}]{escape(message)}[/{MUTED}]")


def render_welcome(model: str, tool_count: int, working_dir: str, autonomy: int, version: str = "") -> None:
    console.print()
    suffix = f"  [{MUTED}]v{version}[/{MUTED}]" if version else ""
    console.print(f"[{GOLD} bold]  C O R E X[/]{suffix}")
    console.print(f"  [{SLATE}]{escape(_short_path(working_dir))}[/]")
    console.print(f"  [{MUTED}]{escape(model)} · {tool_count} tools · autonomy {autonomy}[/{MUTED}]")
    console.print(f"  [{MUTED}]Type /help for commands[/{MUTED}]\n")


def render_help() -> None:
    console.print()
    console.print("  /reset  /regenerate  /autonomy <1-5>  /mode <brief|normal|detailed>")
    console.print(f"  /file <path> [{MUTED}]set the current file[/]  /tools  /exit · Ctrl+D")
    console.print()


def render_tools(tool_names: list[str]) -> None:
    console.print("\n[bold]Available tools:[/bold]")
    for name in sorted(tool_names):
        console.print(f"  - {name}")
    console.print()


def render_approval_request(tool_name: str, parameters: dict[str, Any]) -> None:
    console.print(f"\n[yellow bold]Approval needed:[/yellow bold] {escape(_humanize_tool(tool_name, parameters))}")
    for key, value in parameters.items():
        text = str(value)
        if len(text) > 200:
            text = text[:197] + "..."
        console.print(f"  {escape(key)}: [{MUTED}]{escape(text)}[/{MUTED}]")


def render_approval_result(tool_name: str, approved: bool) -> None:
    mark = "✓ Allowed" if approved else "✗ Denied"
    console.print(f"  [{MUTED}]{mark}: {escape(tool_name)}[/{MUTED}]\n")
