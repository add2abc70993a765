"""Interactive REPL and one-shot runner for the CLI."""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Any

from .. import __version__
from ..config import OUTPUT_MODE_TOKENS, AppConfig
from ..errors import CorexError, TransportError
from ..services.ai_service import create_ai_service
from ..services.approvals import ApprovalManager, PendingApproval
from ..services.orchestrator import Orchestrator
from ..tools import ToolRegistry, register_default_tools
from ..tools.files import LocalFileStore
from . import renderer

logger = logging.getLogger(__name__)

_COMMANDS = ["/reset", "/regenerate", "/autonomy", "/mode", "/file", "/tools", "/help", "/exit", "/quit"]


@dataclass
class ReplState:
    current_file: str | None = None


def build_orchestrator(config: AppConfig, approvals: ApprovalManager | None = None) -> Orchestrator:
    """Wire the default collaborators for a local project."""
    project_dir = str(config.app.project_dir)
    files = LocalFileStore(project_dir)
    registry = ToolRegistry()
    register_default_tools(registry, files, working_dir=project_dir)
    return Orchestrator(
        config,
        create_ai_service(config.ai),
        registry,
        files,
        approval_callback=approvals.ask if approvals is not None else None,
        on_event=renderer.render_event,
    )


def _make_approval_listener(manager: ApprovalManager) -> Any:
    """Prompt on the terminal for every approval request, one prompt at a time."""
    from prompt_toolkit import PromptSession

    lock = asyncio.Lock()
    tasks: set[asyncio.Task[None]] = set()

    async def _prompt(pending: PendingApproval) -> None:
        async with lock:
            renderer.render_approval_request(pending.tool_name, pending.parameters)
            try:
                answer = await PromptSession().prompt_async("  Allow? [y/N]: ")
                approved = answer.strip().lower() in ("y", "yes")
            except (EOFError, KeyboardInterrupt):
                approved = False
            renderer.render_approval_result(pending.tool_name, approved)
            await manager.resolve(pending.approval_id, approved)

    def _listener(pending: PendingApproval) -> None:
        task = asyncio.get_running_loop().create_task(_prompt(pending))
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    return _listener


async def _run_turn(orch: Orchestrator, text: str, state: ReplState) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orch.cancel)
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False
    try:
        result = await orch.send_message(text, current_file=state.current_file)
        renderer.render_turn(result)
    except TransportError as e:
        renderer.render_error(e.user_message)
    except CorexError as e:
        renderer.render_error(str(e))
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


async def handle_command(orch: Orchestrator, line: str, state: ReplState) -> bool:
    """Run one slash command. Returns False when the REPL should exit."""
    cmd, _, arg = line.strip().partition(" ")
    arg = arg.strip()
    cmd = cmd.lower()

    if cmd in ("/exit", "/quit"):
        return False
    if cmd == "/help":
        renderer.render_help()
    elif cmd == "/tools":
        renderer.render_tools(orch.registry.list_tools())
    elif cmd == "/reset":
        orch.reset()
        renderer.render_info("Conversation cleared.")
    elif cmd == "/regenerate":
        try:
            result = await orch.regenerate(current_file=state.current_file)
        except TransportError as e:
            renderer.render_error(e.user_message)
            return True
        if result is None:
            renderer.render_info("Nothing to regenerate.")
        else:
            renderer.render_turn(result)
    elif cmd == "/autonomy":
        if not arg.isdigit():
            renderer.render_info(f"Autonomy level is {orch.config.autonomy.level}. Usage: /autonomy <1-5>")
        else:
            level = orch.set_autonomy(int(arg))
            renderer.render_info(f"Autonomy level set to {level}.")
    elif cmd == "/mode":
        if arg not in OUTPUT_MODE_TOKENS:
            renderer.render_info(f"Output mode is {orch.config.ai.output_mode}. Usage: /mode brief|normal|detailed")
        else:
            tokens = orch.set_output_mode(arg)
            renderer.render_info(f"Output mode set to {arg} ({tokens} tokens).")
    elif cmd == "/file":
        state.current_file = arg or None
        renderer.render_info(f"Current file: {arg}" if arg else "Current file cleared.")
    else:
        renderer.render_error(f"Unknown command: {cmd}. Type /help for commands.")
    return True


async def run_cli(config: AppConfig, prompt: str | None = None, current_file: str | None = None) -> None:
    """Main entry point for CLI mode."""
    approvals = ApprovalManager(timeout_s=float(config.agent.approval_timeout))
    approvals.on_request = _make_approval_listener(approvals)
    orch = build_orchestrator(config, approvals)
    state = ReplState(current_file=current_file)

    if prompt is not None:
        await _run_turn(orch, prompt, state)
        return

    from prompt_toolkit import PromptSession
    from prompt_toolkit.completion import WordCompleter
    from prompt_toolkit.history import FileHistory
    from prompt_toolkit.patch_stdout import patch_stdout

    renderer.render_welcome(
        config.ai.model,
        len(orch.registry.list_tools()),
        str(config.app.project_dir),
        config.autonomy.level,
        version=__version__,
    )

    history_path = config.app.data_dir / "cli_history"
    session: PromptSession[str] = PromptSession(
        history=FileHistory(str(history_path)),
        completer=WordCompleter(_COMMANDS, sentence=True),
    )

    with patch_stdout():
        while True:
            try:
                line = await session.prompt_async("you> ")
            except KeyboardInterrupt:
                continue
            except EOFError:
                break
            if not line.strip():
                continue
            if line.strip().startswith("/"):
                if not await handle_command(orch, line, state):
                    break
                continue
            await _run_turn(orch, line, state)

