"""CLI entry point for Corex."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from . import __version__
from .config import AppConfig, _get_config_path, load_config


def _load_config_or_exit(config_path: Path | None = None) -> AppConfig:
    path = config_path or _get_config_path()
    try:
        return load_config(path)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


async def _test_connection(config: AppConfig) -> None:
    from .errors import TransportError
    from .services.ai_service import create_ai_service

    ai_service = create_ai_service(config.ai)

    print("Config:")
    print(f"  Endpoint: {config.ai.base_url}")
    print(f"  Model:    {config.ai.model}")
    print(f"  SSL:      {'enabled' if config.ai.verify_ssl else 'disabled'}")

    print("\n1. Listing models...")
    valid, message, models = await ai_service.validate_connection()
    if not valid:
        print(f"   FAILED - {message}")
        sys.exit(1)
    print(f"   OK - {len(models)} model(s) available")
    for m in models[:10]:
        print(f"     - {m}")

    print(f"\n2. Sending test prompt to {config.ai.model}...")
    try:
        reply = await ai_service.complete("Say hello in one sentence.", max_tokens=50)
    except TransportError as e:
        print(f"   FAILED - {e.user_message}")
        sys.exit(1)
    print(f"   OK - Response: {reply or '(empty response)'}")

    print("\nAll checks passed.")


def _run_chat(
    config: AppConfig,
    prompt: str | None = None,
    project_path: str | None = None,
    model: str | None = None,
    autonomy: int | None = None,
    current_file: str | None = None,
) -> None:
    """Launch the CLI chat mode."""
    if project_path:
        # SECURITY-REVIEW: CLI arg from local user, validated as an existing directory
        resolved = os.path.abspath(project_path)
        if not os.path.isdir(resolved):
            print(f"Error: {project_path} is not a directory", file=sys.stderr)
            sys.exit(1)
        config.app.project_dir = Path(resolved)

    if model:
        config.ai.model = model
    if autonomy is not None:
        config.autonomy.level = max(1, min(autonomy, 5))
        if config.autonomy.level == 5:
            print(
                "WARNING: Autonomy level 5. ALL tool calls will execute without confirmation.",
                file=sys.stderr,
            )

    from .cli.repl import run_cli

    try:
        asyncio.run(run_cli(config, prompt=prompt, current_file=current_file))
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass


def main() -> None:
    parser = argparse.ArgumentParser(prog="corex", description="Corex - AI coding agent for your project")
    subparsers = parser.add_subparsers(dest="command")

    chat_parser = subparsers.add_parser("chat", help="Interactive CLI chat mode")
    chat_parser.add_argument("prompt", nargs="?", default=None, help="One-shot prompt (omit for REPL)")
    chat_parser.add_argument(
        "-p",
        "--path",
        dest="project_path",
        default=None,
        help="Project root directory (default: cwd)",
    )
    chat_parser.add_argument("-m", "--model", dest="model", default=None, help="Override AI model")
    chat_parser.add_argument(
        "--autonomy",
        dest="autonomy",
        type=int,
        choices=range(1, 6),
        default=None,
        help="Autonomy level 1-5 for this session",
    )
    chat_parser.add_argument(
        "--file",
        dest="current_file",
        default=None,
        help="File that code blocks without a path apply to",
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--test", action="store_true", help="Test connection settings and exit")
    parser.add_argument("--config", dest="config_path", default=None, help="Path to config.yaml")
    parser.add_argument("--debug", action="store_true", help="Log debug output to stderr")

    args = parser.parse_args()

    if args.debug:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    config = _load_config_or_exit(Path(args.config_path).expanduser() if args.config_path else None)

    if args.test:
        asyncio.run(_test_connection(config))
        return

    if args.command == "chat":
        _run_chat(
            config,
            prompt=args.prompt,
            project_path=args.project_path,
            model=args.model,
            autonomy=args.autonomy,
            current_file=args.current_file,
        )
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
