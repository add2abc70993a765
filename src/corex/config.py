"""Configuration loader: YAML file with environment variable fallbacks."""

from __future__ import annotations

import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

_DEFAULT_SYSTEM_PROMPT = """\
You are Corex, an AI coding assistant embedded in a code editor. You help developers write, \
debug, refactor, and understand the code of the currently open project.

<tool_use>
When you need to read, list, or change files, plan a task, or run a command, request exactly \
one tool per line using this format:
TOOL:<tool_name>|PARAMS:<json object>
After you request a tool you will receive its result and can continue. Do not invent tool \
results. If a tool fails, read the error and change your approach instead of repeating the \
same call.
</tool_use>

<code_changes>
To create or replace a file, answer with a fenced code block whose info string is \
"language:path", for example ```python:src/app.py. A block without a path applies to the \
file the user currently has open. To change part of an existing file, put a patch inside the \
block:
<<<SEARCH
exact text currently in the file
===
replacement text
>>>REPLACE
The search text must match the file verbatim.
</code_changes>

<communication>
- Be direct and concise. Lead with the answer or the action.
- Explain what you changed in one or two sentences after the code.
- Never run destructive commands (recursive deletes, disk formatting, DROP TABLE) unless the \
user explicitly asked for them.
</communication>"""

OUTPUT_MODE_TOKENS: dict[str, int] = {
    "brief": 2048,
    "normal": 8192,
    "detailed": 16384,
}


@dataclass
class AIConfig:
    base_url: str
    api_key: str
    model: str = "gpt-4o-mini"
    system_prompt: str = _DEFAULT_SYSTEM_PROMPT
    user_system_prompt: str = ""
    verify_ssl: bool = True
    output_mode: str = "normal"
    request_timeout: int = 300  # seconds; hard ceiling for one model response
    connect_timeout: int = 5
    write_timeout: int = 30
    pool_timeout: int = 10
    first_token_timeout: int = 60
    chunk_stall_timeout: int = 60
    retry_max_attempts: int = 2
    retry_backoff_base: float = 1.0

    @property
    def max_output_tokens(self) -> int:
        return OUTPUT_MODE_TOKENS.get(self.output_mode, OUTPUT_MODE_TOKENS["normal"])


@dataclass
class ContextConfig:
    max_context_tokens: int = 32_768
    history_fraction: float = 0.4
    summary_interval: int = 10
    retrieval_k: int = 4
    retrieval_max_chars: int = 1500


@dataclass
class AgentConfig:
    max_tool_iterations: int = 5
    stream_throttle_ms: int = 150
    approval_timeout: int = 300
    auto_apply: bool = True


@dataclass
class AutonomyConfig:
    level: int = 3
    custom_patterns: list[str] = field(default_factory=list)
    denied_tools: list[str] = field(default_factory=list)


@dataclass
class AppSettings:
    data_dir: Path = field(default_factory=lambda: Path.home() / ".corex")
    project_dir: Path = field(default_factory=Path.cwd)


@dataclass
class AppConfig:
    ai: AIConfig
    context: ContextConfig = field(default_factory=ContextConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    autonomy: AutonomyConfig = field(default_factory=AutonomyConfig)
    app: AppSettings = field(default_factory=AppSettings)


def _get_config_path(data_dir: Path | None = None) -> Path:
    if data_dir:
        return data_dir / "config.yaml"
    return Path.home() / ".corex" / "config.yaml"


def _as_bool(raw: Any, default: bool = True) -> bool:
    if raw is None:
        return default
    return str(raw).lower() not in ("false", "0", "no", "off")


def _clamped_int(raw: Any, default: int, lo: int, hi: int) -> int:
    try:
        val = int(raw)
    except (ValueError, TypeError):
        val = default
    return max(lo, min(val, hi))


def _clamped_float(raw: Any, default: float, lo: float, hi: float) -> float:
    try:
        val = float(raw)
    except (ValueError, TypeError):
        val = default
    return max(lo, min(val, hi))


def _str_list(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    return [str(v) for v in raw]


def load_config(config_path: Path | None = None) -> AppConfig:
    raw: dict[str, Any] = {}
    path = config_path or _get_config_path()

    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}

    ai_raw = raw.get("ai", {})
    base_url = ai_raw.get("base_url") or os.environ.get("COREX_BASE_URL", "")
    api_key = ai_raw.get("api_key") or os.environ.get("COREX_API_KEY", "")
    model = ai_raw.get("model") or os.environ.get("COREX_MODEL", "gpt-4o-mini")
    user_system_prompt = ai_raw.get("system_prompt") or os.environ.get("COREX_SYSTEM_PROMPT", "")
    if user_system_prompt:
        system_prompt = (
            _DEFAULT_SYSTEM_PROMPT + "\n\n<user_instructions>\n" + user_system_prompt + "\n</user_instructions>"
        )
    else:
        system_prompt = _DEFAULT_SYSTEM_PROMPT

    if not base_url:
        raise ValueError(
            f"AI base_url is required. Set 'ai.base_url' in config.yaml ({path}) or COREX_BASE_URL environment variable."
        )
    if not api_key:
        raise ValueError(
            f"AI api_key is required. Set 'ai.api_key' in config.yaml ({path}) or COREX_API_KEY environment variable."
        )

    output_mode = str(ai_raw.get("output_mode", os.environ.get("COREX_OUTPUT_MODE", "normal"))).strip().lower()
    if output_mode not in OUTPUT_MODE_TOKENS:
        output_mode = "normal"

    ai = AIConfig(
        base_url=base_url,
        api_key=api_key,
        model=model,
        system_prompt=system_prompt,
        user_system_prompt=user_system_prompt,
        verify_ssl=_as_bool(ai_raw.get("verify_ssl", os.environ.get("COREX_VERIFY_SSL"))),
        output_mode=output_mode,
        request_timeout=_clamped_int(
            ai_raw.get("request_timeout", os.environ.get("COREX_REQUEST_TIMEOUT", 300)), 300, 10, 900
        ),
        connect_timeout=_clamped_int(ai_raw.get("connect_timeout", 5), 5, 1, 60),
        first_token_timeout=_clamped_int(ai_raw.get("first_token_timeout", 60), 60, 5, 600),
        chunk_stall_timeout=_clamped_int(ai_raw.get("chunk_stall_timeout", 60), 60, 5, 600),
        retry_max_attempts=_clamped_int(ai_raw.get("retry_max_attempts", 2), 2, 0, 10),
        retry_backoff_base=_clamped_float(ai_raw.get("retry_backoff_base", 1.0), 1.0, 0.1, 30.0),
    )

    ctx_raw = raw.get("context", {})
    context = ContextConfig(
        max_context_tokens=_clamped_int(
            ctx_raw.get("max_context_tokens", os.environ.get("COREX_MAX_CONTEXT_TOKENS", 32_768)),
            32_768,
            512,
            2_000_000,
        ),
        history_fraction=_clamped_float(ctx_raw.get("history_fraction", 0.4), 0.4, 0.05, 0.95),
        summary_interval=_clamped_int(ctx_raw.get("summary_interval", 10), 10, 1, 1000),
        retrieval_k=_clamped_int(ctx_raw.get("retrieval_k", 4), 4, 0, 50),
        retrieval_max_chars=_clamped_int(ctx_raw.get("retrieval_max_chars", 1500), 1500, 100, 100_000),
    )

    agent_raw = raw.get("agent", {})
    agent = AgentConfig(
        max_tool_iterations=_clamped_int(agent_raw.get("max_tool_iterations", 5), 5, 1, 50),
        stream_throttle_ms=_clamped_int(agent_raw.get("stream_throttle_ms", 150), 150, 0, 5000),
        approval_timeout=_clamped_int(agent_raw.get("approval_timeout", 300), 300, 10, 3600),
        auto_apply=_as_bool(agent_raw.get("auto_apply", os.environ.get("COREX_AUTO_APPLY"))),
    )

    autonomy_raw = raw.get("autonomy", {})
    if not isinstance(autonomy_raw, dict):
        autonomy_raw = {"level": autonomy_raw}
    autonomy = AutonomyConfig(
        level=_clamped_int(autonomy_raw.get("level", os.environ.get("COREX_AUTONOMY_LEVEL", 3)), 3, 1, 5),
        custom_patterns=_str_list(autonomy_raw.get("custom_patterns", [])),
        denied_tools=_str_list(autonomy_raw.get("denied_tools", [])),
    )

    app_raw = raw.get("app", {})
    data_dir = Path(os.path.expanduser(app_raw.get("data_dir", str(Path.home() / ".corex"))))
    project_dir = Path(os.path.expanduser(app_raw.get("project_dir", os.environ.get("COREX_PROJECT_DIR", os.getcwd()))))
    app_settings = AppSettings(data_dir=data_dir, project_dir=project_dir)

    app_settings.data_dir.mkdir(parents=True, exist_ok=True)
    try:
        app_settings.data_dir.chmod(stat.S_IRWXU)  # 0700
        if path.exists():
            path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0600
    except OSError:
        pass  # May fail on Windows or non-owned files

    return AppConfig(ai=ai, context=context, agent=agent, autonomy=autonomy, app=app_settings)
