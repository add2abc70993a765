"""Code-action extraction: fenced code blocks in model output become file actions."""

from __future__ import annotations

import os
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

# Info-string language -> file extension for synthetic file names
EXTENSION_MAP: dict[str, str] = {
    "html": "html",
    "css": "css",
    "javascript": "js",
    "js": "js",
    "typescript": "ts",
    "ts": "ts",
    "tsx": "tsx",
    "jsx": "jsx",
    "python": "py",
    "py": "py",
    "rust": "rs",
    "rs": "rs",
    "go": "go",
    "java": "java",
    "cpp": "cpp",
    "c": "c",
    "json": "json",
    "xml": "xml",
    "yaml": "yaml",
    "yml": "yml",
    "toml": "toml",
    "sql": "sql",
    "sh": "sh",
    "bash": "sh",
    "shell": "sh",
    "md": "md",
    "markdown": "md",
    "txt": "txt",
}

DEFAULT_LANGUAGE = "txt"

_FENCE = "```"
# Either half may be empty; an empty replace half deletes the search text.
_PATCH_RE = re.compile(r"<<<SEARCH\n(?:|(.*?)\n)===\n(.*?)\n?>>>REPLACE", re.DOTALL)
_SEARCH_MARKER = "<<<SEARCH"
_REPLACE_MARKER = ">>>REPLACE"


class ActionKind(str, Enum):
    CREATE = "create"
    MODIFY = "modify"
    PATCH = "patch"


@dataclass
class PatchData:
    search: str
    replace: str


@dataclass
class CodeAction:
    kind: ActionKind
    file_path: str
    content: str
    language: str = DEFAULT_LANGUAGE
    patch: PatchData | None = None

    @property
    def display_name(self) -> str:
        return os.path.basename(self.file_path) or self.file_path


@dataclass
class ExtractionResult:
    actions: list[CodeAction] = field(default_factory=list)
    display_text: str = ""


def parse_info_string(info: str) -> tuple[str, str | None]:
    """Split a fence info string into (language, path).

    Tried in order: ``language:path``, ``language path``, bare ``language``.
    """
    info = info.strip()
    if not info:
        return DEFAULT_LANGUAGE, None
    if ":" in info:
        language, _, path = info.partition(":")
    elif " " in info:
        language, _, path = info.partition(" ")
    else:
        return info, None
    return language.strip() or DEFAULT_LANGUAGE, path.strip() or None


def _strip_blank_edges(lines: list[str]) -> list[str]:
    start, end = 0, len(lines)
    while start < end and not lines[start].strip():
        start += 1
    while end > start and not lines[end - 1].strip():
        end -= 1
    return lines[start:end]


def _closes_fence(line: str, fence_len: int) -> bool:
    """A closing fence is a bare run of backticks at least as long as the opener."""
    stripped = line.strip()
    return len(stripped) >= fence_len and set(stripped) == {"`"}


def _find_close(lines: list[str], start: int, fence_len: int) -> int | None:
    """Index of the fence closing a block whose body starts at ``start``.

    Fences with an info string inside the body open nested blocks (a README with
    its own examples), and each nested block consumes one bare closing fence.
    """
    depth = 0
    for j in range(start, len(lines)):
        stripped = lines[j].strip()
        if _closes_fence(stripped, fence_len):
            if depth == 0:
                return j
            depth -= 1
        elif stripped.startswith(_FENCE) and stripped.lstrip("`").strip():
            depth += 1
    return None


def parse_patch(content: str) -> PatchData | None:
    match = _PATCH_RE.search(content)
    if match is None:
        return None
    return PatchData(search=match.group(1) or "", replace=match.group(2) or "")


def has_patch_markers(content: str) -> bool:
    return _SEARCH_MARKER in content and _REPLACE_MARKER in content


def _status_line(action: CodeAction) -> str:
    verb = {
        ActionKind.CREATE: "Creating",
        ActionKind.MODIFY: "Updating",
        ActionKind.PATCH: "Patching",
    }[action.kind]
    return f"📄 **{verb}** `{action.display_name}` ({action.language})"


def _resolve(path: str, project_root: str | None) -> str:
    if project_root and not os.path.isabs(path):
        return os.path.join(project_root, path)
    return path


def extract_code_actions(
    text: str,
    current_file: str | None = None,
    project_root: str | None = None,
    clock: Callable[[], float] = time.time,
) -> ExtractionResult:
    """Scan ``text`` for fenced blocks and turn each non-empty one into a CodeAction.

    Blocks without a path act on ``current_file`` when there is one, otherwise on a
    synthetic ``generated_<epoch-ms>.<ext>`` file. Each consumed block is replaced in
    the display text by a one-line status; empty blocks and an unterminated final
    fence are left as they are.
    """
    lines = re.split(r"\r?\n", text)
    out: list[str] = []
    actions: list[CodeAction] = []
    used_names: set[str] = set()

    idx = 0
    while idx < len(lines):
        line = lines[idx]
        if not line.strip().startswith(_FENCE):
            out.append(line)
            idx += 1
            continue

        opening = line.strip()
        fence_len = len(opening) - len(opening.lstrip("`"))
        close = _find_close(lines, idx + 1, fence_len)
        if close is None:
            out.extend(lines[idx:])
            break

        body = _strip_blank_edges(lines[idx + 1 : close])
        if not body:
            out.extend(lines[idx : close + 1])
            idx = close + 1
            continue

        language, path = parse_info_string(opening[fence_len:])
        content = "\n".join(body)

        if path:
            is_current = current_file is not None and _resolve(path, project_root) == _resolve(
                current_file, project_root
            )
            kind = ActionKind.MODIFY if is_current else ActionKind.CREATE
        elif current_file:
            path = current_file
            kind = ActionKind.MODIFY
        else:
            ext = EXTENSION_MAP.get(language.lower(), DEFAULT_LANGUAGE)
            stamp = int(clock() * 1000)
            path = f"generated_{stamp}.{ext}"
            while path in used_names:
                stamp += 1
                path = f"generated_{stamp}.{ext}"
            kind = ActionKind.CREATE
        used_names.add(path)

        # Unparseable marker blocks stay patches with no data so they are never written whole.
        patch = parse_patch(content)
        if patch is not None or has_patch_markers(content):
            kind = ActionKind.PATCH

        action = CodeAction(
            kind=kind,
            file_path=_resolve(path, project_root),
            content=content,
            language=language,
            patch=patch,
        )
        actions.append(action)
        out.append(_status_line(action))
        idx = close + 1

    return ExtractionResult(actions=actions, display_text="\n".join(out).strip())
