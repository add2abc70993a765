"""Tool-call parsing from model text.

Two wire formats are accepted:

* inline: ``TOOL:<name>|PARAMS:<json object>``
* legacy: ``TOOL: <name>`` on one line, ``PARAMS: <json object>`` on a later line

They are parsed by two independent functions. The legacy parser only runs when
the inline parser finds nothing, so a response never mixes both forms.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

_INLINE_RE = re.compile(r"TOOL:([A-Za-z0-9_\-]+)\|PARAMS:")
_LEGACY_TOOL_RE = re.compile(r"TOOL:\s*([A-Za-z0-9_\-]+)")
_LEGACY_PARAMS_RE = re.compile(r"PARAMS:\s*")

_decoder = json.JSONDecoder()


@dataclass
class ToolCall:
    tool_name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    raw: str = ""


def _decode_object(text: str, start: int) -> tuple[dict[str, Any], int] | None:
    """Decode one JSON object beginning at ``start``. Nested objects are fine."""
    if start >= len(text) or text[start] != "{":
        return None
    try:
        value, end = _decoder.raw_decode(text, start)
    except json.JSONDecodeError:
        return None
    if not isinstance(value, dict):
        return None
    return value, end


def _parse_inline(text: str) -> list[ToolCall]:
    calls: list[ToolCall] = []
    for match in _INLINE_RE.finditer(text):
        decoded = _decode_object(text, match.end())
        if decoded is None:
            logger.warning("Malformed PARAMS for tool %s; ignoring call", match.group(1))
            continue
        params, end = decoded
        calls.append(ToolCall(tool_name=match.group(1), parameters=params, raw=text[match.start() : end]))
    return calls


def _parse_legacy(text: str) -> list[ToolCall]:
    calls: list[ToolCall] = []
    tool_matches = list(_LEGACY_TOOL_RE.finditer(text))
    for i, match in enumerate(tool_matches):
        limit = tool_matches[i + 1].start() if i + 1 < len(tool_matches) else len(text)
        params_match = _LEGACY_PARAMS_RE.search(text, match.end(), limit)
        if params_match is None:
            continue
        decoded = _decode_object(text, params_match.end())
        if decoded is None:
            logger.warning("Malformed PARAMS for tool %s (legacy format); ignoring call", match.group(1))
            continue
        params, end = decoded
        calls.append(ToolCall(tool_name=match.group(1), parameters=params, raw=text[match.start() : end]))
    return calls


def parse_tool_calls(text: str) -> list[ToolCall]:
    """Return every tool call in ``text``, in the order they appear."""
    if not text or "TOOL:" not in text:
        return []
    calls = _parse_inline(text)
    if calls:
        return calls
    return _parse_legacy(text)


def parse_tool_call(text: str) -> ToolCall | None:
    """Return the first tool call in ``text``, or None."""
    calls = parse_tool_calls(text)
    return calls[0] if calls else None
