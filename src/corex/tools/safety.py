"""Destructive-operation detection for tool parameters.

Pure functions: no I/O, no side effects.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterator


@dataclass
class SafetyVerdict:
    destructive: bool
    reason: str = ""
    details: dict[str, str] = field(default_factory=dict)


_DEFAULT_DESTRUCTIVE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (
        re.compile(
            r"\brm\s+(-[a-zA-Z]*\s+)*-[a-zA-Z]*[rR]|\brm\s+--recursive\b",
        ),
        "recursive delete",
    ),
    (re.compile(r"\b(rmdir|rd)\s+/s\b", re.IGNORECASE), "recursive delete"),
    (re.compile(r"\bdel\s+(/[a-z]\s+)*/s\b", re.IGNORECASE), "recursive delete"),
    (re.compile(r"\bRemove-Item\b.*-Recurse\b", re.IGNORECASE), "recursive delete"),
    (re.compile(r"\bmkfs(\.\w+)?\b", re.IGNORECASE), "disk format"),
    (re.compile(r"\bformat\s+[a-z]:", re.IGNORECASE), "disk format"),
    (re.compile(r"\bdd\b.*\bof=/dev/", re.IGNORECASE), "disk overwrite"),
    (re.compile(r"\bdrop\s+(table|database|schema)\b", re.IGNORECASE), "destructive DDL"),
    (re.compile(r"\btruncate\s+table\b", re.IGNORECASE), "destructive DDL"),
    (re.compile(r"\b(shutdown|reboot|halt|poweroff)(\s+(-\w+|/\w+|now)|\s*$)", re.IGNORECASE), "system shutdown"),
]


def _normalize_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text.strip())


def check_command(command: str, custom_patterns: list[str] | None = None) -> SafetyVerdict:
    """Match one string against the built-in denylist and any custom patterns."""
    if not command or not command.strip():
        return SafetyVerdict(destructive=False)

    normalized = _normalize_whitespace(command)

    for pattern, description in _DEFAULT_DESTRUCTIVE_PATTERNS:
        if pattern.search(normalized):
            return SafetyVerdict(
                destructive=True,
                reason=f"Destructive operation detected ({description}): {command}",
                details={"value": command, "matched_pattern": pattern.pattern},
            )

    for raw_pattern in custom_patterns or []:
        try:
            matched = re.search(raw_pattern, normalized, re.IGNORECASE) is not None
        except re.error:
            # Invalid regex: fall back to a plain substring match
            matched = raw_pattern.lower() in normalized.lower()
        if matched:
            return SafetyVerdict(
                destructive=True,
                reason=f"Custom pattern matched: {command}",
                details={"value": command, "matched_pattern": raw_pattern},
            )

    return SafetyVerdict(destructive=False)


def _iter_strings(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for v in value.values():
            yield from _iter_strings(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from _iter_strings(v)


def find_destructive(parameters: dict[str, Any], custom_patterns: list[str] | None = None) -> SafetyVerdict | None:
    """Return the first destructive verdict among all string parameter values, if any."""
    for text in _iter_strings(parameters):
        verdict = check_command(text, custom_patterns)
        if verdict.destructive:
            return verdict
    return None
