"""Tool risk tiers and the autonomy gate.

Pure functions: no I/O, no side effects.
"""

from __future__ import annotations

from enum import Enum, IntEnum
from typing import Any

from ..config import AutonomyConfig
from .safety import find_destructive


class ToolTier(IntEnum):
    """Risk tier for tools. Higher value = more dangerous."""

    READ = 0
    WRITE = 1
    EXECUTE = 2


class AutonomyLevel(IntEnum):
    """How much the agent may do without asking."""

    DISABLED = 1  # no tool ever runs
    ASK_ALWAYS = 2
    ASK_FOR_WRITES = 3  # reads are automatic
    ASK_FOR_DANGEROUS = 4  # only destructive-looking calls ask
    FULL = 5


class GateDecision(str, Enum):
    AUTO = "auto"
    ASK = "ask"
    DENY = "deny"


DEFAULT_TOOL_TIERS: dict[str, ToolTier] = {
    "read_file": ToolTier.READ,
    "list_files": ToolTier.READ,
    "plan_task": ToolTier.READ,
    "write_file": ToolTier.WRITE,
    "run_terminal": ToolTier.EXECUTE,
}

# Plugin and unknown tools default to this tier
DEFAULT_PLUGIN_TIER = ToolTier.EXECUTE


def get_tool_tier(tool_name: str, tier_overrides: dict[str, str] | None = None) -> ToolTier:
    """Look up the risk tier for a tool.

    Priority: overrides > DEFAULT_TOOL_TIERS > DEFAULT_PLUGIN_TIER.
    """
    if tier_overrides and tool_name in tier_overrides:
        try:
            return ToolTier[tier_overrides[tool_name].upper()]
        except KeyError:
            pass
    return DEFAULT_TOOL_TIERS.get(tool_name, DEFAULT_PLUGIN_TIER)


def parse_autonomy_level(raw: Any) -> AutonomyLevel:
    """Parse a level from an int or string, clamping out-of-range values to 1..5."""
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return AutonomyLevel.ASK_FOR_WRITES
    return AutonomyLevel(max(1, min(value, 5)))


def evaluate_tool_call(tool_name: str, parameters: dict[str, Any], autonomy: AutonomyConfig) -> GateDecision:
    """Decide whether a tool call runs automatically, needs approval, or is refused."""
    if tool_name in autonomy.denied_tools:
        return GateDecision.DENY

    level = parse_autonomy_level(autonomy.level)
    if level == AutonomyLevel.DISABLED:
        return GateDecision.DENY
    if level == AutonomyLevel.ASK_ALWAYS:
        return GateDecision.ASK
    if level == AutonomyLevel.ASK_FOR_WRITES:
        return GateDecision.AUTO if get_tool_tier(tool_name) == ToolTier.READ else GateDecision.ASK
    if level == AutonomyLevel.ASK_FOR_DANGEROUS:
        if find_destructive(parameters, autonomy.custom_patterns) is not None:
            return GateDecision.ASK
        return GateDecision.AUTO
    return GateDecision.AUTO


def requires_approval(tool_name: str, parameters: dict[str, Any], autonomy: AutonomyConfig) -> bool:
    """True unless the call may run without asking.

    A DENY counts as requiring approval that can never be granted.
    """
    return evaluate_tool_call(tool_name, parameters, autonomy) != GateDecision.AUTO
