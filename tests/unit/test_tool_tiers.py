"""Tests for tool risk tiers and the autonomy gate."""

from __future__ import annotations

import pytest

from corex.config import AutonomyConfig
from corex.tools.tiers import (
    DEFAULT_PLUGIN_TIER,
    AutonomyLevel,
    GateDecision,
    ToolTier,
    evaluate_tool_call,
    get_tool_tier,
    parse_autonomy_level,
    requires_approval,
)


class TestToolTiers:
    def test_builtin_tiers(self) -> None:
        assert get_tool_tier("read_file") == ToolTier.READ
        assert get_tool_tier("list_files") == ToolTier.READ
        assert get_tool_tier("plan_task") == ToolTier.READ
        assert get_tool_tier("write_file") == ToolTier.WRITE
        assert get_tool_tier("run_terminal") == ToolTier.EXECUTE

    def test_unknown_tool_defaults_to_execute(self) -> None:
        assert get_tool_tier("some_plugin") == DEFAULT_PLUGIN_TIER == ToolTier.EXECUTE

    def test_override(self) -> None:
        assert get_tool_tier("some_plugin", {"some_plugin": "read"}) == ToolTier.READ

    def test_invalid_override_ignored(self) -> None:
        assert get_tool_tier("read_file", {"read_file": "bogus"}) == ToolTier.READ

    def test_ordering(self) -> None:
        assert ToolTier.READ < ToolTier.WRITE < ToolTier.EXECUTE


class TestParseAutonomyLevel:
    @pytest.mark.parametrize("raw,expected", [(1, 1), ("4", 4), (0, 1), (9, 5), ("abc", 3), (None, 3)])
    def test_values(self, raw: object, expected: int) -> None:
        assert parse_autonomy_level(raw) == expected


class TestEvaluateToolCall:
    def _gate(self, level: int, tool: str, params: dict | None = None, **kwargs) -> GateDecision:
        return evaluate_tool_call(tool, params or {}, AutonomyConfig(level=level, **kwargs))

    def test_level_1_denies_everything(self) -> None:
        for tool in ("read_file", "write_file", "run_terminal", "plugin"):
            assert self._gate(1, tool) == GateDecision.DENY

    def test_level_2_asks_for_everything(self) -> None:
        for tool in ("read_file", "list_files", "write_file", "run_terminal"):
            assert self._gate(2, tool) == GateDecision.ASK

    def test_level_3_reads_auto_others_ask(self) -> None:
        assert self._gate(3, "read_file") == GateDecision.AUTO
        assert self._gate(3, "list_files") == GateDecision.AUTO
        assert self._gate(3, "plan_task") == GateDecision.AUTO
        assert self._gate(3, "write_file") == GateDecision.ASK
        assert self._gate(3, "run_terminal") == GateDecision.ASK
        assert self._gate(3, "unknown_plugin") == GateDecision.ASK

    def test_level_4_asks_only_for_destructive(self) -> None:
        assert self._gate(4, "run_terminal", {"command": "ls -la"}) == GateDecision.AUTO
        assert self._gate(4, "run_terminal", {"command": "rm -rf /tmp/x"}) == GateDecision.ASK
        assert self._gate(4, "write_file", {"path": "a.sql", "content": "DROP TABLE users;"}) == GateDecision.ASK

    def test_level_4_checks_nested_values(self) -> None:
        params = {"steps": [{"run": "echo hi"}, {"run": "mkfs.ext4 /dev/sda1"}]}
        assert self._gate(4, "plugin", params) == GateDecision.ASK

    def test_level_4_custom_patterns(self) -> None:
        params = {"command": "git push --force origin main"}
        assert self._gate(4, "run_terminal", params) == GateDecision.AUTO
        assert self._gate(4, "run_terminal", params, custom_patterns=[r"git\s+push\s+--force"]) == GateDecision.ASK

    def test_level_5_auto(self) -> None:
        assert self._gate(5, "run_terminal", {"command": "rm -rf /"}) == GateDecision.AUTO

    def test_denied_tools_blocked_at_every_level(self) -> None:
        for level in range(1, 6):
            assert self._gate(level, "run_terminal", denied_tools=["run_terminal"]) == GateDecision.DENY

    def test_pure(self) -> None:
        autonomy = AutonomyConfig(level=4, custom_patterns=["secret"])
        params = {"command": "cat secret.txt"}
        first = evaluate_tool_call("run_terminal", params, autonomy)
        assert evaluate_tool_call("run_terminal", params, autonomy) == first
        assert params == {"command": "cat secret.txt"}
        assert autonomy.custom_patterns == ["secret"]

    def test_level_enum_values(self) -> None:
        assert [int(level) for level in AutonomyLevel] == [1, 2, 3, 4, 5]


class TestRequiresApproval:
    def test_auto_needs_no_approval(self) -> None:
        assert requires_approval("read_file", {}, AutonomyConfig(level=3)) is False

    def test_ask_and_deny_need_approval(self) -> None:
        assert requires_approval("write_file", {}, AutonomyConfig(level=3)) is True
        assert requires_approval("read_file", {}, AutonomyConfig(level=1)) is True
