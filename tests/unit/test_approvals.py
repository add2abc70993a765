"""Tests for the in-process approval manager."""

from __future__ import annotations

import asyncio

import pytest

from corex.services.approvals import ApprovalManager, PendingApproval


class TestApprovalManager:
    @pytest.mark.asyncio
    async def test_request_registers_pending(self) -> None:
        manager = ApprovalManager()
        approval_id = await manager.request("write_file", {"path": "a.py"}, reason="writes a file")
        pending = await manager.get(approval_id)
        assert pending is not None
        assert pending.tool_name == "write_file"
        assert pending.parameters == {"path": "a.py"}
        assert pending.reason == "writes a file"
        assert [p.approval_id for p in await manager.list_pending()] == [approval_id]

    @pytest.mark.asyncio
    async def test_resolve_then_wait(self) -> None:
        manager = ApprovalManager()
        approval_id = await manager.request("run_terminal", {"command": "ls"})
        assert await manager.resolve(approval_id, True) is True
        assert await manager.wait(approval_id) is True
        assert await manager.get(approval_id) is None

    @pytest.mark.asyncio
    async def test_resolves_only_once(self) -> None:
        manager = ApprovalManager()
        approval_id = await manager.request("run_terminal", {})
        assert await manager.resolve(approval_id, False) is True
        assert await manager.resolve(approval_id, True) is False
        assert await manager.wait(approval_id) is False

    @pytest.mark.asyncio
    async def test_resolve_unknown_id(self) -> None:
        assert await ApprovalManager().resolve("missing", True) is False

    @pytest.mark.asyncio
    async def test_wait_unknown_id_is_denial(self) -> None:
        assert await ApprovalManager().wait("missing") is False

    @pytest.mark.asyncio
    async def test_timeout_is_denial(self) -> None:
        manager = ApprovalManager(timeout_s=0.01)
        approval_id = await manager.request("write_file", {})
        assert await manager.wait(approval_id) is False
        assert await manager.list_pending() == []
        assert await manager.resolve(approval_id, True) is False

    @pytest.mark.asyncio
    async def test_wait_resolved_concurrently(self) -> None:
        manager = ApprovalManager()
        approval_id = await manager.request("write_file", {})

        async def approve_later() -> None:
            await asyncio.sleep(0.01)
            await manager.resolve(approval_id, True)

        task = asyncio.create_task(approve_later())
        assert await manager.wait(approval_id, timeout_s=1) is True
        await task

    @pytest.mark.asyncio
    async def test_ask_uses_listener(self) -> None:
        seen: list[PendingApproval] = []
        manager = ApprovalManager()

        def listener(pending: PendingApproval) -> None:
            seen.append(pending)
            asyncio.get_running_loop().create_task(manager.resolve(pending.approval_id, True))

        manager.on_request = listener
        assert await manager.ask("run_terminal", {"command": "make"}) is True
        assert seen[0].parameters == {"command": "make"}

    @pytest.mark.asyncio
    async def test_listener_failure_does_not_block_request(self) -> None:
        def broken(pending: PendingApproval) -> None:
            raise RuntimeError("ui gone")

        manager = ApprovalManager(timeout_s=0.01, on_request=broken)
        assert await manager.ask("write_file", {}) is False
