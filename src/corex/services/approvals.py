"""In-process approval manager for gated tool calls."""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

ApprovalCallback = Callable[[str, dict[str, Any]], Awaitable[bool]]


@dataclass
class PendingApproval:
    approval_id: str
    fut: asyncio.Future[bool]
    tool_name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    reason: str = ""
    created_at: float = field(default_factory=time.time)


RequestListener = Callable[[PendingApproval], None]


class ApprovalManager:
    """Tracks approval requests until a UI resolves them.

    Each request resolves at most once; a second ``resolve`` for the same id is
    refused. Waiting past the timeout counts as a denial.
    """

    def __init__(self, timeout_s: float = 300.0, on_request: RequestListener | None = None) -> None:
        self.timeout_s = timeout_s
        self.on_request = on_request
        self._lock = asyncio.Lock()
        self._pending: dict[str, PendingApproval] = {}

    async def request(self, tool_name: str, parameters: dict[str, Any], reason: str = "") -> str:
        approval_id = secrets.token_urlsafe(16)
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[bool] = loop.create_future()
        pending = PendingApproval(
            approval_id=approval_id, fut=fut, tool_name=tool_name, parameters=dict(parameters), reason=reason
        )
        async with self._lock:
            self._pending[approval_id] = pending
        if self.on_request is not None:
            try:
                self.on_request(pending)
            except Exception:
                logger.exception("Approval request listener raised")
        return approval_id

    async def wait(self, approval_id: str, timeout_s: float | None = None) -> bool:
        async with self._lock:
            pending = self._pending.get(approval_id)
        if not pending:
            return False
        timeout = self.timeout_s if timeout_s is None else timeout_s
        try:
            return await asyncio.wait_for(asyncio.shield(pending.fut), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Approval for %s timed out after %.0fs", pending.tool_name, timeout)
            return False
        finally:
            async with self._lock:
                self._pending.pop(approval_id, None)
            if not pending.fut.done():
                pending.fut.cancel()

    async def resolve(self, approval_id: str, approved: bool) -> bool:
        async with self._lock:
            pending = self._pending.get(approval_id)
            if not pending or pending.fut.done():
                return False
            pending.fut.set_result(bool(approved))
            return True

    async def get(self, approval_id: str) -> PendingApproval | None:
        async with self._lock:
            return self._pending.get(approval_id)

    async def list_pending(self) -> list[PendingApproval]:
        async with self._lock:
            return list(self._pending.values())

    async def ask(self, tool_name: str, parameters: dict[str, Any]) -> bool:
        """Request approval and wait for it. Usable directly as an approval callback."""
        approval_id = await self.request(tool_name, parameters)
        return await self.wait(approval_id)
