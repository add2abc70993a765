"""Bounded tool-calling loop: stream, parse tool calls, gate, execute, repeat."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from ..config import AutonomyConfig
from ..errors import ApprovalDenied, IterationCapExceeded, TransportError
from ..tools import ToolRegistry, ToolResult
from ..tools.parsing import ToolCall, parse_tool_calls
from ..tools.tiers import GateDecision, evaluate_tool_call, parse_autonomy_level
from .ai_service import AIService
from .approvals import ApprovalCallback
from .context_store import ContextStore, Turn
from .streaming import StreamingResponseHandler

logger = logging.getLogger(__name__)

CAP_EXCEEDED_MARKER = "\n\n⚠️ (Maximum tool call limit reached)"

CONTINUE_PROMPT = (
    "The tools above have run and their results are shown. "
    "Continue with the task step by step based on these results."
)

DEFAULT_MAX_ITERATIONS = 5


class LoopState(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    STREAMING = "streaming"
    PARSING_TOOLS = "parsing_tools"
    GATING = "gating"
    EXECUTING = "executing"
    DONE = "done"


@dataclass
class AgentEvent:
    kind: str
    data: dict[str, Any]


EventCallback = Callable[[AgentEvent], None]


@dataclass
class LoopResult:
    text: str
    iterations: int = 0
    tool_results: list[ToolResult] = field(default_factory=list)
    stop_reason: str = "complete"  # complete | denied | cap_exceeded | cancelled
    interrupted: bool = False


class ToolCallingLoop:
    """Drives one user turn to completion against the model and the tool registry.

    The loop mutates the ContextStore it is given: each model response becomes an
    assistant turn, each tool result a user turn, and every early stop (denial,
    cap, transport failure) a system turn.
    """

    def __init__(
        self,
        ai_service: AIService,
        registry: ToolRegistry,
        store: ContextStore,
        handler: StreamingResponseHandler,
        autonomy: AutonomyConfig,
        approval_callback: ApprovalCallback | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        approval_timeout: float = 300.0,
        max_output_tokens: int | None = None,
    ) -> None:
        self.ai_service = ai_service
        self.registry = registry
        self.store = store
        self.handler = handler
        self.autonomy = autonomy
        self.approval_callback = approval_callback
        self.max_iterations = max_iterations
        self.approval_timeout = approval_timeout
        self.max_output_tokens = max_output_tokens
        self.state = LoopState.DONE
        self._on_event: EventCallback | None = None

    def _emit(self, kind: str, **data: Any) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(AgentEvent(kind=kind, data=data))
        except Exception:
            logger.exception("Agent event callback raised")

    def _set_state(self, state: LoopState) -> None:
        self.state = state
        self._emit("state", state=state.value)

    def _forward_stream_event(self, event: dict[str, Any]) -> None:
        if event.get("event") in ("phase", "retrying"):
            self._emit(event["event"], **event.get("data", {}))

    async def _stream_once(
        self, retrieval_context: str | None, cancel_event: asyncio.Event | None
    ) -> tuple[str, bool]:
        snapshot = self.store.snapshot_for_request(retrieval_context)
        messages = ContextStore.to_messages(snapshot)
        turn: Turn = self.store.begin_assistant_turn()

        self._set_state(LoopState.STREAMING)
        try:
            outcome = await self.handler.consume(
                self.ai_service.stream_chat(messages, cancel_event=cancel_event, max_tokens=self.max_output_tokens),
                turn=turn,
                cancel_event=cancel_event,
                on_event=self._forward_stream_event,
            )
        except TransportError as e:
            self._settle_failed_turn(turn)
            self.store.append("system", e.user_message, kind="outcome")
            logger.warning("Model call failed: %s", e.message)
            raise
        except asyncio.CancelledError:
            self._settle_failed_turn(turn)
            raise

        self.store.finalize_turn(turn, interrupted=outcome.interrupted)
        return outcome.text, outcome.interrupted

    def _settle_failed_turn(self, turn: Turn) -> None:
        if turn.content:
            self.store.finalize_turn(turn, interrupted=True)
        else:
            self.store.discard_turn(turn)

    async def _ask(self, call: ToolCall, cancel_event: asyncio.Event | None = None) -> str | None:
        """Ask for approval. Returns None when approved, else the refusal reason.

        A set ``cancel_event`` abandons the pending approval immediately.
        """
        if self.approval_callback is None:
            return "no approval channel available"
        self._emit("approval_required", tool_name=call.tool_name, parameters=call.parameters)
        approval_task = asyncio.ensure_future(
            asyncio.wait_for(self.approval_callback(call.tool_name, call.parameters), timeout=self.approval_timeout)
        )
        if cancel_event is not None:
            cancel_task = asyncio.create_task(cancel_event.wait())
            done, pending = await asyncio.wait({cancel_task, approval_task}, return_when=asyncio.FIRST_COMPLETED)
            for p in pending:
                p.cancel()
                try:
                    await asyncio.wait_for(p, timeout=5.0)
                except (asyncio.CancelledError, asyncio.TimeoutError):
                    pass
            if approval_task not in done:
                logger.info("Approval for %s abandoned: cancelled by user", call.tool_name)
                return "cancelled by user"
        try:
            approved = await approval_task
        except asyncio.TimeoutError:
            return f"approval timed out after {self.approval_timeout:.0f}s"
        except Exception:
            logger.exception("Approval callback failed for %s", call.tool_name)
            return "approval request failed"
        if not approved:
            return "denied by user"
        logger.info("Tool %s approved by user", call.tool_name)
        return None

    async def _gate(self, calls: list[ToolCall], cancel_event: asyncio.Event | None = None) -> ApprovalDenied | None:
        """Gate calls in parse order. The first refusal stops the whole batch.

        Gating stops without prompting further once ``cancel_event`` is set; the
        caller checks the event before acting on the result.
        """
        for call in calls:
            if cancel_event is not None and cancel_event.is_set():
                return None
            decision = evaluate_tool_call(call.tool_name, call.parameters, self.autonomy)
            if decision == GateDecision.AUTO:
                continue
            if decision == GateDecision.DENY:
                if call.tool_name in self.autonomy.denied_tools:
                    return ApprovalDenied(call.tool_name, "blocked by configuration")
                level = int(parse_autonomy_level(self.autonomy.level))
                return ApprovalDenied(call.tool_name, f"tool execution is disabled at autonomy level {level}")
            reason = await self._ask(call, cancel_event)
            if reason is not None:
                return ApprovalDenied(call.tool_name, reason)
        return None

    async def _execute(self, call: ToolCall, cancel_event: asyncio.Event | None) -> ToolResult:
        self._emit("tool_call_start", tool_name=call.tool_name, parameters=call.parameters)
        if cancel_event is None:
            result = await self.registry.execute(call.tool_name, call.parameters)
        else:
            cancel_task = asyncio.create_task(cancel_event.wait())
            exec_task = asyncio.create_task(self.registry.execute(call.tool_name, call.parameters))
            done, pending = await asyncio.wait({cancel_task, exec_task}, return_when=asyncio.FIRST_COMPLETED)
            for p in pending:
                p.cancel()
                try:
                    await asyncio.wait_for(p, timeout=5.0)
                except (asyncio.CancelledError, asyncio.TimeoutError):
                    pass
            if exec_task in done:
                result = exec_task.result()
            else:
                result = ToolResult.failure(call.tool_name, "Cancelled by user")
        self._emit("tool_call_end", tool_name=call.tool_name, success=result.success, error=result.error)
        return result

    def _finish(self, result: LoopResult) -> LoopResult:
        self._set_state(LoopState.DONE)
        return result

    async def run(
        self,
        retrieval_context: str | None = None,
        cancel_event: asyncio.Event | None = None,
        on_event: EventCallback | None = None,
    ) -> LoopResult:
        """Run until the model stops requesting tools, a call is refused, or the cap is hit.

        Retrieval context is only included in the first request. Raises
        TransportError if a model call fails; a system turn records the failure.
        """
        self._on_event = on_event
        iterations = 0
        results: list[ToolResult] = []
        text = ""

        try:
            while True:
                self._set_state(LoopState.AWAITING_MODEL)
                if cancel_event is not None and cancel_event.is_set():
                    return self._finish(LoopResult(text, iterations, results, "cancelled", interrupted=True))

                text, interrupted = await self._stream_once(retrieval_context, cancel_event)
                retrieval_context = None
                if interrupted:
                    return self._finish(LoopResult(text, iterations, results, "cancelled", interrupted=True))

                self._set_state(LoopState.PARSING_TOOLS)
                calls = parse_tool_calls(text)
                if not calls:
                    return self._finish(LoopResult(text, iterations, results))

                if iterations >= self.max_iterations:
                    cap = IterationCapExceeded(self.max_iterations)
                    logger.warning("%s", cap)
                    self.store.append("system", f"{cap}; remaining tool calls were not executed.", kind="outcome")
                    self._emit("cap_exceeded", max_iterations=self.max_iterations)
                    return self._finish(LoopResult(text + CAP_EXCEEDED_MARKER, iterations, results, "cap_exceeded"))

                self._set_state(LoopState.GATING)
                refusal = await self._gate(calls, cancel_event)
                if cancel_event is not None and cancel_event.is_set():
                    return self._finish(LoopResult(text, iterations, results, "cancelled", interrupted=True))
                if refusal is not None:
                    logger.warning("%s", refusal)
                    self.store.append("system", str(refusal), kind="outcome")
                    self._emit("denied", tool_name=refusal.tool_name, reason=refusal.reason)
                    return self._finish(LoopResult(text, iterations, results, "denied"))

                self._set_state(LoopState.EXECUTING)
                batch = await asyncio.gather(*(self._execute(call, cancel_event) for call in calls))
                for idx, result in enumerate(batch):
                    content = result.to_message()
                    if idx == len(batch) - 1:
                        content += "\n\n" + CONTINUE_PROMPT
                    self.store.append("user", content, kind="tool_result")
                results.extend(batch)
                iterations += 1
                logger.debug("Tool iteration %d ran %d call(s)", iterations, len(batch))

                if cancel_event is not None and cancel_event.is_set():
                    return self._finish(LoopResult(text, iterations, results, "cancelled", interrupted=True))
        except BaseException:
            self.state = LoopState.DONE
            raise
        finally:
            self._on_event = None
