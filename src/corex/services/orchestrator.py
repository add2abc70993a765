"""Session orchestrator: one user turn at a time, from message to applied edits."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from ..config import OUTPUT_MODE_TOKENS, AppConfig
from ..errors import SessionBusyError
from ..tools import ToolRegistry
from ..tools.files import FileStore
from ..tools.tiers import parse_autonomy_level
from .agent_loop import AgentEvent, LoopResult, ToolCallingLoop
from .ai_service import AIService
from .approvals import ApprovalCallback
from .auto_apply import ApplyOutcome, AutoApplyEngine, IndexFileFn, OpenFileFn
from .code_actions import CodeAction, extract_code_actions
from .context_store import ContextStore
from .retrieval import Retriever, fetch_retrieval_context
from .streaming import StreamingResponseHandler, StreamSnapshot
from .tokens import estimate_tokens

logger = logging.getLogger(__name__)

_SUMMARY_MAX_TOKENS = 512
_LONG_RESPONSE_RATIO = 0.9


class SessionState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    TOOL_LOOP = "tool_loop"
    APPLYING = "applying"


@dataclass
class TurnResult:
    text: str
    display_text: str
    loop: LoopResult
    actions: list[CodeAction] = field(default_factory=list)
    outcomes: list[ApplyOutcome] = field(default_factory=list)


class Orchestrator:
    """Owns one conversation and runs its turns strictly one at a time.

    A message that arrives while a turn is in flight is rejected with
    SessionBusyError rather than queued.
    """

    def __init__(
        self,
        config: AppConfig,
        ai_service: AIService,
        registry: ToolRegistry,
        files: FileStore,
        approval_callback: ApprovalCallback | None = None,
        retriever: Retriever | None = None,
        open_file: OpenFileFn | None = None,
        index_file: IndexFileFn | None = None,
        on_event: Callable[[AgentEvent], None] | None = None,
    ) -> None:
        self.config = config
        self.ai_service = ai_service
        self.registry = registry
        self.files = files
        self.retriever = retriever
        self.on_event = on_event
        self.state = SessionState.IDLE
        self._cancel_event: asyncio.Event | None = None

        self.store = ContextStore(
            self._system_prompt(),
            max_context_tokens=config.context.max_context_tokens,
            max_output_tokens=config.ai.max_output_tokens,
            history_fraction=config.context.history_fraction,
            summary_interval=config.context.summary_interval,
            summarize_fn=self._summarize,
        )
        self.handler = StreamingResponseHandler(throttle_ms=config.agent.stream_throttle_ms, observer=self._on_snapshot)
        self.loop = ToolCallingLoop(
            ai_service,
            registry,
            self.store,
            self.handler,
            config.autonomy,
            approval_callback=approval_callback,
            max_iterations=config.agent.max_tool_iterations,
            approval_timeout=float(config.agent.approval_timeout),
            max_output_tokens=config.ai.max_output_tokens,
        )
        self.applier = AutoApplyEngine(files, self.store, open_file=open_file, index_file=index_file)

    def _system_prompt(self) -> str:
        tools = self.registry.render_prompt() if self.registry.list_tools() else ""
        if not tools:
            return self.config.ai.system_prompt
        return f"{self.config.ai.system_prompt}\n\n{tools}"

    async def _summarize(self, prompt: str) -> str:
        return await self.ai_service.complete(prompt, max_tokens=_SUMMARY_MAX_TOKENS)

    def _emit(self, kind: str, **data: Any) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(AgentEvent(kind=kind, data=data))
        except Exception:
            logger.exception("Session event callback raised")

    def _on_snapshot(self, snapshot: StreamSnapshot) -> None:
        self._emit("snapshot", text=snapshot.text, final=snapshot.final, interrupted=snapshot.interrupted)

    def _on_loop_event(self, event: AgentEvent) -> None:
        if event.kind == "state":
            loop_state = event.data.get("state")
            if loop_state == "streaming":
                self.state = SessionState.STREAMING
            elif loop_state in ("parsing_tools", "gating", "executing"):
                self.state = SessionState.TOOL_LOOP
        if self.on_event is not None:
            try:
                self.on_event(event)
            except Exception:
                logger.exception("Session event callback raised")

    @property
    def busy(self) -> bool:
        return self.state != SessionState.IDLE

    async def send_message(self, text: str, current_file: str | None = None) -> TurnResult:
        # Check-and-set happens before the first await so two calls cannot both pass.
        if self.state != SessionState.IDLE:
            raise SessionBusyError(self.state.value)
        self.state = SessionState.TOOL_LOOP
        self._cancel_event = asyncio.Event()
        try:
            self.store.append("user", text)
            return await self._run_turn(text, current_file)
        finally:
            self.state = SessionState.IDLE
            self._cancel_event = None

    async def _run_turn(self, text: str, current_file: str | None) -> TurnResult:
        await self.store.maybe_summarize()
        self.store.prune()

        retrieval_context = await fetch_retrieval_context(
            self.retriever,
            text,
            k=self.config.context.retrieval_k,
            max_chars=self.config.context.retrieval_max_chars,
        )

        result = await self.loop.run(
            retrieval_context=retrieval_context,
            cancel_event=self._cancel_event,
            on_event=self._on_loop_event,
        )

        limit = self.store.state.max_output_tokens
        if limit and estimate_tokens(result.text) > limit * _LONG_RESPONSE_RATIO:
            logger.warning(
                "Response is close to the output limit (%d of %d tokens); it may be truncated",
                estimate_tokens(result.text),
                limit,
            )

        extraction = extract_code_actions(
            result.text,
            current_file=current_file,
            project_root=str(self.config.app.project_dir),
        )
        outcomes: list[ApplyOutcome] = []
        if extraction.actions and self.config.agent.auto_apply and not result.interrupted:
            self.state = SessionState.APPLYING
            outcomes = await self.applier.apply(extraction.actions)

        return TurnResult(
            text=result.text,
            display_text=extraction.display_text,
            loop=result,
            actions=extraction.actions,
            outcomes=outcomes,
        )

    def cancel(self) -> bool:
        """Stop the in-flight turn. Returns False when nothing is running."""
        if self._cancel_event is None:
            return False
        self._cancel_event.set()
        logger.info("Cancellation requested")
        return True

    async def regenerate(self, current_file: str | None = None) -> TurnResult | None:
        """Drop the last exchange and send its user message again."""
        if self.state != SessionState.IDLE:
            raise SessionBusyError(self.state.value)
        last_user = self.store.remove_last_exchange()
        if last_user is None:
            return None
        return await self.send_message(last_user, current_file=current_file)

    def reset(self) -> None:
        if self.state != SessionState.IDLE:
            raise SessionBusyError(self.state.value)
        self.store.reset()
        logger.info("Conversation reset")

    def set_autonomy(self, level: int) -> int:
        clamped = int(parse_autonomy_level(level))
        self.config.autonomy = dataclasses.replace(self.config.autonomy, level=clamped)
        self.loop.autonomy = self.config.autonomy
        logger.info("Autonomy level set to %d", clamped)
        return clamped

    def set_output_mode(self, mode: str) -> int:
        mode = mode.strip().lower()
        if mode not in OUTPUT_MODE_TOKENS:
            raise ValueError(f"Unknown output mode: {mode!r} (expected one of {', '.join(OUTPUT_MODE_TOKENS)})")
        self.config.ai.output_mode = mode
        tokens = self.config.ai.max_output_tokens
        self.store.set_limits(max_output_tokens=tokens)
        self.loop.max_output_tokens = tokens
        return tokens
