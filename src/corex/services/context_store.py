"""Conversation history, token budgeting, and rolling summaries for one session."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable

from .tokens import estimate_tokens

logger = logging.getLogger(__name__)

SummarizeFn = Callable[[str], Awaitable[str]]

ROLES = ("system", "user", "assistant")

_SUMMARY_SOURCE_TURNS = 10
_SUMMARY_TURN_CHARS = 500

_SUMMARY_INSTRUCTION = (
    "Summarize the following conversation in at most 5 sentences. "
    "Retain only the decisions that were made and the actions that were taken "
    "(files changed, commands run, tools used). Do not add commentary."
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Turn:
    role: str
    content: str
    created_at: str = field(default_factory=_now)
    token_cost: int = 0
    kind: str = "message"  # message | tool_result | outcome | summary | retrieval
    interrupted: bool = False
    finalized: bool = True

    def append_text(self, text: str) -> None:
        if self.finalized:
            raise ValueError("Cannot modify a finalized turn")
        self.content += text

    def to_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class ConversationState:
    turns: list[Turn] = field(default_factory=list)
    summary: str | None = None
    turns_since_summary: int = 0
    max_context_tokens: int = 32_768
    max_output_tokens: int = 8192


class ContextStore:
    """Ordered conversation turns plus a rolling summary, under a token budget.

    The first turn is always the system prompt. Summary and retrieval context are
    only ever added to per-request snapshots, never to the stored history, so they
    do not compound across turns.
    """

    def __init__(
        self,
        system_prompt: str,
        *,
        max_context_tokens: int = 32_768,
        max_output_tokens: int = 8192,
        history_fraction: float = 0.4,
        summary_interval: int = 10,
        summarize_fn: SummarizeFn | None = None,
    ) -> None:
        self.state = ConversationState(
            max_context_tokens=max_context_tokens,
            max_output_tokens=max_output_tokens,
        )
        self.history_fraction = history_fraction
        self.summary_interval = summary_interval
        self._summarize_fn = summarize_fn
        self.state.turns.append(self._make_turn("system", system_prompt))

    @staticmethod
    def _make_turn(role: str, content: str, kind: str = "message") -> Turn:
        if role not in ROLES:
            raise ValueError(f"Invalid turn role: {role!r}")
        return Turn(role=role, content=content, token_cost=estimate_tokens(content), kind=kind)

    # --- Accessors ---

    @property
    def turns(self) -> list[Turn]:
        return list(self.state.turns)

    @property
    def summary(self) -> str | None:
        return self.state.summary

    @property
    def system_turn(self) -> Turn:
        return self.state.turns[0]

    @property
    def total_tokens(self) -> int:
        return sum(t.token_cost for t in self.state.turns)

    @property
    def max_history_tokens(self) -> int:
        return math.floor(self.state.max_context_tokens * self.history_fraction)

    # --- Mutation ---

    def set_system_prompt(self, text: str) -> None:
        self.state.turns[0] = self._make_turn("system", text)

    def set_limits(self, max_context_tokens: int | None = None, max_output_tokens: int | None = None) -> None:
        if max_context_tokens is not None:
            self.state.max_context_tokens = max(0, max_context_tokens)
        if max_output_tokens is not None:
            self.state.max_output_tokens = max(0, max_output_tokens)

    def append(self, role: str, content: str, kind: str = "message") -> Turn:
        turn = self._make_turn(role, content, kind=kind)
        self.state.turns.append(turn)
        self.state.turns_since_summary += 1
        return turn

    def begin_assistant_turn(self) -> Turn:
        """Append an empty, in-flight assistant turn that streaming tokens extend."""
        turn = Turn(role="assistant", content="", finalized=False)
        self.state.turns.append(turn)
        return turn

    def finalize_turn(self, turn: Turn, interrupted: bool = False) -> Turn:
        if turn.finalized:
            return turn
        turn.finalized = True
        turn.interrupted = interrupted
        turn.token_cost = estimate_tokens(turn.content)
        self.state.turns_since_summary += 1
        return turn

    def discard_turn(self, turn: Turn) -> None:
        """Drop an in-flight turn, e.g. when the model call failed before any output."""
        if turn.finalized:
            raise ValueError("Only in-flight turns can be discarded")
        self.state.turns = [t for t in self.state.turns if t is not turn]

    def reset(self) -> None:
        self.state.turns = [self.state.turns[0]]
        self.state.summary = None
        self.state.turns_since_summary = 0

    def remove_last_exchange(self) -> str | None:
        """Remove the last user message and everything after it. Returns its content."""
        for idx in range(len(self.state.turns) - 1, 0, -1):
            turn = self.state.turns[idx]
            if turn.role == "user" and turn.kind == "message":
                del self.state.turns[idx:]
                return turn.content
        return None

    # --- Summarization ---

    def should_summarize(self) -> bool:
        return self.state.turns_since_summary >= self.summary_interval

    async def summarize(self, recent_turns: Iterable[Turn] | None = None) -> str:
        """Ask the model for a short summary of recent turns.

        Returns an empty string on any failure; the stored summary is not touched here.
        """
        if self._summarize_fn is None:
            return ""
        if recent_turns is None:
            recent_turns = self.state.turns[-_SUMMARY_SOURCE_TURNS:]
        source = [t for t in recent_turns if t.role != "system" and t.content]
        if not source:
            return ""

        lines = []
        for t in source:
            label = "User" if t.role == "user" else "Assistant"
            lines.append(f"{label}: {t.content[:_SUMMARY_TURN_CHARS]}")
        prompt = _SUMMARY_INSTRUCTION + "\n\nConversation:\n" + "\n\n".join(lines) + "\n\nSummary:"

        try:
            summary = await self._summarize_fn(prompt)
        except Exception:
            logger.exception("Failed to generate conversation summary")
            return ""
        return (summary or "").strip()

    async def maybe_summarize(self) -> bool:
        """Refresh the rolling summary when the cadence is reached. Returns True if it changed."""
        if not self.should_summarize():
            return False
        summary = await self.summarize()
        if not summary:
            return False
        self.state.summary = summary
        self.state.turns_since_summary = 0
        logger.info("Conversation summary refreshed (%d chars)", len(summary))
        return True

    # --- Budgeting ---

    def prune(self, max_history_tokens: int | None = None) -> int:
        """Drop the oldest turns until the history fits the token budget.

        The system turn and the newest turn are always retained. Otherwise turns are
        kept newest first while the running total stays within budget; the first
        turn that does not fit ends the walk, so no turn younger than a retained one
        is ever dropped. Returns the number of dropped turns.
        """
        budget = self.max_history_tokens if max_history_tokens is None else max_history_tokens
        turns = self.state.turns
        if len(turns) <= 1:
            return 0

        head = [turns[0]] if turns[0].role == "system" else []
        body = turns[len(head) :]
        running = sum(t.token_cost for t in head)

        kept: list[Turn] = []
        for idx in range(len(body) - 1, -1, -1):
            turn = body[idx]
            if kept and running + turn.token_cost > budget:
                break
            kept.append(turn)
            running += turn.token_cost
        kept.reverse()

        dropped = len(body) - len(kept)
        if dropped:
            self.state.turns = head + kept
            logger.info("Pruned %d old turns to fit %d-token history budget", dropped, budget)
        return dropped

    # --- Request building ---

    def snapshot_for_request(self, retrieval_context: str | None = None) -> list[Turn]:
        """Turns to send for one request: system, summary, retrieval, then history."""
        turns = self.state.turns
        snapshot: list[Turn] = []
        rest = turns
        if turns and turns[0].role == "system":
            snapshot.append(turns[0])
            rest = turns[1:]
        if self.state.summary:
            snapshot.append(
                self._make_turn("system", f"Summary of the earlier conversation:\n{self.state.summary}", kind="summary")
            )
        if retrieval_context:
            snapshot.append(self._make_turn("system", retrieval_context, kind="retrieval"))
        snapshot.extend(t for t in rest if t.finalized or t.content)
        return snapshot

    @staticmethod
    def to_messages(turns: Iterable[Turn]) -> list[dict[str, Any]]:
        return [t.to_message() for t in turns]
