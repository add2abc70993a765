"""Tests for conversation history, pruning and rolling summaries."""

from __future__ import annotations

import random
from unittest.mock import AsyncMock

import pytest

from corex.services.context_store import ContextStore, Turn


def _store(**kwargs) -> ContextStore:
    return ContextStore("You are a helpful assistant.", **kwargs)


def _words(n: int) -> str:
    return " ".join(["word"] * n)


class TestTurns:
    def test_first_turn_is_system(self) -> None:
        store = _store()
        assert len(store.turns) == 1
        assert store.turns[0].role == "system"

    def test_append_counts_toward_summary(self) -> None:
        store = _store()
        store.append("user", "hi")
        store.append("assistant", "hello")
        assert store.state.turns_since_summary == 2

    def test_append_rejects_unknown_role(self) -> None:
        with pytest.raises(ValueError):
            _store().append("tool", "x")

    def test_append_sets_token_cost(self) -> None:
        turn = _store().append("user", _words(10))
        assert turn.token_cost == 13

    def test_finalized_turn_is_immutable(self) -> None:
        turn = _store().append("user", "hi")
        with pytest.raises(ValueError):
            turn.append_text("more")

    def test_in_flight_turn_accumulates_then_finalizes(self) -> None:
        store = _store()
        turn = store.begin_assistant_turn()
        turn.append_text("Hello ")
        turn.append_text("there")
        store.finalize_turn(turn)
        assert turn.finalized
        assert turn.content == "Hello there"
        assert turn.token_cost == 3
        assert store.state.turns_since_summary == 1
        with pytest.raises(ValueError):
            turn.append_text("!")

    def test_finalize_interrupted(self) -> None:
        store = _store()
        turn = store.begin_assistant_turn()
        turn.append_text("partial")
        store.finalize_turn(turn, interrupted=True)
        assert turn.interrupted

    def test_discard_in_flight_turn(self) -> None:
        store = _store()
        turn = store.begin_assistant_turn()
        store.discard_turn(turn)
        assert len(store.turns) == 1

    def test_reset_keeps_only_system(self) -> None:
        store = _store()
        store.append("user", "a")
        store.append("assistant", "b")
        store.state.summary = "old"
        store.reset()
        assert [t.role for t in store.turns] == ["system"]
        assert store.summary is None
        assert store.state.turns_since_summary == 0

    def test_remove_last_exchange(self) -> None:
        store = _store()
        store.append("user", "first")
        store.append("assistant", "one")
        store.append("user", "second")
        store.append("assistant", "TOOL:read_file|PARAMS:{}")
        store.append("user", "Tool result", kind="tool_result")
        store.append("assistant", "two")
        assert store.remove_last_exchange() == "second"
        assert [t.content for t in store.turns[1:]] == ["first", "one"]

    def test_remove_last_exchange_without_user_turn(self) -> None:
        assert _store().remove_last_exchange() is None

    def test_set_system_prompt_replaces_first_turn(self) -> None:
        store = _store()
        store.append("user", "hi")
        store.set_system_prompt("New prompt")
        assert store.turns[0].content == "New prompt"
        assert store.turns[1].content == "hi"


class TestPrune:
    def test_default_budget_is_forty_percent(self) -> None:
        store = _store(max_context_tokens=1000)
        assert store.max_history_tokens == 400

    def test_drops_oldest_first(self) -> None:
        store = ContextStore("sys", max_context_tokens=100)  # budget 40
        for i in range(6):
            store.append("user", _words(10))  # 13 tokens each
        dropped = store.prune()
        # system (1) + 2 * 13 = 27 fits; a third turn would make 40, still within budget
        assert dropped == 3
        assert store.total_tokens <= 40
        assert store.turns[0].role == "system"

    def test_no_prune_when_within_budget(self) -> None:
        store = _store(max_context_tokens=10_000)
        store.append("user", "short")
        assert store.prune() == 0

    def test_stops_at_first_turn_that_does_not_fit(self) -> None:
        store = ContextStore("sys", max_context_tokens=100)
        store.append("user", "small")
        store.append("assistant", _words(40))  # 52 tokens
        store.append("user", "small again")
        store.prune(max_history_tokens=20)
        # the big turn does not fit, so the older small turn goes too
        assert [t.content for t in store.turns] == ["sys", "small again"]

    def test_newest_turn_kept_even_when_oversized(self) -> None:
        store = ContextStore("sys", max_context_tokens=100)
        store.append("user", "hello")
        store.append("user", _words(500))
        store.prune()
        assert store.turns[-1].content == _words(500)
        assert len(store.turns) == 2

    def test_system_turn_kept_when_larger_than_budget(self) -> None:
        store = ContextStore(_words(200), max_context_tokens=100)
        store.append("user", "hi")
        store.prune()
        assert store.turns[0].role == "system"
        assert store.turns[-1].content == "hi"

    def test_strict_recency_for_random_histories(self) -> None:
        rng = random.Random(1234)
        for _ in range(50):
            store = ContextStore("sys", max_context_tokens=rng.randint(50, 400))
            for i in range(rng.randint(1, 25)):
                store.append(rng.choice(["user", "assistant"]), f"{i} " + _words(rng.randint(1, 30)))
            before = [t.content for t in store.turns]
            store.prune()
            after = [t.content for t in store.turns]
            # Retained non-system turns are exactly a suffix of the original history
            tail = after[1:]
            assert before[len(before) - len(tail) :] == tail


class TestSnapshot:
    def test_order_system_summary_retrieval_history(self) -> None:
        store = _store()
        store.append("user", "question")
        store.state.summary = "we decided things"
        snapshot = store.snapshot_for_request(retrieval_context="--- FILE: a.py ---")
        assert [t.kind for t in snapshot] == ["message", "summary", "retrieval", "message"]
        assert snapshot[0].role == "system"
        assert "we decided things" in snapshot[1].content
        assert snapshot[2].role == "system"
        assert snapshot[-1].content == "question"

    def test_summary_and_retrieval_not_stored(self) -> None:
        store = _store()
        store.append("user", "question")
        store.state.summary = "s"
        store.snapshot_for_request(retrieval_context="ctx")
        assert len(store.turns) == 2
        assert all(t.kind == "message" for t in store.turns)

    def test_empty_in_flight_turn_excluded(self) -> None:
        store = _store()
        store.append("user", "q")
        store.begin_assistant_turn()
        assert len(store.snapshot_for_request()) == 2

    def test_to_messages(self) -> None:
        msgs = ContextStore.to_messages([Turn(role="user", content="hi")])
        assert msgs == [{"role": "user", "content": "hi"}]


class TestSummarize:
    def test_should_summarize_at_interval(self) -> None:
        store = _store(summary_interval=3)
        store.append("user", "a")
        store.append("assistant", "b")
        assert not store.should_summarize()
        store.append("user", "c")
        assert store.should_summarize()

    @pytest.mark.asyncio
    async def test_maybe_summarize_replaces_summary_and_resets_counter(self) -> None:
        fn = AsyncMock(return_value="  Decided to use pytest.  ")
        store = _store(summary_interval=2, summarize_fn=fn)
        store.append("user", "a")
        store.append("assistant", "b")
        assert await store.maybe_summarize() is True
        assert store.summary == "Decided to use pytest."
        assert store.state.turns_since_summary == 0
        prompt = fn.call_args.args[0]
        assert "at most 5 sentences" in prompt
        assert "User: a" in prompt and "Assistant: b" in prompt

    @pytest.mark.asyncio
    async def test_maybe_summarize_noop_before_interval(self) -> None:
        fn = AsyncMock(return_value="x")
        store = _store(summary_interval=10, summarize_fn=fn)
        store.append("user", "a")
        assert await store.maybe_summarize() is False
        fn.assert_not_called()

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_summary(self) -> None:
        fn = AsyncMock(side_effect=RuntimeError("boom"))
        store = _store(summary_interval=1, summarize_fn=fn)
        store.state.summary = "previous"
        store.append("user", "a")
        assert await store.summarize() == ""
        assert await store.maybe_summarize() is False
        assert store.summary == "previous"
        assert store.should_summarize()

    @pytest.mark.asyncio
    async def test_summary_source_truncated(self) -> None:
        fn = AsyncMock(return_value="ok")
        store = _store(summarize_fn=fn)
        store.append("user", "x" * 2000)
        await store.summarize()
        prompt = fn.call_args.args[0]
        assert "x" * 500 in prompt
        assert "x" * 501 not in prompt

    @pytest.mark.asyncio
    async def test_without_summarizer_returns_empty(self) -> None:
        store = _store()
        store.append("user", "a")
        assert await store.summarize() == ""
