"""Tests for retrieval context formatting and fetching."""

from __future__ import annotations

import asyncio

import pytest

from corex.services.retrieval import RetrievalHit, build_retrieval_block, fetch_retrieval_context


class _StubRetriever:
    def __init__(self, hits: list[RetrievalHit] | None = None, exc: Exception | None = None, delay: float = 0) -> None:
        self.hits = hits or []
        self.exc = exc
        self.delay = delay
        self.calls: list[tuple[str, int]] = []

    async def search(self, query: str, k: int) -> list[RetrievalHit]:
        self.calls.append((query, k))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc:
            raise self.exc
        return self.hits


class TestBuildRetrievalBlock:
    def test_empty(self) -> None:
        assert build_retrieval_block([]) == ""

    def test_formats_files(self) -> None:
        block = build_retrieval_block([RetrievalHit("src/a.py", "print(1)", reason="imports"), RetrievalHit("b.md", "# B")])
        assert "--- FILE: src/a.py --- (imports)" in block
        assert "--- FILE: b.md ---" in block
        assert "print(1)" in block
        assert block.index("src/a.py") < block.index("b.md")

    def test_truncates_each_file(self) -> None:
        block = build_retrieval_block([RetrievalHit("big.txt", "x" * 5000)], max_chars=100)
        assert "x" * 100 in block
        assert "x" * 101 not in block


class TestFetchRetrievalContext:
    @pytest.mark.asyncio
    async def test_no_retriever(self) -> None:
        assert await fetch_retrieval_context(None, "query") is None

    @pytest.mark.asyncio
    async def test_blank_query_skips_search(self) -> None:
        retriever = _StubRetriever([RetrievalHit("a", "b")])
        assert await fetch_retrieval_context(retriever, "   ") is None
        assert retriever.calls == []

    @pytest.mark.asyncio
    async def test_returns_block_and_limits_hits(self) -> None:
        hits = [RetrievalHit(f"f{i}.py", str(i)) for i in range(6)]
        retriever = _StubRetriever(hits)
        block = await fetch_retrieval_context(retriever, "where is auth", k=2)
        assert retriever.calls == [("where is auth", 2)]
        assert block is not None
        assert "f0.py" in block and "f1.py" in block
        assert "f2.py" not in block

    @pytest.mark.asyncio
    async def test_no_hits(self) -> None:
        assert await fetch_retrieval_context(_StubRetriever([]), "q") is None

    @pytest.mark.asyncio
    async def test_failure_is_swallowed(self) -> None:
        assert await fetch_retrieval_context(_StubRetriever(exc=RuntimeError("index down")), "q") is None

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        retriever = _StubRetriever([RetrievalHit("a", "b")], delay=1)
        assert await fetch_retrieval_context(retriever, "q", timeout=0.01) is None
