"""Advisory retrieval context: project snippets relevant to the user's message."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol, Sequence

logger = logging.getLogger(__name__)

DEFAULT_K = 4
DEFAULT_MAX_CHARS = 1500
DEFAULT_TIMEOUT = 10.0


@dataclass
class RetrievalHit:
    path: str
    content: str
    reason: str = ""


class Retriever(Protocol):
    async def search(self, query: str, k: int) -> list[RetrievalHit]: ...


def build_retrieval_block(hits: Sequence[RetrievalHit], max_chars: int = DEFAULT_MAX_CHARS) -> str:
    """Format hits as one system-turn body, each file truncated to ``max_chars``."""
    if not hits:
        return ""
    parts = [
        "Project context (retrieved from the code index). Take these files into account when answering:",
        "",
    ]
    for hit in hits:
        header = f"--- FILE: {hit.path} ---"
        if hit.reason:
            header += f" ({hit.reason})"
        parts.append(header)
        parts.append("```")
        parts.append(hit.content[:max_chars])
        parts.append("```")
        parts.append("")
    return "\n".join(parts).rstrip() + "\n"


async def fetch_retrieval_context(
    retriever: Retriever | None,
    query: str,
    k: int = DEFAULT_K,
    max_chars: int = DEFAULT_MAX_CHARS,
    timeout: float = DEFAULT_TIMEOUT,
) -> str | None:
    """Search and format retrieval context. Any failure yields None and is only logged."""
    if retriever is None or k <= 0 or not query.strip():
        return None
    try:
        hits = await asyncio.wait_for(retriever.search(query, k), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Retrieval timed out after %.0fs; continuing without project context", timeout)
        return None
    except Exception:
        logger.warning("Retrieval failed; continuing without project context", exc_info=True)
        return None
    block = build_retrieval_block(list(hits)[:k], max_chars)
    if block:
        logger.debug("Injected %d retrieval hits", min(len(hits), k))
    return block or None
