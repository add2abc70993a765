"""Token cost approximation used for context budgeting."""

from __future__ import annotations

import math

_TOKENS_PER_WORD = 1.3


def estimate_tokens(text: str) -> int:
    """Approximate the model-context cost of ``text`` as ``ceil(words * 1.3)``.

    Deterministic, and never decreases when more text is appended. Only used for
    budgeting decisions, never to truncate what is sent to the model.
    """
    if not text:
        return 0
    return math.ceil(len(text.split()) * _TOKENS_PER_WORD)
