"""Byte-based token estimation and context budgeting."""

import math

from .constants import DEFAULT_RESPONSE_RESERVE, RAG_HARD_CAP_CONTEXT, RAG_HARD_CAP_TOKENS

CHARS_PER_TOKEN = 4


def estimate(text: str) -> int:
    """Estimate tokens as ``ceil(bytes / 4)``; empty text is 0 tokens."""
    n = len(text.encode("utf-8"))
    if n == 0:
        return 0
    return (n + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN


def warn_if_over(
    prompt_tokens: int,
    context_limit: int,
    warn_threshold: float,
    response_reserve: int = DEFAULT_RESPONSE_RESERVE,
) -> str:
    """Return a warning message when prompt plus reserve reaches the threshold.

    Returns an empty string when within budget or when budgeting is disabled
    (``context_limit <= 0`` or ``warn_threshold <= 0``).
    """
    if context_limit <= 0 or warn_threshold <= 0:
        return ""
    if prompt_tokens < 0 or response_reserve < 0:
        return ""
    total = prompt_tokens + response_reserve
    threshold = math.ceil(context_limit * warn_threshold)
    if total < threshold:
        return ""
    return (
        f"estimated tokens {total} (prompt {prompt_tokens} + reserve {response_reserve}) "
        f"exceeds {warn_threshold * 100:.0f}% of context limit {context_limit}"
    )


def effective_rag_token_cap(
    context_limit: int,
    base_tokens: int,
    rag_max_tokens: int,
    response_reserve: int = DEFAULT_RESPONSE_RESERVE,
) -> int:
    """Token budget left for symbol definitions after the base prompt and reserve.

    With no context limit the configured cap is returned as-is (0 means no cap).
    """
    if context_limit <= 0:
        return rag_max_tokens
    budget = max(0, context_limit - base_tokens - response_reserve)
    effective = min(budget, rag_max_tokens) if rag_max_tokens > 0 else budget
    if context_limit > RAG_HARD_CAP_CONTEXT:
        effective = min(effective, RAG_HARD_CAP_TOKENS)
    return effective


def truncate_to_tokens(text: str, max_tokens: int, marker: str) -> str:
    """Cut ``text`` to roughly ``max_tokens`` tokens and append ``marker``."""
    if max_tokens <= 0:
        return text
    max_chars = max_tokens * CHARS_PER_TOKEN
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + marker
