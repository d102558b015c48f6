"""Token estimation shared by aggregation and context budgeting."""

import math

CHARS_PER_TOKEN = 4
TOKENS_PER_WORD = 0.75


def estimate_tokens(text: str) -> int:
    """Estimate language-model tokens as ``ceil(max(chars / 4, words * 0.75))``."""
    if not text:
        return 0
    by_chars = len(text) / CHARS_PER_TOKEN
    by_words = len(text.split()) * TOKENS_PER_WORD
    return math.ceil(max(by_chars, by_words))


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """Cut text to roughly ``max_tokens``, preferring a sentence or word boundary.

    A sentence boundary is used when it keeps at least 80% of the allowance and a
    word boundary when it keeps at least 90%; otherwise the text is cut hard.
    """
    if max_tokens <= 0:
        return ""
    max_chars = max_tokens * CHARS_PER_TOKEN
    if len(text) <= max_chars and estimate_tokens(text) <= max_tokens:
        return text

    head = text[:max_chars]
    while head and estimate_tokens(head) > max_tokens:
        head = head[: int(len(head) * 0.9)]

    last_period = head.rfind(".")
    last_space = head.rfind(" ")
    if last_period > len(head) * 0.8:
        return head[: last_period + 1]
    if last_space > len(head) * 0.9:
        return head[:last_space]
    return head
