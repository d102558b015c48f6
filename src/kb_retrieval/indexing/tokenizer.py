"""Tokenizer for the keyword index.

Latin text is lowercased, split on whitespace and punctuation, and filtered
against a short English stop-word list. Runs of CJK ideographs carry no word
boundaries, so each run is emitted whole (2-8 characters), plus bigrams for
longer runs and single characters for two-character runs. Bigrams made of
grammatical particles match almost everything and are never emitted.
"""

import re

LATIN_SPLIT_PATTERN = re.compile(r"[\s.,;:!?()\[\]{}\"'`~\-_+=<>|\\/\u4e00-\u9fff]+")
CJK_RUN_PATTERN = re.compile(r"[\u4e00-\u9fff]+")

MIN_LATIN_TOKEN_LENGTH = 2
MIN_CJK_RUN = 2
MAX_CJK_RUN = 8
CJK_BIGRAM_MIN_RUN = 4

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
        "with", "by", "is", "are", "was", "were", "be", "been", "have", "has", "had",
        "do", "does", "did", "will", "would", "could", "should", "may", "might",
        "can", "this", "that", "these", "those",
    }
)  # fmt: skip

NOISE_BIGRAMS = frozenset(
    {
        # Possessive particles
        "的合", "柴的", "个的", "们的", "它的", "他的", "她的", "我的", "你的", "其的",
        "是的", "了的", "在的", "有的", "也的", "都的", "很的", "就的", "要的", "会的",
        "可的", "能的", "说的", "做的", "来的", "去的", "对的", "向的", "从的", "与的",
        # Connectives
        "的是", "的在", "的有", "的为", "的和", "的或", "的但", "的所", "的如", "的此",
        "和的", "或的", "但的", "所的", "如的", "此的", "等的", "及的", "以的", "用的",
        # Temporal and spatial fragments
        "时的", "候的", "间的", "里的", "上的", "下的", "前的", "后的", "左的", "右的",
        "内的", "外的", "中的", "间中", "中间", "之间", "之中", "之内", "之外", "之上",
        # Fragments seen in contract and token queries
        "合的", "约的", "址的", "地的", "智的", "链的", "块的", "币的", "代的",
        "旺的", "项的", "目的", "技的", "术的", "规的", "格的",
    }
)  # fmt: skip


def latin_tokens(text: str) -> list[str]:
    """Lowercased Latin-script tokens with stop words removed."""
    return [
        token
        for token in LATIN_SPLIT_PATTERN.split(text.lower())
        if len(token) >= MIN_LATIN_TOKEN_LENGTH and token not in STOP_WORDS
    ]


def cjk_tokens(text: str) -> list[str]:
    """Tokens for each contiguous CJK run."""
    tokens: list[str] = []
    for run in CJK_RUN_PATTERN.findall(text):
        if MIN_CJK_RUN <= len(run) <= MAX_CJK_RUN:
            tokens.append(run)
        if len(run) >= CJK_BIGRAM_MIN_RUN:
            for i in range(len(run) - 1):
                bigram = run[i : i + 2]
                if bigram not in NOISE_BIGRAMS:
                    tokens.append(bigram)
        if len(run) == MIN_CJK_RUN:
            tokens.extend(run)
    return tokens


def tokenize(text: str | None) -> list[str]:
    """Tokenize text for BM25, deduplicated in first-seen order.

    Args:
        text: Text to tokenize.

    Returns:
        Unique tokens; empty for empty input.
    """
    if not text:
        return []
    return list(dict.fromkeys([*latin_tokens(text), *cjk_tokens(text)]))
