"""Deterministic relevance scorer used when no model is available.

Combines four signals:
- Exact phrase containment (40%): 1.0 if the whole query appears in the passage,
  otherwise the share of adjacent query word pairs that appear.
- Term overlap (30%): share of query terms found among the passage terms.
- Proximity (20%): how close together matched query terms sit in the passage.
- Prior retrieval score (10%), squashed into [0, 1) first.

Fused retrieval scores are unbounded, so the prior is mapped through
``p / (1 + p)`` and the combined score stays below one. Only words longer than
two characters count as terms.
"""

from kb_retrieval.rerankers.base import PassageScorer

PHRASE_WEIGHT = 0.4
OVERLAP_WEIGHT = 0.3
PROXIMITY_WEIGHT = 0.2
PRIOR_WEIGHT = 0.1

MIN_TERM_LENGTH = 3
PROXIMITY_SCALE = 100
SINGLE_MATCH_PROXIMITY = 0.5
TERM_STRIP_CHARS = ".,;:!?()[]{}\"'`"


def squash_prior(prior: float) -> float:
    """Map a non-negative retrieval score into [0, 1), preserving order."""
    if prior <= 0:
        return 0.0
    return prior / (1.0 + prior)


def _terms(text: str) -> list[str]:
    words = (word.strip(TERM_STRIP_CHARS) for word in text.split())
    return [word for word in words if len(word) >= MIN_TERM_LENGTH]


def phrase_score(query: str, text: str) -> float:
    """Exact-phrase containment with partial credit for adjacent word pairs."""
    if query and query in text:
        return 1.0

    words = _terms(query)
    if not words:
        return 0.0

    matches = sum(1 for i in range(len(words) - 1) if f"{words[i]} {words[i + 1]}" in text)
    return matches / max(len(words) - 1, 1)


def overlap_score(query: str, text: str) -> float:
    """Share of distinct query terms that are also passage terms."""
    query_terms = set(_terms(query))
    if not query_terms:
        return 0.0
    return len(query_terms & set(_terms(text))) / len(query_terms)


def proximity_score(query: str, text: str) -> float:
    """Inverse average gap between first occurrences of matched query terms."""
    positions = sorted(
        position for word in _terms(query) if (position := text.find(word)) != -1
    )
    if not positions:
        return 0.0
    if len(positions) == 1:
        return SINGLE_MATCH_PROXIMITY

    gaps = [b - a for a, b in zip(positions, positions[1:])]
    average_gap = sum(gaps) / len(gaps)
    return max(0.0, 1 - average_gap / PROXIMITY_SCALE)


class FallbackScorer(PassageScorer):
    """Lexical multi-signal scorer with no model dependency."""

    method = "fallback"

    def score_one(self, query: str, text: str, prior_score: float = 0.0) -> float:
        query_lower = query.lower().strip()
        text_lower = text.lower()

        combined = (
            PHRASE_WEIGHT * phrase_score(query_lower, text_lower)
            + OVERLAP_WEIGHT * overlap_score(query_lower, text_lower)
            + PROXIMITY_WEIGHT * proximity_score(query_lower, text_lower)
            + PRIOR_WEIGHT * squash_prior(prior_score)
        )
        return max(combined, 0.0)

    def score(
        self,
        query: str,
        passages: list[str],
        prior_scores: list[float] | None = None,
    ) -> list[float]:
        priors = prior_scores if prior_scores is not None else [0.0] * len(passages)
        return [
            self.score_one(query, text, prior)
            for text, prior in zip(passages, priors, strict=True)
        ]
