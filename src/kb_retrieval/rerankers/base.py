"""Base abstract class for passage scorers."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass
class RankedResult:
    """A single scored passage.

    Attributes:
        text: The passage text that was scored.
        score: Relevance score (higher is better).
        original_index: Index in the input list.
    """

    text: str
    score: float
    original_index: int | None = None


class PassageScorer(ABC):
    """Abstract base class for (query, passage) relevance scorers.

    Scorers return one score per passage, in input order. ``rank`` sorts those
    scores for callers that only need an ordering.
    """

    method: str = "unknown"

    @abstractmethod
    def score(
        self,
        query: str,
        passages: list[str],
        prior_scores: list[float] | None = None,
    ) -> list[float]:
        """Score passages against a query.

        Args:
            query: The search query.
            passages: Candidate passage texts.
            prior_scores: Retrieval scores of the passages, if any.

        Returns:
            One relevance score per passage, in input order.
        """

    async def score_async(
        self,
        query: str,
        passages: list[str],
        prior_scores: list[float] | None = None,
    ) -> list[float]:
        """Async version of score.

        Runs scoring in a worker thread to avoid blocking the event loop.
        """
        return await asyncio.to_thread(self.score, query, passages, prior_scores)

    def rank(
        self,
        query: str,
        passages: list[str],
        top_k: int | None = None,
    ) -> list[RankedResult]:
        """Score passages and return them sorted by score descending.

        Args:
            query: The search query.
            passages: Candidate passage texts.
            top_k: Optional number of top results to return.

        Returns:
            RankedResult objects sorted by score (descending).
        """
        if not passages:
            return []

        scores = self.score(query, passages)
        results = [
            RankedResult(text=text, score=score, original_index=idx)
            for idx, (text, score) in enumerate(zip(passages, scores, strict=True))
        ]
        results.sort(key=lambda r: r.score, reverse=True)

        if top_k is not None:
            results = results[:top_k]

        return results
