"""Diversity reranking with maximal marginal relevance (MMR).

MMR picks results one at a time, each time taking the candidate with the best
``lambda * relevance - (1 - lambda) * max_similarity_to_selected``. Relevance is
the candidate's current pipeline score; similarity is the cosine between chunk
embeddings. Candidates without an embedding count as dissimilar to everything.
"""

import logging
import re
from typing import Protocol, runtime_checkable

import numpy as np

from kb_retrieval.types import RetrievalResult

logger = logging.getLogger(__name__)


@runtime_checkable
class DiversityReranker(Protocol):
    """Selects a subset of ranked results trading relevance against redundancy."""

    async def rerank(
        self, query: str, results: list[RetrievalResult], target_count: int
    ) -> list[RetrievalResult]: ...


class MMRReranker:
    """Maximal marginal relevance reranker.

    With ``adaptive_lambda`` enabled, precise technical questions shift lambda
    toward relevance and broad exploratory questions shift it toward diversity.

    Attributes:
        lambda_: Relevance/diversity trade-off (1.0 = relevance only).
        adaptive_lambda: Adjust lambda from the query wording.
    """

    TECHNICAL_PATTERNS = [
        re.compile(r"\b(fee|gas|cost|tps|transaction|speed|consensus|algorithm)\b", re.IGNORECASE),
        re.compile(r"\bhow (to|do)\b", re.IGNORECASE),
        re.compile(r"\b(step|process)\b", re.IGNORECASE),
    ]
    EXPLORATORY_PATTERNS = [
        re.compile(r"\b(what|explain|tell me|describe|overview)\b", re.IGNORECASE),
        re.compile(r"\b(compare|difference|vs|versus)\b", re.IGNORECASE),
        re.compile(r"\b(options|choices|alternatives)\b", re.IGNORECASE),
    ]

    def __init__(self, lambda_: float = 0.5, adaptive_lambda: bool = True) -> None:
        self.lambda_ = lambda_
        self.adaptive_lambda = adaptive_lambda

    def adapt_lambda(self, query: str) -> float:
        if not self.adaptive_lambda:
            return self.lambda_
        if any(p.search(query) for p in self.TECHNICAL_PATTERNS):
            return min(self.lambda_ + 0.2, 0.9)
        if any(p.search(query) for p in self.EXPLORATORY_PATTERNS):
            return max(self.lambda_ - 0.2, 0.1)
        return self.lambda_

    async def rerank(
        self, query: str, results: list[RetrievalResult], target_count: int
    ) -> list[RetrievalResult]:
        """Select up to ``target_count`` diverse results.

        Args:
            query: The original query.
            results: Ranked candidates.
            target_count: Number of results to select.

        Returns:
            Selected results in selection order, each with ``mmr_score`` set.
        """
        if len(results) <= 1 or target_count <= 0:
            return results[:target_count]

        lam = self.adapt_lambda(query)
        relevance = np.array([r.effective_score() for r in results], dtype=np.float64)
        similarity = self._similarity_matrix(results)

        selected: list[int] = []
        mmr_scores: dict[int, float] = {}
        remaining = list(range(len(results)))

        while remaining and len(selected) < target_count:
            best_idx = remaining[0]
            best_score = -np.inf
            for idx in remaining:
                redundancy = max((similarity[idx, s] for s in selected), default=0.0)
                score = lam * relevance[idx] - (1 - lam) * redundancy
                if score > best_score:
                    best_score = score
                    best_idx = idx
            selected.append(best_idx)
            mmr_scores[best_idx] = float(best_score)
            remaining.remove(best_idx)

        logger.debug(f"MMR selected {len(selected)} of {len(results)} results (lambda={lam:.2f})")
        return [results[i].model_copy(update={"mmr_score": mmr_scores[i]}) for i in selected]

    @staticmethod
    def _similarity_matrix(results: list[RetrievalResult]) -> np.ndarray:
        n = len(results)
        similarity = np.zeros((n, n), dtype=np.float64)
        with_embeddings = [i for i, r in enumerate(results) if r.embedding]
        if len(with_embeddings) < 2:
            return similarity

        dims = {len(results[i].embedding or []) for i in with_embeddings}
        if len(dims) != 1:
            logger.warning("MMR skipped similarity: embeddings have mixed dimensions")
            return similarity

        vectors = np.array([results[i].embedding for i in with_embeddings], dtype=np.float64)
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        normalized = vectors / norms
        cosine = normalized @ normalized.T
        for a, i in enumerate(with_embeddings):
            for b, j in enumerate(with_embeddings):
                similarity[i, j] = cosine[a, b]
        return similarity
