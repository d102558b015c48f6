"""Relevance and diversity rerankers.

The cross-encoder scorer lives in ``kb_retrieval.rerankers.cross_encoder`` and
is imported only when a model is configured, since it needs the optional
``models`` extra.
"""

from kb_retrieval.rerankers.base import PassageScorer, RankedResult
from kb_retrieval.rerankers.diversity import DiversityReranker, MMRReranker
from kb_retrieval.rerankers.fallback import FallbackScorer
from kb_retrieval.rerankers.relevance import RelevanceReranker

__all__ = [
    "PassageScorer",
    "RankedResult",
    "FallbackScorer",
    "RelevanceReranker",
    "DiversityReranker",
    "MMRReranker",
]
