"""Semantic retriever with intent-aware hybrid fusion.

This module implements the retrieval pipeline, supporting:
- Query preparation (exact signals, glossary expansion, intents)
- Dense search always, keyword search only when the query carries a lexical signal
- Dynamic dense/keyword fusion weights per query
- Relevance and diversity reranking with graceful degradation
- Metadata gates and staleness down-weighting
- Parent/child aggregation of the surviving hits
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from kb_retrieval.aggregation.parent_child import ParentChildAggregator
from kb_retrieval.config import Settings
from kb_retrieval.embedders import Embedder
from kb_retrieval.indexing.bm25 import KeywordIndex
from kb_retrieval.indexing.vector_store import VectorStore
from kb_retrieval.rerankers.diversity import DiversityReranker
from kb_retrieval.rerankers.relevance import RelevanceReranker
from kb_retrieval.retrieval.classifier import FusionWeights, QueryAnalyzer
from kb_retrieval.retrieval.constants import INTEGRATION_INTENTS, LIVE_INTEGRATION_STATUSES
from kb_retrieval.types import (
    IntentType,
    ParentBlock,
    QueryAnalysis,
    RetrievalResult,
    RetrievalSource,
)
from kb_retrieval.utils.metrics import (
    KEYWORD_SEARCHES_SKIPPED,
    record_degradation,
    track_retrieval,
)

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class RetrievalResponse:
    """Outcome of one retrieval call.

    Attributes:
        analysis: Prepared query.
        weights: Fusion weights used for this query.
        results: Filtered child-level results, best first.
        parents: Parent blocks rebuilt from ``results``, best first.
    """

    analysis: QueryAnalysis
    weights: FusionWeights
    results: list[RetrievalResult] = field(default_factory=list)
    parents: list[ParentBlock] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.results)

    def context_candidates(self) -> list[RetrievalResult]:
        """Parent blocks as results when any were built, else the child results."""
        if self.parents:
            return [block.to_result() for block in self.parents]
        return list(self.results)


class SemanticRetriever:
    """Hybrid retriever over a vector store and a keyword index.

    Attributes:
        vector_store: Dense index.
        keyword_index: BM25 index.
        embedder: Embedding function for queries.
        settings: Engine settings.
        analyzer: Query analyzer (signals, expansion, intents, weights).
        reranker: Optional relevance reranker.
        diversity: Optional diversity reranker.
        aggregator: Optional parent/child aggregator.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        keyword_index: KeywordIndex,
        embedder: Embedder,
        settings: Settings,
        analyzer: QueryAnalyzer | None = None,
        reranker: RelevanceReranker | None = None,
        diversity: DiversityReranker | None = None,
        aggregator: ParentChildAggregator | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize semantic retriever.

        Args:
            vector_store: Dense index.
            keyword_index: BM25 index.
            embedder: Embedding function for queries.
            settings: Engine settings.
            analyzer: Query analyzer; one built from ``settings`` if None.
            reranker: Relevance reranker; the stage is skipped if None.
            diversity: Diversity reranker; the stage is skipped if None.
            aggregator: Parent/child aggregator; the stage is skipped if None.
            clock: Current time, for staleness checks.
        """
        self.vector_store = vector_store
        self.keyword_index = keyword_index
        self.embedder = embedder
        self.settings = settings
        self.analyzer = analyzer or QueryAnalyzer(
            min_dense_weight=settings.fusion_min_dense_weight,
            max_keyword_weight=settings.fusion_max_keyword_weight,
            base_keyword_weight=1.0 - settings.fusion_base_dense_weight,
        )
        self.reranker = reranker
        self.diversity = diversity
        self.aggregator = aggregator
        self.clock = clock

    @track_retrieval()
    async def retrieve(self, query: str, top_k: int | None = None) -> RetrievalResponse:
        """Run the full retrieval pipeline for a query.

        Main entry point. Handles:
        1. Query preparation and fusion weights
        2. Dense and (conditional) keyword retrieval, run concurrently
        3. Fusion by resolved source key
        4. Optional relevance and diversity reranking
        5. Metadata gates, staleness decay and the score floor
        6. Parent/child aggregation

        Args:
            query: Natural-language query.
            top_k: Results to keep after filtering; ``retrieval_final_top_k`` if None.

        Returns:
            RetrievalResponse; empty results are a valid outcome.
        """
        analysis = self.prepare_query(query)
        weights = self.analyzer.calculate_dynamic_weights(analysis)
        response = RetrievalResponse(analysis=analysis, weights=weights)

        candidates = await self.perform_hybrid_retrieval(analysis, weights)
        if not candidates:
            logger.debug(f"No candidates for query {query!r}")
            return response

        reranked = await self.rerank_results(analysis, candidates)
        response.results = self.apply_metadata_filters(reranked, analysis, top_k)
        response.parents = self.aggregate(response.results, analysis)

        logger.info(
            f"Retrieved {len(response.results)} results and {len(response.parents)} parents "
            f"for query (dense={weights.dense:.2f}, keyword={weights.keyword:.2f}, "
            f"reason={weights.reason})"
        )
        return response

    def prepare_query(self, query: str) -> QueryAnalysis:
        return self.analyzer.prepare_query(query)

    async def perform_hybrid_retrieval(
        self, analysis: QueryAnalysis, weights: FusionWeights
    ) -> list[RetrievalResult]:
        """Retrieve dense and keyword candidates and fuse them.

        The dense search embeds the expanded query; the keyword search runs on
        the original query and only when ``needs_keyword_search`` is set. When
        the keyword search is skipped, dense similarity is the final score.

        Args:
            analysis: Prepared query.
            weights: Fusion weights.

        Returns:
            Fused candidates sorted by final score descending.
        """
        embedding = await self.embedder.embed(analysis.expanded, is_query=True)
        dense_task = asyncio.to_thread(
            self.vector_store.search, embedding, self.settings.retrieval_top_k
        )

        if not analysis.needs_keyword_search:
            KEYWORD_SEARCHES_SKIPPED.inc()
            dense = await dense_task
            return [r.model_copy(update={"final_score": r.score}) for r in dense]

        dense, keyword = await asyncio.gather(
            dense_task,
            asyncio.to_thread(
                self.keyword_index.search, analysis.original, self.settings.retrieval_bm25_top_k
            ),
        )
        return self.merge_results(dense, keyword, weights)

    @staticmethod
    def merge_results(
        dense: list[RetrievalResult],
        keyword: list[RetrievalResult],
        weights: FusionWeights,
    ) -> list[RetrievalResult]:
        """Fuse dense and keyword hits keyed by ``source_id`` (or id).

        Each source contributes its best hit per key once; a key found by both
        retrievers gets the sum of both weighted contributions.

        Args:
            dense: Dense hits, best first.
            keyword: Keyword hits, best first.
            weights: Fusion weights.

        Returns:
            Fused results sorted by final score descending.
        """
        merged: dict[str, RetrievalResult] = {}

        for result in dense:
            key = result.metadata.source_id or str(result.id)
            if key in merged:
                continue
            merged[key] = result.model_copy(
                update={
                    "final_score": result.score * weights.dense,
                    "sources": [RetrievalSource.DENSE],
                }
            )

        keyword_seen: set[str] = set()
        for result in keyword:
            key = result.metadata.source_id or str(result.id)
            if key in keyword_seen:
                continue
            keyword_seen.add(key)
            contribution = result.score * weights.keyword

            existing = merged.get(key)
            if existing is None:
                merged[key] = result.model_copy(
                    update={"final_score": contribution, "sources": [RetrievalSource.BM25]}
                )
            else:
                merged[key] = existing.model_copy(
                    update={
                        "final_score": (existing.final_score or 0.0) + contribution,
                        "bm25_score": result.bm25_score,
                        "sources": [*existing.sources, RetrievalSource.BM25],
                    }
                )

        fused = [r.model_copy(update={"fused_score": r.final_score}) for r in merged.values()]
        fused.sort(key=lambda r: r.effective_score(), reverse=True)
        logger.debug(
            f"Merged {len(dense)} dense and {len(keyword)} keyword hits into {len(fused)}"
        )
        return fused

    async def rerank_results(
        self, analysis: QueryAnalysis, results: list[RetrievalResult]
    ) -> list[RetrievalResult]:
        """Apply the optional relevance and diversity rerankers.

        A failing stage is logged and skipped; its input passes through.
        """
        if self.reranker is not None and self.settings.reranker_enabled:
            candidates = results[: self.settings.reranker_top_k]
            try:
                results = await self.reranker.rerank(analysis.original, candidates)
            except Exception as e:
                logger.warning(f"Relevance reranking failed ({e}), keeping fused order")
                record_degradation("reranker", "rerank_error")
                results = candidates

        if self.diversity is not None and self.settings.mmr_enabled:
            try:
                results = await self.diversity.rerank(
                    analysis.original, results, self.settings.retrieval_final_top_k * 2
                )
            except Exception as e:
                logger.warning(f"Diversity reranking failed ({e}), keeping relevance order")
                record_degradation("diversity", "rerank_error")

        return results

    def apply_metadata_filters(
        self,
        results: list[RetrievalResult],
        analysis: QueryAnalysis,
        top_k: int | None = None,
    ) -> list[RetrievalResult]:
        """Gate by metadata, decay stale volatile content, apply the score floor.

        Args:
            results: Reranked candidates.
            analysis: Prepared query.
            top_k: Results to keep; ``retrieval_final_top_k`` if None.

        Returns:
            Surviving results sorted by score descending.
        """
        integration_query = bool({i.value for i in analysis.intent_types} & INTEGRATION_INTENTS)
        technical_query = analysis.has_intent(IntentType.TECHNICAL_SPECS)
        max_age = timedelta(days=self.settings.volatile_max_age_days)
        now = self.clock()

        kept: list[RetrievalResult] = []
        for result in results:
            metadata = result.metadata

            if integration_query and metadata.type == "integration":
                if not metadata.verified or metadata.status not in LIVE_INTEGRATION_STATUSES:
                    logger.debug(f"Filtered unverified integration: {result.id}")
                    continue

            if technical_query and metadata.exclude_from_tech:
                logger.debug(f"Filtered non-technical content: {result.id}")
                continue

            score = result.effective_score()
            if metadata.is_volatile and metadata.as_of is not None:
                as_of = metadata.as_of
                if as_of.tzinfo is None:
                    as_of = as_of.replace(tzinfo=UTC)
                if now - as_of > max_age:
                    score *= self.settings.volatile_decay
                    result = result.model_copy(update={"final_score": score})
                    logger.debug(f"Down-weighted stale volatile chunk: {result.id}")

            if score < self.settings.retrieval_min_score:
                continue
            kept.append(result)

        kept.sort(key=lambda r: r.effective_score(), reverse=True)
        limit = top_k if top_k is not None else self.settings.retrieval_final_top_k
        return kept[:limit]

    def aggregate(
        self, results: list[RetrievalResult], analysis: QueryAnalysis | None = None
    ) -> list[ParentBlock]:
        if self.aggregator is None or not results:
            return []
        return self.aggregator.aggregate_to_parents(
            results, top_k=self.settings.aggregator_top_k, analysis=analysis
        )
