"""Retrieval engine handle.

``RetrievalEngine`` owns one instance of every pipeline component and is the
object callers hold on to; there is no module-level engine. Use
``create_engine`` to build one from settings with logging configured.
"""

import asyncio
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from kb_retrieval.aggregation.parent_child import ParentChildAggregator
from kb_retrieval.config import Settings, get_settings
from kb_retrieval.context.builder import (
    ContextBuilder,
    ConversationContext,
    ConversationContextProvider,
    TokenBudgets,
)
from kb_retrieval.context.clustering import ClusteringService
from kb_retrieval.context.dedup import SourceDeduplicator
from kb_retrieval.embedders import Embedder
from kb_retrieval.indexing.bm25 import IndexStats, KeywordIndex
from kb_retrieval.indexing.vector_store import VectorStore
from kb_retrieval.rerankers.base import PassageScorer
from kb_retrieval.rerankers.diversity import DiversityReranker, MMRReranker
from kb_retrieval.rerankers.relevance import RelevanceReranker
from kb_retrieval.retrieval.classifier import QueryAnalyzer
from kb_retrieval.retrieval.glossary import Glossary
from kb_retrieval.retrieval.retriever import RetrievalResponse, SemanticRetriever, utc_now
from kb_retrieval.types import BuiltContext, Chunk, ContextFormat
from kb_retrieval.utils.logging import bind_context, clear_context, configure_logging, get_logger

logger = get_logger(__name__)


@dataclass
class IndexReport:
    """Outcome of indexing a corpus."""

    vector_count: int
    keyword: IndexStats
    embedded: int


class RetrievalEngine:
    """Hybrid retrieval engine.

    Attributes:
        settings: Engine settings.
        embedder: Embedding function for chunks and queries.
        vector_store: Dense index.
        keyword_index: BM25 index.
        retriever: Retrieval pipeline.
        context_builder: Context assembly stage.
    """

    def __init__(
        self,
        settings: Settings,
        embedder: Embedder,
        glossary: Glossary | None = None,
        clustering: ClusteringService | None = None,
        diversity: DiversityReranker | None = None,
        conversation_provider: ConversationContextProvider | None = None,
        model_scorer: PassageScorer | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize engine.

        Args:
            settings: Engine settings.
            embedder: Embedding function for chunks and queries.
            glossary: Query expansion glossary; loaded from ``glossary_path`` or
                the built-in one if None.
            clustering: Optional clustering service for deduplication.
            diversity: Diversity reranker; an MMR reranker when ``mmr_enabled``.
            conversation_provider: Optional conversation history source.
            model_scorer: Preloaded relevance model, bypassing lazy loading.
            clock: Current time, for staleness checks.
        """
        self.settings = settings
        self.embedder = embedder

        if glossary is None:
            glossary = (
                Glossary.from_file(settings.glossary_path)
                if settings.glossary_path
                else Glossary.default()
            )

        self.vector_store = VectorStore(dimension=settings.embedding_dimension)
        self.keyword_index = KeywordIndex(
            k1=settings.bm25_k1,
            b=settings.bm25_b,
            min_score=settings.bm25_min_score,
            max_results=settings.bm25_max_results,
        )

        reranker = None
        if settings.reranker_enabled:
            reranker = RelevanceReranker(
                model_name=settings.reranker_model,
                device=settings.reranker_device,
                batch_size=settings.reranker_batch_size,
                max_length=settings.reranker_max_length,
                load_timeout_ms=settings.reranker_load_timeout_ms,
                batch_timeout_ms=settings.reranker_timeout_ms,
                model_scorer=model_scorer,
            )

        if diversity is None and settings.mmr_enabled:
            diversity = MMRReranker(lambda_=settings.mmr_lambda)

        self.retriever = SemanticRetriever(
            vector_store=self.vector_store,
            keyword_index=self.keyword_index,
            embedder=embedder,
            settings=settings,
            analyzer=QueryAnalyzer(
                glossary=glossary,
                min_dense_weight=settings.fusion_min_dense_weight,
                max_keyword_weight=settings.fusion_max_keyword_weight,
                base_keyword_weight=1.0 - settings.fusion_base_dense_weight,
            ),
            reranker=reranker,
            diversity=diversity,
            aggregator=ParentChildAggregator(
                max_parent_tokens=settings.parent_max_tokens,
                min_parent_tokens=settings.parent_min_tokens,
                multi_hit_bonus=settings.multi_hit_bonus,
                max_multi_hit_bonus=settings.max_multi_hit_bonus,
                score_aggregation=settings.score_aggregation,
                meta_card_bonus=settings.meta_card_bonus,
                meta_card_intent_bonus=settings.meta_card_intent_bonus,
                max_meta_card_bonus=settings.max_meta_card_bonus,
            ),
            clock=clock,
        )

        self.context_builder = ContextBuilder(
            max_tokens=settings.context_max_tokens,
            max_chunks=settings.context_max_chunks,
            style=ContextFormat(settings.context_format),
            preserve_citations=settings.preserve_citations,
            budgets=TokenBudgets(
                system_prompt=settings.system_prompt_tokens,
                query=settings.query_tokens,
                knowledge=settings.knowledge_tokens,
                conversation=settings.conversation_tokens,
                buffer=settings.buffer_tokens,
                min_knowledge=settings.min_knowledge_tokens,
            ),
            min_truncated_tokens=settings.min_truncated_tokens,
            deduplicator=SourceDeduplicator(
                clustering=clustering,
                threshold=settings.dedup_cluster_threshold,
                pre_cap=settings.dedup_pre_cap,
                post_cap=settings.dedup_post_cap,
                complete_tokens=settings.complete_chunk_tokens,
            ),
            conversation_provider=conversation_provider,
        )

    async def index_chunks(self, chunks: Iterable[Chunk | dict[str, Any]]) -> IndexReport:
        """Replace both indexes with a new corpus.

        Chunks without an embedding are embedded first. The vector store is
        replaced wholesale and the keyword index rebuilt from ``search_text``.

        Args:
            chunks: Corpus as chunks or plain records.

        Returns:
            IndexReport with the sizes of both indexes.
        """
        corpus = [c if isinstance(c, Chunk) else Chunk.model_validate(c) for c in chunks]

        missing = [i for i, c in enumerate(corpus) if c.embedding is None]
        if missing:
            vectors = await self.embedder.embed_batch(
                [corpus[i].text for i in missing], is_query=False
            )
            for i, vector in zip(missing, vectors, strict=True):
                corpus[i] = corpus[i].model_copy(update={"embedding": list(vector)})
            logger.info(f"Embedded {len(missing)} chunks")

        vector_count = await asyncio.to_thread(self.vector_store.load_records, corpus)
        keyword_stats = await asyncio.to_thread(self.keyword_index.build_index, corpus)

        return IndexReport(vector_count=vector_count, keyword=keyword_stats, embedded=len(missing))

    async def load_vectors(self, path: str | Path) -> IndexReport:
        """Rehydrate both indexes from a vector store snapshot."""
        store = await asyncio.to_thread(VectorStore.load, path)
        corpus = store.to_snapshot().chunks
        return await self.index_chunks(corpus)

    async def save_vectors(self, path: str | Path) -> None:
        await asyncio.to_thread(self.vector_store.save, path)

    async def retrieve(self, query: str, top_k: int | None = None) -> RetrievalResponse:
        """Retrieve ranked results and parent blocks for a query."""
        clear_context()
        bind_context(request_id=uuid.uuid4().hex[:12])
        response = await self.retriever.retrieve(query, top_k=top_k)
        logger.info(
            "retrieval_complete",
            results=len(response.results),
            parents=len(response.parents),
            keyword_weight=round(response.weights.keyword, 3),
        )
        return response

    async def build_context(
        self,
        query: str,
        response: RetrievalResponse,
        style: ContextFormat | None = None,
        conversation: ConversationContext | None = None,
    ) -> BuiltContext:
        """Build a prompt context from a retrieval response."""
        return await self.context_builder.build_context(
            query,
            response.context_candidates(),
            analysis=response.analysis,
            style=style,
            conversation=conversation,
        )

    async def answer_context(
        self,
        query: str,
        style: ContextFormat | None = None,
        conversation: ConversationContext | None = None,
    ) -> BuiltContext:
        """Retrieve for a query and build its context in one call."""
        response = await self.retrieve(query)
        return await self.build_context(query, response, style=style, conversation=conversation)


def create_engine(
    embedder: Embedder,
    settings: Settings | None = None,
    **kwargs: Any,
) -> RetrievalEngine:
    """Configure logging and build an engine from settings.

    Args:
        embedder: Embedding function for chunks and queries.
        settings: Engine settings; loaded from the environment if None.
        **kwargs: Optional collaborators passed to ``RetrievalEngine``.

    Returns:
        A ready engine with empty indexes.
    """
    settings = settings or get_settings()
    configure_logging(level=settings.log_level, json_format=settings.log_json)
    engine = RetrievalEngine(settings, embedder, **kwargs)
    logger.info(
        f"Retrieval engine created (dimension={settings.embedding_dimension}, "
        f"reranker={'on' if settings.reranker_enabled else 'off'}, "
        f"mmr={'on' if settings.mmr_enabled else 'off'})"
    )
    return engine
