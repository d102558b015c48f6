"""Tests for the semantic retriever pipeline."""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from kb_retrieval.aggregation import ParentChildAggregator
from kb_retrieval.config import Settings
from kb_retrieval.embedders import Embedder
from kb_retrieval.indexing.bm25 import KeywordIndex
from kb_retrieval.indexing.vector_store import VectorStore
from kb_retrieval.retrieval import FusionWeights, QueryAnalyzer, SemanticRetriever
from kb_retrieval.types import Chunk, RetrievalResult, RetrievalSource

MakeResult = Callable[..., RetrievalResult]

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def vector_store(corpus: list[Chunk]) -> VectorStore:
    """Vector store loaded with the test corpus."""
    store = VectorStore(dimension=64)
    store.add_many(corpus)
    return store


@pytest.fixture
def keyword_index(corpus: list[Chunk]) -> KeywordIndex:
    """Keyword index built over the test corpus."""
    index = KeywordIndex()
    index.build_index(corpus)
    return index


@pytest.fixture
def retriever(
    vector_store: VectorStore,
    keyword_index: KeywordIndex,
    embedder: Embedder,
    settings: Settings,
) -> SemanticRetriever:
    """Retriever without optional stages and with a fixed clock."""
    return SemanticRetriever(
        vector_store=vector_store,
        keyword_index=keyword_index,
        embedder=embedder,
        settings=settings,
        clock=lambda: NOW,
    )


class TestHybridRetrieval:
    """Tests for dense and keyword retrieval."""

    async def test_dense_only_uses_raw_similarity(
        self,
        vector_store: VectorStore,
        embedder: Embedder,
        settings: Settings,
    ) -> None:
        """Test that queries without lexical signals skip the keyword index."""
        keyword_index = MagicMock(spec=KeywordIndex)
        retriever = SemanticRetriever(vector_store, keyword_index, embedder, settings)
        analysis = retriever.prepare_query("tell me about social transfers")
        weights = retriever.analyzer.calculate_dynamic_weights(analysis)

        results = await retriever.perform_hybrid_retrieval(analysis, weights)

        keyword_index.search.assert_not_called()
        assert results
        for result in results:
            assert result.final_score == result.score == result.dense_score

    async def test_keyword_search_uses_original_query(
        self,
        vector_store: VectorStore,
        keyword_index: KeywordIndex,
        embedder: Embedder,
        settings: Settings,
    ) -> None:
        """Test that dense embeds the expanded query and keyword gets the original."""
        spy = MagicMock(wraps=keyword_index)
        retriever = SemanticRetriever(vector_store, spy, embedder, settings)
        analysis = retriever.prepare_query("nyla ticker")
        weights = retriever.analyzer.calculate_dynamic_weights(analysis)

        await retriever.perform_hybrid_retrieval(analysis, weights)

        spy.search.assert_called_once_with("nyla ticker", settings.retrieval_bm25_top_k)
        assert embedder.calls == [analysis.expanded]
        assert analysis.expanded != analysis.original

    async def test_retrieve_end_to_end(self, retriever: SemanticRetriever) -> None:
        """Test that a ticker query ranks the ticker passage first."""
        response = await retriever.retrieve("What is the ticker for $NYLA?")

        assert response.results[0].id == "nyla-token"
        assert response.weights.keyword >= 0.75
        assert response.parents == []
        assert len(response) == len(response.results)

    async def test_retrieve_with_aggregator(
        self,
        vector_store: VectorStore,
        keyword_index: KeywordIndex,
        embedder: Embedder,
        settings: Settings,
    ) -> None:
        """Test that parents are built and offered as context candidates."""
        retriever = SemanticRetriever(
            vector_store,
            keyword_index,
            embedder,
            settings,
            aggregator=ParentChildAggregator(),
        )
        response = await retriever.retrieve("What is the ticker for $NYLA?")
        candidates = response.context_candidates()

        assert response.parents[0].parent_id == "nyla-token"
        assert candidates[0].id == "parent_nyla-token"


class TestMergeResults:
    """Tests for score fusion."""

    def test_contributions_are_additive(self, make_result: MakeResult) -> None:
        """Test that a key found by both retrievers sums both contributions."""
        weights = FusionWeights(dense=0.4, keyword=0.6, reason="test")
        dense = [
            make_result("a-1", 0.5, source_id="doc"),
            make_result("a-2", 0.4, source_id="doc"),
            make_result("b", 0.3),
        ]
        keyword = [
            make_result("a-1", 2.0, source_id="doc").model_copy(update={"bm25_score": 2.0}),
            make_result("c", 1.0),
        ]
        merged = {r.id: r for r in SemanticRetriever.merge_results(dense, keyword, weights)}

        assert set(merged) == {"a-1", "b", "c"}
        assert merged["a-1"].final_score == pytest.approx(0.5 * 0.4 + 2.0 * 0.6)
        assert merged["a-1"].fused_score == merged["a-1"].final_score
        assert merged["a-1"].bm25_score == 2.0
        assert merged["a-1"].sources == [RetrievalSource.DENSE, RetrievalSource.BM25]
        assert merged["b"].final_score == pytest.approx(0.3 * 0.4)
        assert merged["c"].final_score == pytest.approx(1.0 * 0.6)
        assert merged["c"].sources == [RetrievalSource.BM25]

    def test_sorted_by_fused_score(self, make_result: MakeResult) -> None:
        """Test descending order after fusion."""
        weights = FusionWeights(dense=0.5, keyword=0.5, reason="test")
        merged = SemanticRetriever.merge_results(
            [make_result("a", 0.2), make_result("b", 0.9)],
            [make_result("a", 3.0)],
            weights,
        )
        assert [r.id for r in merged] == ["a", "b"]


class TestReranking:
    """Tests for optional reranking stages."""

    async def test_reranker_sees_only_top_candidates(
        self,
        retriever: SemanticRetriever,
        settings: Settings,
        make_result: MakeResult,
    ) -> None:
        """Test that only reranker_top_k candidates reach the reranker."""
        settings.reranker_top_k = 2
        reranker = MagicMock()
        reranker.rerank = AsyncMock(side_effect=lambda query, results: list(reversed(results)))
        retriever.reranker = reranker

        candidates = [make_result(f"r{i}", 1.0 - i * 0.1) for i in range(4)]
        analysis = retriever.prepare_query("query")
        results = await retriever.rerank_results(analysis, candidates)

        assert [r.id for r in results] == ["r1", "r0"]

    async def test_reranker_failure_keeps_fused_order(
        self, retriever: SemanticRetriever, make_result: MakeResult
    ) -> None:
        """Test that a failing reranker degrades to the fused candidates."""
        reranker = MagicMock()
        reranker.rerank = AsyncMock(side_effect=RuntimeError("model crashed"))
        retriever.reranker = reranker

        candidates = [make_result("a", 0.9), make_result("b", 0.8)]
        results = await retriever.rerank_results(retriever.prepare_query("q"), candidates)

        assert [r.id for r in results] == ["a", "b"]

    async def test_disabled_reranker_is_skipped(
        self, retriever: SemanticRetriever, settings: Settings, make_result: MakeResult
    ) -> None:
        """Test that reranker_enabled=False bypasses the stage."""
        settings.reranker_enabled = False
        reranker = MagicMock()
        reranker.rerank = AsyncMock()
        retriever.reranker = reranker

        await retriever.rerank_results(retriever.prepare_query("q"), [make_result("a", 0.9)])
        reranker.rerank.assert_not_called()

    async def test_diversity_failure_passes_through(
        self, retriever: SemanticRetriever, settings: Settings, make_result: MakeResult
    ) -> None:
        """Test that a failing diversity stage leaves results unchanged."""
        settings.mmr_enabled = True
        diversity = MagicMock()
        diversity.rerank = AsyncMock(side_effect=ValueError("bad embeddings"))
        retriever.diversity = diversity

        candidates = [make_result("a", 0.9), make_result("b", 0.8)]
        results = await retriever.rerank_results(retriever.prepare_query("q"), candidates)

        assert [r.id for r in results] == ["a", "b"]
        diversity.rerank.assert_awaited_once()
        assert diversity.rerank.await_args.args[2] == settings.retrieval_final_top_k * 2


class TestMetadataFilters:
    """Tests for metadata gates, staleness and the score floor."""

    def test_integration_gate(self, retriever: SemanticRetriever, make_result: MakeResult) -> None:
        """Test that integration queries keep only verified beta or live integrations."""
        results = [
            make_result("unverified", 0.9, type="integration", status="live"),
            make_result("live", 0.8, type="integration", verified=True, status="live"),
            make_result("beta", 0.75, type="integration", verified=True, status="beta"),
            make_result("retired", 0.7, type="integration", verified=True, status="deprecated"),
            make_result("facts", 0.6, type="facts"),
        ]
        analysis = retriever.prepare_query("official telegram link")
        kept = retriever.apply_metadata_filters(results, analysis)

        assert [r.id for r in kept] == ["live", "beta", "facts"]

    def test_integration_gate_only_for_integration_intents(
        self, retriever: SemanticRetriever, make_result: MakeResult
    ) -> None:
        """Test that other queries keep unverified integrations."""
        results = [make_result("unverified", 0.9, type="integration")]
        kept = retriever.apply_metadata_filters(results, retriever.prepare_query("hello"))
        assert [r.id for r in kept] == ["unverified"]

    def test_technical_exclusion(
        self, retriever: SemanticRetriever, make_result: MakeResult
    ) -> None:
        """Test that technical queries drop passages excluded from technical answers."""
        results = [
            make_result("marketing", 0.9, exclude_from_tech=True),
            make_result("spec", 0.8),
        ]
        technical = retriever.prepare_query("how does consensus work")
        plain = retriever.prepare_query("tell me a story")

        assert [r.id for r in retriever.apply_metadata_filters(results, technical)] == ["spec"]
        assert len(retriever.apply_metadata_filters(results, plain)) == 2

    def test_stale_volatile_content_is_decayed(
        self, retriever: SemanticRetriever, make_result: MakeResult
    ) -> None:
        """Test the staleness multiplier and the score floor after it."""
        stale = NOW - timedelta(days=10)
        results = [
            make_result("stale", 0.8, stability="volatile", as_of=stale),
            make_result("stale-naive", 0.7, volatile=True, as_of=stale.replace(tzinfo=None)),
            make_result("fresh", 0.6, volatile=True, as_of=NOW - timedelta(days=2)),
            make_result("stale-weak", 0.5, volatile=True, as_of=stale),
            make_result("stable-old", 0.55, as_of=stale),
        ]
        analysis = retriever.prepare_query("q")
        kept = {r.id: r for r in retriever.apply_metadata_filters(results, analysis)}

        assert kept["stale"].final_score == pytest.approx(0.4)
        assert kept["stale-naive"].final_score == pytest.approx(0.35)
        assert kept["fresh"].final_score == pytest.approx(0.6)
        assert kept["stable-old"].final_score == pytest.approx(0.55)
        assert "stale-weak" not in kept

    def test_min_score_sort_and_top_k(
        self, retriever: SemanticRetriever, make_result: MakeResult
    ) -> None:
        """Test the score floor, ordering and result limit."""
        results = [make_result(f"r{i}", s) for i, s in enumerate([0.35, 0.9, 0.2, 0.6])]
        analysis = retriever.prepare_query("q")

        kept = retriever.apply_metadata_filters(results, analysis)
        assert [r.id for r in kept] == ["r1", "r3", "r0"]
        assert [r.id for r in retriever.apply_metadata_filters(results, analysis, top_k=1)] == [
            "r1"
        ]

    def test_custom_analyzer(
        self,
        vector_store: VectorStore,
        keyword_index: KeywordIndex,
        embedder: Embedder,
        settings: Settings,
    ) -> None:
        """Test that weight bounds come from settings when no analyzer is given."""
        settings.fusion_min_dense_weight = 0.5
        retriever = SemanticRetriever(vector_store, keyword_index, embedder, settings)

        assert isinstance(retriever.analyzer, QueryAnalyzer)
        assert retriever.analyzer.min_dense_weight == 0.5
        weights = retriever.analyzer.calculate_dynamic_weights(
            retriever.prepare_query("contract address")
        )
        assert weights.dense == pytest.approx(0.5)
