"""Prometheus metrics for the retrieval engine.

Tracks:
- Retrieval requests and latency
- Index builds and sizes
- Reranker scoring by method (model or fallback)
- Degraded-mode transitions per component
- Context assembly sizes
"""

import functools
import time
from collections.abc import Awaitable, Callable, Sized
from typing import Any, ParamSpec, TypeVar

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, Info, generate_latest

ENGINE_INFO = Info("kb_retrieval", "Retrieval engine information")
ENGINE_INFO.info(
    {
        "version": "0.1.0",
        "component": "hybrid-retrieval",
    }
)

# ==================== Request Metrics ====================

RETRIEVAL_REQUESTS = Counter(
    "kb_retrieval_requests_total",
    "Total retrieval requests",
    ["status"],
)

RETRIEVAL_LATENCY = Histogram(
    "kb_retrieval_latency_seconds",
    "Retrieval latency in seconds",
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

RETRIEVAL_RESULTS = Histogram(
    "kb_retrieval_results_count",
    "Number of results returned per retrieval",
    buckets=[0, 1, 3, 5, 8, 10, 20, 50],
)

KEYWORD_SEARCHES_SKIPPED = Counter(
    "kb_retrieval_keyword_searches_skipped_total",
    "Queries answered without the keyword index",
)

# ==================== Index Metrics ====================

INDEX_BUILDS = Counter(
    "kb_retrieval_index_builds_total",
    "Total index builds and loads",
    ["index"],
)

INDEXED_CHUNKS = Gauge(
    "kb_retrieval_indexed_chunks",
    "Chunks currently indexed",
    ["index"],
)

SKIPPED_CHUNKS = Counter(
    "kb_retrieval_skipped_chunks_total",
    "Chunks skipped during indexing",
    ["index", "reason"],
)

# ==================== Reranker Metrics ====================

RERANK_SCORED = Counter(
    "kb_retrieval_rerank_scored_total",
    "Passages scored by the relevance reranker",
    ["method"],
)

# ==================== Degradation Metrics ====================

DEGRADATIONS = Counter(
    "kb_retrieval_degradations_total",
    "Degraded-mode transitions (fallbacks taken instead of failing)",
    ["component", "reason"],
)

# ==================== Context Metrics ====================

CONTEXT_CHUNKS = Histogram(
    "kb_retrieval_context_chunks",
    "Chunks included in a built context",
    buckets=[0, 1, 2, 3, 4, 5, 8, 10],
)

CONTEXT_TOKENS = Histogram(
    "kb_retrieval_context_tokens",
    "Estimated tokens in a built context",
    buckets=[0, 100, 200, 400, 600, 800, 1200, 2000],
)


P = ParamSpec("P")
T = TypeVar("T")


def track_retrieval() -> Callable[..., Any]:
    """Decorator to track retrieval metrics.

    Tracks request latency, result counts, and success/failure rates.

    Returns:
        Decorated function.

    Example:
        @track_retrieval()
        async def retrieve(query: str) -> list[RetrievalResult]:
            ...
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            start_time = time.perf_counter()

            try:
                result = await func(*args, **kwargs)
                RETRIEVAL_REQUESTS.labels(status="success").inc()

                if isinstance(result, Sized):
                    RETRIEVAL_RESULTS.observe(len(result))

                return result

            except Exception:
                RETRIEVAL_REQUESTS.labels(status="error").inc()
                raise

            finally:
                RETRIEVAL_LATENCY.observe(time.perf_counter() - start_time)

        return wrapper

    return decorator


# ==================== Helper Functions ====================


def record_degradation(component: str, reason: str) -> None:
    """Record a degraded-mode transition.

    Args:
        component: Component that degraded (reranker, clustering, aggregator, ...).
        reason: Reason for degradation (timeout, error, unavailable).
    """
    DEGRADATIONS.labels(component=component, reason=reason).inc()


def record_index_build(index: str, size: int) -> None:
    """Record an index build or load.

    Args:
        index: Index name (bm25, vector).
        size: Number of chunks in the new index generation.
    """
    INDEX_BUILDS.labels(index=index).inc()
    INDEXED_CHUNKS.labels(index=index).set(size)


def record_skipped_chunk(index: str, reason: str) -> None:
    """Record a chunk skipped during indexing.

    Args:
        index: Index name (bm25, vector).
        reason: Why the chunk was skipped.
    """
    SKIPPED_CHUNKS.labels(index=index, reason=reason).inc()


def record_rerank(method: str, count: int) -> None:
    """Record passages scored by the reranker.

    Args:
        method: Scoring method (model, fallback).
        count: Number of passages scored.
    """
    RERANK_SCORED.labels(method=method).inc(count)


def record_context(chunks: int, tokens: int) -> None:
    """Record the size of a built context.

    Args:
        chunks: Chunks included.
        tokens: Estimated tokens.
    """
    CONTEXT_CHUNKS.observe(chunks)
    CONTEXT_TOKENS.observe(tokens)


# ==================== Metrics Export ====================


def get_metrics() -> bytes:
    """Get Prometheus metrics as bytes.

    Returns:
        Metrics in Prometheus text exposition format.
    """
    return generate_latest()


def get_content_type() -> str:
    """Get content type for a metrics response.

    Returns:
        Content type string for Prometheus metrics.
    """
    return CONTENT_TYPE_LATEST
