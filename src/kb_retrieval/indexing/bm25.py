"""BM25 keyword index over chunk ``search_text``.

The index is rebuilt wholesale on every ``build_index`` call. Each build produces
an immutable snapshot that replaces the previous one in a single assignment, so
a search running concurrently with a rebuild always scores against exactly one
index generation.
"""

import logging
import math
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field

from kb_retrieval.indexing.tokenizer import tokenize
from kb_retrieval.types import Chunk, ChunkId, RetrievalResult, RetrievalSource
from kb_retrieval.utils.metrics import record_index_build, record_skipped_chunk

logger = logging.getLogger(__name__)


class IndexNotBuiltError(RuntimeError):
    """Raised when the keyword index is searched before it is built."""


@dataclass(frozen=True)
class IndexStats:
    """Corpus-level statistics of one index generation."""

    total_documents: int
    unique_terms: int
    total_tokens: int
    avg_doc_length: float


@dataclass(frozen=True)
class TermExplanation:
    """Match diagnostics for one query token."""

    token: str
    document_frequency: int
    idf: float | None
    coverage: float


@dataclass(frozen=True)
class _IndexSnapshot:
    term_freqs: dict[ChunkId, dict[str, int]]
    doc_lengths: dict[ChunkId, int]
    doc_freq: dict[str, int]
    chunks: dict[ChunkId, Chunk]
    total_tokens: int
    avg_doc_length: float
    skipped: list[ChunkId] = field(default_factory=list)

    @property
    def total_documents(self) -> int:
        return len(self.doc_lengths)


class KeywordIndex:
    """BM25 index with CJK-aware tokenization.

    Attributes:
        k1: Term-frequency saturation parameter.
        b: Document-length normalization parameter.
        min_score: Hits scoring below this are dropped.
        max_results: Default number of results per search.
    """

    def __init__(
        self,
        k1: float = 1.2,
        b: float = 0.75,
        min_score: float = 0.1,
        max_results: int = 50,
    ) -> None:
        self.k1 = k1
        self.b = b
        self.min_score = min_score
        self.max_results = max_results
        self._snapshot: _IndexSnapshot | None = None
        self._build_lock = threading.Lock()

    @property
    def is_built(self) -> bool:
        return self._snapshot is not None

    def build_index(self, chunks: Iterable[Chunk]) -> IndexStats:
        """Build a fresh index from a chunk corpus.

        Chunks without ``search_text`` (or whose text yields no tokens) are
        skipped and logged.

        Args:
            chunks: Corpus to index.

        Returns:
            Statistics of the new index generation.
        """
        with self._build_lock:
            term_freqs: dict[ChunkId, dict[str, int]] = {}
            doc_lengths: dict[ChunkId, int] = {}
            doc_freq: dict[str, int] = {}
            indexed: dict[ChunkId, Chunk] = {}
            skipped: list[ChunkId] = []
            total_tokens = 0

            for chunk in chunks:
                tokens = tokenize(chunk.search_text)
                if not tokens:
                    reason = "no_search_text" if not chunk.search_text else "no_tokens"
                    logger.debug(f"Skipping chunk {chunk.id}: {reason}")
                    record_skipped_chunk("bm25", reason)
                    skipped.append(chunk.id)
                    continue

                freqs: dict[str, int] = {}
                for token in tokens:
                    freqs[token] = freqs.get(token, 0) + 1
                for term in freqs:
                    doc_freq[term] = doc_freq.get(term, 0) + 1

                term_freqs[chunk.id] = freqs
                doc_lengths[chunk.id] = len(tokens)
                indexed[chunk.id] = chunk
                total_tokens += len(tokens)

            total_documents = len(doc_lengths)
            snapshot = _IndexSnapshot(
                term_freqs=term_freqs,
                doc_lengths=doc_lengths,
                doc_freq=doc_freq,
                chunks=indexed,
                total_tokens=total_tokens,
                avg_doc_length=total_tokens / total_documents if total_documents else 0.0,
                skipped=skipped,
            )
            self._snapshot = snapshot

        if skipped:
            logger.warning(f"BM25 index skipped {len(skipped)} chunks without usable search_text")
        stats = self._stats_for(snapshot)
        logger.info(
            f"BM25 index built: {stats.total_documents} documents, "
            f"{stats.unique_terms} terms, avg length {stats.avg_doc_length:.2f}"
        )
        record_index_build("bm25", stats.total_documents)
        return stats

    def idf(self, term: str) -> float | None:
        """Inverse document frequency of a term, or None if unseen."""
        snapshot = self._require_snapshot()
        df = snapshot.doc_freq.get(term, 0)
        if df == 0:
            return None
        return self._idf(snapshot.total_documents, df)

    @staticmethod
    def _idf(total_documents: int, df: int) -> float:
        return math.log((total_documents - df + 0.5) / (df + 0.5))

    def search(self, query: str, k: int | None = None) -> list[RetrievalResult]:
        """Score the corpus against a query with BM25.

        Args:
            query: Query text.
            k: Maximum results; defaults to ``max_results``.

        Returns:
            Hits at or above ``min_score``, sorted by score descending.

        Raises:
            IndexNotBuiltError: If called before ``build_index``.
        """
        snapshot = self._require_snapshot()
        limit = k if k is not None else self.max_results

        query_tokens = tokenize(query)
        if not query_tokens:
            logger.debug(f"BM25 search: no usable tokens in query {query!r}")
            return []

        n = snapshot.total_documents
        idfs = {
            token: self._idf(n, snapshot.doc_freq[token])
            for token in query_tokens
            if token in snapshot.doc_freq
        }
        if not idfs:
            return []

        scored: list[tuple[float, ChunkId]] = []
        for doc_id, freqs in snapshot.term_freqs.items():
            relative_length = snapshot.doc_lengths[doc_id] / snapshot.avg_doc_length
            length_norm = 1 - self.b + self.b * relative_length
            score = 0.0
            matched = False
            for token, idf in idfs.items():
                tf = freqs.get(token, 0)
                if tf == 0:
                    continue
                matched = True
                score += idf * (tf * (self.k1 + 1)) / (tf + self.k1 * length_norm)
            if matched and score >= self.min_score:
                scored.append((score, doc_id))

        scored.sort(key=lambda item: item[0], reverse=True)

        results = []
        for score, doc_id in scored[:limit]:
            results.append(
                RetrievalResult.from_chunk(
                    snapshot.chunks[doc_id],
                    score=score,
                    bm25_score=score,
                    sources=[RetrievalSource.BM25],
                )
            )

        logger.debug(f"BM25 search for {query!r}: {len(scored)} hits, returning {len(results)}")
        return results

    def explain(self, query: str) -> list[TermExplanation]:
        """Per-token document frequency and idf for diagnosing lexical misses."""
        snapshot = self._require_snapshot()
        n = snapshot.total_documents
        explanations = []
        for token in tokenize(query):
            df = snapshot.doc_freq.get(token, 0)
            explanations.append(
                TermExplanation(
                    token=token,
                    document_frequency=df,
                    idf=self._idf(n, df) if df else None,
                    coverage=df / n if n else 0.0,
                )
            )
        return explanations

    def stats(self) -> IndexStats:
        return self._stats_for(self._require_snapshot())

    @staticmethod
    def _stats_for(snapshot: _IndexSnapshot) -> IndexStats:
        return IndexStats(
            total_documents=snapshot.total_documents,
            unique_terms=len(snapshot.doc_freq),
            total_tokens=snapshot.total_tokens,
            avg_doc_length=snapshot.avg_doc_length,
        )

    def _require_snapshot(self) -> _IndexSnapshot:
        snapshot = self._snapshot
        if snapshot is None:
            raise IndexNotBuiltError("BM25 index not built. Call build_index() first.")
        return snapshot
