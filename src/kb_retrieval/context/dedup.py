"""Cross-source deduplication of context candidates.

Several passages often describe the same fact, either because one document was
cut into overlapping fragments or because the fact appears in several
documents. Deduplication runs in three steps:
1. Pre-cap: at most ``pre_cap`` passages per source document
2. Clustering: one representative per cluster of near-identical passages,
   or a normalized-text hash filter when no clustering service is available
3. Post-cap: at most ``post_cap`` passages per source document
"""

import functools
import hashlib
import logging
import re

from kb_retrieval.context.clustering import ClusteringService
from kb_retrieval.indexing.tokenizer import tokenize
from kb_retrieval.types import ChunkMetadata, QueryAnalysis, RetrievalResult
from kb_retrieval.utils.metrics import record_degradation
from kb_retrieval.utils.tokens import estimate_tokens

logger = logging.getLogger(__name__)

SCORE_EPSILON = 1e-9
UNKNOWN_SOURCE_PREFIX = "unknown::"

# Representative selection weights
SCORE_WEIGHT = 0.35
COMPLETENESS_WEIGHT = 0.25
RICHNESS_WEIGHT = 0.15
QUERY_OVERLAP_WEIGHT = 0.10
META_CARD_WEIGHT = 0.15
INTENT_MATCH_BOOST = 0.1
RICHNESS_SATURATION = 10

_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def resolve_source_id(metadata: ChunkMetadata, chunk_id: str | None = None) -> str:
    """Resolve the document identity used as the deduplication key.

    Resolution order: explicit ``source_id``; a hash of the URL or path;
    ``collection_id:doc_key``; the chunk id; an ``unknown::<domain>`` bucket
    shared by records with no identity at all.
    """
    if metadata.source_id:
        return metadata.source_id

    location = metadata.url or metadata.path
    if location:
        digest = hashlib.sha1(location.encode("utf-8")).hexdigest()[:16]
        return f"loc:{digest}"

    if metadata.collection_id and metadata.doc_key:
        return f"{metadata.collection_id}:{metadata.doc_key}"

    if chunk_id:
        return str(chunk_id)

    return f"{UNKNOWN_SOURCE_PREFIX}{metadata.domain or 'default'}"


def normalize_for_dedup(text: str) -> str:
    """Lowercase, drop punctuation and collapse whitespace."""
    text = _NON_WORD.sub(" ", text.lower())
    return _WHITESPACE.sub(" ", text).strip()


def compare_priority(a: RetrievalResult, b: RetrievalResult, complete_tokens: int = 50) -> int:
    """Order two candidates for capping; negative means ``a`` is preferred.

    Preference order: higher pipeline score; higher MMR score; when both are
    complete (at least ``complete_tokens`` tokens) the shorter text, otherwise
    the longer one; richer metadata.
    """
    score_diff = a.effective_score() - b.effective_score()
    if abs(score_diff) > SCORE_EPSILON:
        return -1 if score_diff > 0 else 1

    mmr_diff = (a.mmr_score or 0.0) - (b.mmr_score or 0.0)
    if abs(mmr_diff) > SCORE_EPSILON:
        return -1 if mmr_diff > 0 else 1

    tokens_a = estimate_tokens(a.text)
    tokens_b = estimate_tokens(b.text)
    if tokens_a != tokens_b:
        both_complete = tokens_a >= complete_tokens and tokens_b >= complete_tokens
        a_first = tokens_a < tokens_b if both_complete else tokens_a > tokens_b
        return -1 if a_first else 1

    richness_diff = a.metadata.richness() - b.metadata.richness()
    if richness_diff:
        return -1 if richness_diff > 0 else 1
    return 0


class SourceDeduplicator:
    """Two-cap source deduplication with optional semantic clustering.

    Attributes:
        clustering: Injected clustering service; None uses hash deduplication.
        threshold: Similarity threshold passed to the clustering service.
        pre_cap: Passages kept per source before clustering.
        post_cap: Passages kept per source in the final set.
        complete_tokens: Token count at which a passage counts as complete.
    """

    def __init__(
        self,
        clustering: ClusteringService | None = None,
        threshold: float = 0.92,
        pre_cap: int = 2,
        post_cap: int = 1,
        complete_tokens: int = 50,
    ) -> None:
        self.clustering = clustering
        self.threshold = threshold
        self.pre_cap = pre_cap
        self.post_cap = post_cap
        self.complete_tokens = complete_tokens
        self._priority_key = functools.cmp_to_key(
            functools.partial(compare_priority, complete_tokens=complete_tokens)
        )

    async def deduplicate(
        self,
        results: list[RetrievalResult],
        query: str = "",
        analysis: QueryAnalysis | None = None,
    ) -> list[RetrievalResult]:
        """Run pre-cap, clustering (or hash filtering) and post-cap.

        Args:
            results: Candidate passages.
            query: Query text, used for representative selection.
            analysis: Prepared query, used for the meta card intent boost.

        Returns:
            Deduplicated passages in priority order.
        """
        if not results:
            return []

        capped = self.cap_per_source(results, self.pre_cap)
        clustered = await self.cluster_dedup(capped, query, analysis)
        final = self.cap_per_source(clustered, self.post_cap)

        logger.debug(
            f"Deduplicated {len(results)} -> {len(capped)} (pre-cap) -> "
            f"{len(clustered)} (clustering) -> {len(final)} (post-cap)"
        )
        return final

    def cap_per_source(self, results: list[RetrievalResult], cap: int) -> list[RetrievalResult]:
        """Keep the ``cap`` best passages per resolved source id."""
        kept: list[RetrievalResult] = []
        counts: dict[str, int] = {}
        for result in self.sort_by_priority(results):
            source_id = resolve_source_id(result.metadata, result.id)
            if counts.get(source_id, 0) >= cap:
                continue
            counts[source_id] = counts.get(source_id, 0) + 1
            kept.append(result)
        return kept

    def sort_by_priority(self, results: list[RetrievalResult]) -> list[RetrievalResult]:
        return sorted(results, key=self._priority_key)

    async def cluster_dedup(
        self,
        results: list[RetrievalResult],
        query: str = "",
        analysis: QueryAnalysis | None = None,
    ) -> list[RetrievalResult]:
        """Collapse each cluster to its representative.

        Falls back to hash deduplication when no clustering service is set or
        when the service fails.
        """
        if len(results) < 2:
            return results
        if self.clustering is None:
            return self.hash_dedup(results)

        try:
            clusters = await self.clustering.cluster(results, self.threshold)
        except Exception as e:
            logger.warning(f"Clustering failed ({e}), using hash deduplication")
            record_degradation("clustering", "cluster_error")
            return self.hash_dedup(results)

        by_id = {str(r.id): r for r in results}
        dropped: set[str] = set()
        for cluster in clusters:
            members = [by_id[i] for i in cluster if i in by_id]
            if len(members) < 2:
                continue
            representative = self.select_representative(members, query, analysis)
            dropped.update(str(m.id) for m in members if m.id != representative.id)

        return [r for r in results if str(r.id) not in dropped]

    def hash_dedup(self, results: list[RetrievalResult]) -> list[RetrievalResult]:
        """Keep the first passage for each normalized text."""
        seen: set[str] = set()
        kept: list[RetrievalResult] = []
        for result in results:
            digest = hashlib.sha1(normalize_for_dedup(result.text).encode("utf-8")).hexdigest()
            if digest in seen:
                continue
            seen.add(digest)
            kept.append(result)
        return kept

    def select_representative(
        self,
        members: list[RetrievalResult],
        query: str = "",
        analysis: QueryAnalysis | None = None,
    ) -> RetrievalResult:
        """Pick the cluster member with the best weighted quality score."""
        query_terms = set(tokenize(query))
        return max(
            members,
            key=lambda m: self.representative_score(m, query_terms, analysis),
        )

    def representative_score(
        self,
        result: RetrievalResult,
        query_terms: set[str],
        analysis: QueryAnalysis | None = None,
    ) -> float:
        completeness = min(estimate_tokens(result.text) / (4 * self.complete_tokens), 1.0)
        richness = min(result.metadata.richness() / RICHNESS_SATURATION, 1.0)

        overlap = 0.0
        if query_terms:
            overlap = len(query_terms & set(tokenize(result.text))) / len(query_terms)

        card = 0.0
        intent_boost = 0.0
        if result.meta_card is not None:
            card = 1.0
            if analysis is not None and any(
                result.meta_card.has_field_for(i) for i in analysis.intent_types
            ):
                intent_boost = INTENT_MATCH_BOOST

        return (
            SCORE_WEIGHT * result.effective_score()
            + COMPLETENESS_WEIGHT * completeness
            + RICHNESS_WEIGHT * richness
            + QUERY_OVERLAP_WEIGHT * overlap
            + META_CARD_WEIGHT * card
            + intent_boost
        )
