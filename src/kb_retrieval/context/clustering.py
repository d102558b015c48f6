"""Semantic clustering of candidate passages.

The context builder uses clustering to collapse near-duplicate passages coming
from different sources. Any object implementing ``ClusteringService`` can be
injected; ``CosineClusteringService`` is the built-in implementation.
"""

import logging
from typing import Protocol, runtime_checkable

import numpy as np

from kb_retrieval.types import RetrievalResult

logger = logging.getLogger(__name__)


@runtime_checkable
class ClusteringService(Protocol):
    """Groups passages whose embeddings are at least ``threshold`` similar.

    Implementations return clusters as lists of result ids. Only clusters with
    two or more members are returned; results left out of every cluster are
    treated as unclustered by the caller.
    """

    async def cluster(
        self, results: list[RetrievalResult], threshold: float
    ) -> list[list[str]]: ...


class CosineClusteringService:
    """Average-linkage agglomerative clustering over cosine similarity.

    Clusters are merged while the average pairwise similarity between them is
    at least the threshold. Results without an embedding, or whose embedding
    dimension differs from the majority, are never clustered.

    Attributes:
        max_cluster_size: Largest cluster that can be formed by a merge.
    """

    def __init__(self, max_cluster_size: int = 50) -> None:
        self.max_cluster_size = max_cluster_size

    async def cluster(self, results: list[RetrievalResult], threshold: float) -> list[list[str]]:
        """Cluster results by embedding similarity.

        Args:
            results: Candidate passages.
            threshold: Minimum average cosine similarity for a merge.

        Returns:
            Clusters of two or more result ids.
        """
        indices = self._clusterable(results)
        if len(indices) < 2:
            return []

        vectors = np.array([results[i].embedding for i in indices], dtype=np.float64)
        norms = np.linalg.norm(vectors, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        normalized = vectors / norms
        similarity = normalized @ normalized.T

        clusters: list[list[int]] = [[i] for i in range(len(indices))]
        while len(clusters) > 1:
            best: tuple[int, int] | None = None
            best_similarity = threshold
            for a in range(len(clusters)):
                for b in range(a + 1, len(clusters)):
                    if len(clusters[a]) + len(clusters[b]) > self.max_cluster_size:
                        continue
                    linkage = float(similarity[np.ix_(clusters[a], clusters[b])].mean())
                    if linkage >= best_similarity:
                        best_similarity = linkage
                        best = (a, b)
            if best is None:
                break
            a, b = best
            clusters[a] = clusters[a] + clusters[b]
            del clusters[b]

        grouped = [
            [str(results[indices[member]].id) for member in cluster]
            for cluster in clusters
            if len(cluster) > 1
        ]
        logger.debug(
            f"Clustered {len(indices)} passages into {len(grouped)} clusters "
            f"(threshold={threshold})"
        )
        return grouped

    @staticmethod
    def _clusterable(results: list[RetrievalResult]) -> list[int]:
        with_embeddings = [i for i, r in enumerate(results) if r.embedding]
        if not with_embeddings:
            return []
        dims: dict[int, int] = {}
        for i in with_embeddings:
            dim = len(results[i].embedding or [])
            dims[dim] = dims.get(dim, 0) + 1
        majority = max(dims, key=lambda d: dims[d])
        return [i for i in with_embeddings if len(results[i].embedding or []) == majority]
