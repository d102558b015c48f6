"""In-memory vector store with cosine similarity search.

Embeddings are scanned linearly with numpy; at knowledge-base scale (a few
thousand chunks) a brute-force matrix product is fast enough and exact.
"""

import logging
import math
import threading
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any

import numpy as np
from pydantic import BaseModel, Field, ValidationError

from kb_retrieval.indexing.filters import MetadataFilter
from kb_retrieval.types import Chunk, ChunkId, RetrievalResult, RetrievalSource
from kb_retrieval.utils.metrics import record_index_build, record_skipped_chunk

logger = logging.getLogger(__name__)

BYTES_PER_FLOAT = 4
METADATA_BYTES_PER_CHUNK = 1024


class DimensionMismatchError(ValueError):
    """Raised when an embedding does not match the store's dimension."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Invalid embedding: expected {expected} dimensions, got {actual}")
        self.expected = expected
        self.actual = actual


class VectorStoreSnapshot(BaseModel):
    """Serialized form of a vector store."""

    dimension: int
    chunks: list[Chunk] = Field(default_factory=list)


class VectorStoreStats(BaseModel):
    chunk_count: int
    dimension: int
    memory_bytes: int


class VectorStore:
    """Stores chunk embeddings and answers cosine similarity queries.

    Writes (``add``, ``load_records``, ``clear``) are serialized by a lock.
    Searches read the current ``(chunks, matrix)`` pair, which is replaced as a
    whole, so a search never sees a half-applied write.

    Attributes:
        dimension: Length every stored embedding must have.
    """

    def __init__(self, dimension: int = 768) -> None:
        self.dimension = dimension
        self._chunks: dict[ChunkId, Chunk] = {}
        self._matrix: tuple[list[Chunk], np.ndarray] | None = None
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._chunks)

    def __contains__(self, chunk_id: object) -> bool:
        return chunk_id in self._chunks

    def get(self, chunk_id: str) -> Chunk | None:
        return self._chunks.get(ChunkId.of(chunk_id))

    def add(self, chunk: Chunk) -> None:
        """Add or replace a chunk.

        Raises:
            ValueError: If the chunk has no embedding.
            DimensionMismatchError: If the embedding length differs from ``dimension``.
        """
        if chunk.embedding is None:
            raise ValueError(f"Chunk {chunk.id} has no embedding")
        self._check_dimension(chunk.embedding)
        with self._lock:
            self._chunks[chunk.id] = chunk
            self._matrix = None

    def add_many(self, chunks: Iterable[Chunk]) -> int:
        count = 0
        for chunk in chunks:
            self.add(chunk)
            count += 1
        return count

    def clear(self) -> None:
        with self._lock:
            self._chunks = {}
            self._matrix = None

    def search(
        self,
        query_embedding: Sequence[float],
        k: int = 10,
        metadata_filter: MetadataFilter | None = None,
    ) -> list[RetrievalResult]:
        """Rank stored chunks by cosine similarity to a query embedding.

        The filter is applied before truncating to ``k``. No score threshold is
        applied here.

        Args:
            query_embedding: Query vector.
            k: Maximum number of results.
            metadata_filter: Optional metadata predicate.

        Returns:
            Results sorted by similarity descending.

        Raises:
            DimensionMismatchError: If the query vector has the wrong length.
        """
        self._check_dimension(query_embedding)
        indexed, matrix = self._current_matrix()
        if not indexed or k <= 0:
            return []

        query = np.asarray(query_embedding, dtype=np.float64)
        query_norm = np.linalg.norm(query)
        if query_norm == 0:
            return []

        row_norms = np.linalg.norm(matrix, axis=1)
        with np.errstate(divide="ignore", invalid="ignore"):
            similarities = (matrix @ query) / (row_norms * query_norm)
        similarities = np.nan_to_num(similarities, nan=0.0, posinf=0.0, neginf=0.0)

        results: list[RetrievalResult] = []
        for idx in np.argsort(-similarities, kind="stable"):
            chunk = indexed[idx]
            if metadata_filter is not None and not metadata_filter.matches(chunk.metadata):
                continue
            score = float(similarities[idx])
            results.append(
                RetrievalResult.from_chunk(
                    chunk,
                    score=score,
                    dense_score=score,
                    sources=[RetrievalSource.DENSE],
                )
            )
            if len(results) >= k:
                break

        return results

    def load_records(
        self,
        chunks: Iterable[dict[str, Any] | Chunk],
        embeddings: Iterable[dict[str, Any]] | None = None,
    ) -> int:
        """Replace the store contents from prebuilt data.

        Two layouts are accepted: chunks carrying their own ``embedding``, or
        chunks plus a separate list of ``{id, embedding, metadata?}`` records.
        Entries without a usable embedding are skipped. If the loaded vectors
        have a different dimension than configured, the loaded dimension is
        adopted.

        Args:
            chunks: Chunk records.
            embeddings: Optional separate embedding records.

        Returns:
            Number of chunks loaded.

        Raises:
            ValueError: If no valid chunk with an embedding was found.
        """
        loaded: dict[ChunkId, Chunk] = {}
        skipped = 0
        dimension: int | None = None

        for record in self._merge_records(chunks, embeddings):
            chunk = self._parse_record(record)
            if chunk is None or chunk.embedding is None:
                skipped += 1
                record_skipped_chunk("vector", "invalid_embedding")
                continue
            if dimension is None:
                dimension = len(chunk.embedding)
            elif len(chunk.embedding) != dimension:
                logger.warning(
                    f"Skipping chunk {chunk.id}: dimension {len(chunk.embedding)} "
                    f"differs from {dimension}"
                )
                skipped += 1
                record_skipped_chunk("vector", "dimension_mismatch")
                continue
            loaded[chunk.id] = chunk

        if not loaded or dimension is None:
            raise ValueError("No valid chunks with embeddings found in data")

        with self._lock:
            if dimension != self.dimension:
                logger.info(f"Updating vector dimension from {self.dimension} to {dimension}")
                self.dimension = dimension
            self._chunks = loaded
            self._matrix = None

        logger.info(f"Loaded {len(loaded)} chunks into vector store ({skipped} skipped)")
        record_index_build("vector", len(loaded))
        return len(loaded)

    @staticmethod
    def _merge_records(
        chunks: Iterable[dict[str, Any] | Chunk],
        embeddings: Iterable[dict[str, Any]] | None,
    ) -> Iterable[dict[str, Any] | Chunk]:
        if embeddings is None:
            yield from chunks
            return

        by_id: dict[str, dict[str, Any]] = {}
        for chunk in chunks:
            data = chunk.model_dump() if isinstance(chunk, Chunk) else dict(chunk)
            if data.get("id"):
                by_id[str(data["id"])] = data

        for entry in embeddings:
            base = by_id.get(str(entry.get("id")), {})
            yield {
                **base,
                "id": entry.get("id"),
                "text": base.get("text") or "",
                "metadata": entry.get("metadata") or base.get("metadata") or {},
                "embedding": entry.get("embedding"),
            }

    @staticmethod
    def _parse_record(record: dict[str, Any] | Chunk) -> Chunk | None:
        if isinstance(record, Chunk):
            chunk = record
        else:
            try:
                chunk = Chunk.model_validate({"text": "", **record})
            except ValidationError as e:
                logger.warning(f"Skipping invalid chunk record {record.get('id')!r}: {e}")
                return None

        embedding = chunk.embedding
        if not embedding or not all(math.isfinite(v) for v in embedding):
            logger.warning(f"Skipping chunk {chunk.id}: missing or invalid embedding")
            return None
        return chunk

    def to_snapshot(self) -> VectorStoreSnapshot:
        with self._lock:
            return VectorStoreSnapshot(dimension=self.dimension, chunks=list(self._chunks.values()))

    @classmethod
    def from_snapshot(cls, snapshot: VectorStoreSnapshot) -> "VectorStore":
        store = cls(dimension=snapshot.dimension)
        if snapshot.chunks:
            store.load_records(snapshot.chunks)
        return store

    def save(self, path: str | Path) -> None:
        """Persist every chunk and embedding as JSON."""
        Path(path).write_text(self.to_snapshot().model_dump_json(), encoding="utf-8")
        logger.info(f"Saved {len(self)} chunks to {path}")

    @classmethod
    def load(cls, path: str | Path) -> "VectorStore":
        """Rehydrate a store written by ``save``."""
        snapshot = VectorStoreSnapshot.model_validate_json(Path(path).read_text(encoding="utf-8"))
        return cls.from_snapshot(snapshot)

    def stats(self) -> VectorStoreStats:
        count = len(self._chunks)
        return VectorStoreStats(
            chunk_count=count,
            dimension=self.dimension,
            memory_bytes=count * (self.dimension * BYTES_PER_FLOAT + METADATA_BYTES_PER_CHUNK),
        )

    def _check_dimension(self, embedding: Sequence[float]) -> None:
        if len(embedding) != self.dimension:
            raise DimensionMismatchError(self.dimension, len(embedding))

    def _current_matrix(self) -> tuple[list[Chunk], np.ndarray]:
        current = self._matrix
        if current is not None:
            return current
        with self._lock:
            if self._matrix is None:
                indexed = list(self._chunks.values())
                if indexed:
                    matrix = np.array([c.embedding for c in indexed], dtype=np.float64)
                else:
                    matrix = np.zeros((0, self.dimension), dtype=np.float64)
                self._matrix = (indexed, matrix)
            return self._matrix
