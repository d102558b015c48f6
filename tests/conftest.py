"""Pytest configuration and shared fixtures."""

import hashlib
import math
from collections.abc import Callable
from typing import Any

import pytest

from kb_retrieval.config import Settings
from kb_retrieval.indexing.tokenizer import tokenize
from kb_retrieval.types import Chunk, ChunkMetadata, MetaCard, RetrievalResult

DIMENSION = 64


def hash_embedding(text: str, dimension: int = DIMENSION) -> list[float]:
    """Deterministic bag-of-tokens embedding: texts sharing tokens are similar."""
    vector = [0.0] * dimension
    for token in tokenize(text):
        bucket = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % dimension
        vector[bucket] += 1.0
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        vector[0] = 1.0
        return vector
    return [v / norm for v in vector]


class HashEmbedder:
    """Embedder double built on ``hash_embedding``."""

    def __init__(self, dimension: int = DIMENSION) -> None:
        self.dimension = dimension
        self.calls: list[str] = []

    async def embed(self, text: str, is_query: bool = True) -> list[float]:
        self.calls.append(text)
        return hash_embedding(text, self.dimension)

    async def embed_batch(self, texts: list[str], is_query: bool = False) -> list[list[float]]:
        return [await self.embed(text, is_query=is_query) for text in texts]


@pytest.fixture
def settings() -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        embedding_dimension=DIMENSION,
        reranker_model=None,
    )


@pytest.fixture
def embedder() -> HashEmbedder:
    """Create a deterministic embedder."""
    return HashEmbedder()


@pytest.fixture
def corpus() -> list[Chunk]:
    """Small knowledge base with one chunk carrying the $NYLA ticker."""
    texts = {
        "nyla-token": (
            "The $NYLA token powers social transfers on Solana. Ticker symbol is $NYLA.",
            {"source_id": "nyla", "title": "NYLA Token", "source": "nyla.md"},
            MetaCard(ticker_symbol="$NYLA", blockchain="Solana"),
        ),
        "solana-fees": (
            "Solana transaction fees are low and blocks confirm quickly.",
            {"source_id": "solana", "title": "Solana Fees", "source": "solana.md"},
            None,
        ),
        "ethereum-gas": (
            "Ethereum gas fees vary with network demand.",
            {"source_id": "ethereum", "title": "Ethereum Gas", "source": "ethereum.md"},
            None,
        ),
        "algorand-finality": (
            "Algorand offers instant finality for transfers.",
            {"source_id": "algorand", "title": "Algorand", "source": "algorand.md"},
            None,
        ),
        "community": (
            "Join the community on Telegram and Twitter for announcements.",
            {"source_id": "community", "title": "Community", "source": "community.md"},
            None,
        ),
    }
    return [
        Chunk(
            id=chunk_id,
            text=text,
            search_text=text,
            embedding=hash_embedding(text),
            metadata=ChunkMetadata(**metadata),
            meta_card=card,
        )
        for chunk_id, (text, metadata, card) in texts.items()
    ]


@pytest.fixture
def make_result() -> Callable[..., RetrievalResult]:
    """Factory for retrieval results with a final score."""

    def _make(
        chunk_id: str,
        score: float,
        text: str | None = None,
        embedding: list[float] | None = None,
        meta_card: MetaCard | None = None,
        **metadata: Any,
    ) -> RetrievalResult:
        return RetrievalResult(
            id=chunk_id,
            text=text if text is not None else f"Passage {chunk_id}.",
            metadata=ChunkMetadata(**metadata),
            meta_card=meta_card,
            embedding=embedding,
            score=score,
            final_score=score,
        )

    return _make
