"""Client-embedded hybrid retrieval engine for knowledge-base RAG."""

from kb_retrieval.config import Settings, get_settings
from kb_retrieval.embedders import Embedder, FunctionEmbedder
from kb_retrieval.engine import IndexReport, RetrievalEngine, create_engine
from kb_retrieval.retrieval.retriever import RetrievalResponse
from kb_retrieval.types import (
    BuiltContext,
    Chunk,
    ChunkId,
    ChunkMetadata,
    ContextFormat,
    MetaCard,
    ParentBlock,
    RetrievalResult,
)

__version__ = "0.1.0"

__all__ = [
    "BuiltContext",
    "Chunk",
    "ChunkId",
    "ChunkMetadata",
    "ContextFormat",
    "Embedder",
    "FunctionEmbedder",
    "IndexReport",
    "MetaCard",
    "ParentBlock",
    "RetrievalEngine",
    "RetrievalResponse",
    "RetrievalResult",
    "Settings",
    "create_engine",
    "get_settings",
]
