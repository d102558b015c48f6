"""Keyword and vector indexes."""

from kb_retrieval.indexing.bm25 import IndexNotBuiltError, IndexStats, KeywordIndex
from kb_retrieval.indexing.filters import MetadataFilter
from kb_retrieval.indexing.tokenizer import tokenize
from kb_retrieval.indexing.vector_store import (
    DimensionMismatchError,
    VectorStore,
    VectorStoreSnapshot,
)

__all__ = [
    "KeywordIndex",
    "IndexNotBuiltError",
    "IndexStats",
    "MetadataFilter",
    "tokenize",
    "VectorStore",
    "VectorStoreSnapshot",
    "DimensionMismatchError",
]
