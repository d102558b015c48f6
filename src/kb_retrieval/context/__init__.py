"""Context building: deduplication, token budgeting and formatting."""

from kb_retrieval.context.builder import (
    ContextBuilder,
    ConversationContext,
    ConversationContextProvider,
    TokenBudgets,
)
from kb_retrieval.context.clustering import ClusteringService, CosineClusteringService
from kb_retrieval.context.dedup import SourceDeduplicator, resolve_source_id

__all__ = [
    "ClusteringService",
    "ContextBuilder",
    "ConversationContext",
    "ConversationContextProvider",
    "CosineClusteringService",
    "SourceDeduplicator",
    "TokenBudgets",
    "resolve_source_id",
]
