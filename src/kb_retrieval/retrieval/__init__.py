"""Query analysis and hybrid retrieval."""

from kb_retrieval.retrieval.classifier import FusionWeights, QueryAnalyzer
from kb_retrieval.retrieval.glossary import Glossary
from kb_retrieval.retrieval.retriever import RetrievalResponse, SemanticRetriever

__all__ = [
    "FusionWeights",
    "Glossary",
    "QueryAnalyzer",
    "RetrievalResponse",
    "SemanticRetriever",
]
