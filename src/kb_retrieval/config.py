"""Configuration management using Pydantic Settings."""

from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Retrieval engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool = Field(default=False, description="Render logs as JSON")

    # Vector store
    embedding_dimension: int = Field(default=768, description="Embedding vector dimension")

    # Keyword index (BM25)
    bm25_k1: float = Field(default=1.2, description="BM25 term-frequency saturation")
    bm25_b: float = Field(default=0.75, description="BM25 document-length normalization")
    bm25_min_score: float = Field(default=0.1, description="Minimum BM25 score to keep a hit")
    bm25_max_results: int = Field(default=50, description="Maximum keyword results per search")

    # Retrieval
    retrieval_top_k: int = Field(default=20, description="Dense candidates per query")
    retrieval_bm25_top_k: int = Field(default=10, description="Keyword candidates per query")
    retrieval_final_top_k: int = Field(default=8, description="Results kept after filtering")
    retrieval_min_score: float = Field(
        default=0.3, description="Absolute score floor applied after reranking"
    )

    # Fusion
    fusion_base_dense_weight: float = Field(default=0.7, description="Default dense weight")
    fusion_min_dense_weight: float = Field(
        default=0.2, description="Floor on the dense weight after intent adjustment"
    )
    fusion_max_keyword_weight: float = Field(
        default=0.8, description="Ceiling on the keyword weight after signal boosts"
    )

    # Staleness
    volatile_max_age_days: int = Field(
        default=7, description="Age after which volatile chunks are down-weighted"
    )
    volatile_decay: float = Field(default=0.5, description="Score multiplier for stale chunks")

    # Glossary
    glossary_path: str | None = Field(
        default=None, description="JSON file with extra EN/ZH glossary entries"
    )

    # Relevance reranker
    reranker_enabled: bool = Field(default=True, description="Enable the relevance reranker")
    reranker_model: str | None = Field(
        default=None,
        description="Cross-encoder model name; None uses the deterministic scorer only",
    )
    reranker_device: str | None = Field(default=None, description="Device for model inference")
    reranker_batch_size: int = Field(default=8, description="Pairs scored per batch")
    reranker_max_length: int = Field(default=512, description="Maximum model input length")
    reranker_top_k: int = Field(default=15, description="Results passed to the reranker")
    reranker_load_timeout_ms: int = Field(
        default=10000, description="Timeout for loading the cross-encoder model"
    )
    reranker_timeout_ms: int = Field(
        default=2000, description="Timeout for scoring one batch with the model"
    )

    # Diversity (MMR)
    mmr_enabled: bool = Field(default=False, description="Enable MMR diversity reranking")
    mmr_lambda: float = Field(default=0.5, description="Relevance/diversity trade-off")

    # Parent/child aggregation
    aggregator_top_k: int = Field(default=3, description="Parent blocks to build")
    parent_min_tokens: int = Field(default=600, description="Minimum contiguous block size")
    parent_max_tokens: int = Field(default=1200, description="Maximum parent block size")
    multi_hit_bonus: float = Field(default=0.1, description="Bonus per additional child hit")
    max_multi_hit_bonus: float = Field(default=0.3, description="Cap on the multi-hit bonus")
    score_aggregation: str = Field(
        default="max_plus_mean", description="Child score aggregation: max, mean, max_plus_mean"
    )
    meta_card_bonus: float = Field(default=0.05, description="Bonus for children with a meta card")
    meta_card_intent_bonus: float = Field(
        default=0.1, description="Extra bonus when the meta card answers the query intent"
    )
    max_meta_card_bonus: float = Field(default=0.15, description="Cap on the meta card bonus")

    # Context builder
    context_max_tokens: int = Field(default=800, description="Total prompt token budget")
    context_max_chunks: int = Field(default=5, description="Maximum chunks in the context")
    context_format: str = Field(
        default="structured", description="Output style: structured, conversational, minimal"
    )
    preserve_citations: bool = Field(default=True, description="Prefix chunks with citations")
    system_prompt_tokens: int = Field(default=150, description="Reserved system prompt tokens")
    query_tokens: int = Field(default=100, description="Reserved user query tokens")
    knowledge_tokens: int = Field(default=600, description="Knowledge context allowance")
    conversation_tokens: int = Field(default=250, description="Conversation history allowance")
    buffer_tokens: int = Field(default=50, description="Safety buffer")
    min_knowledge_tokens: int = Field(
        default=300, description="Knowledge allowance floor when conversation is present"
    )
    min_truncated_tokens: int = Field(
        default=100, description="Smallest budget worth truncating a chunk into"
    )
    dedup_cluster_threshold: float = Field(
        default=0.92, description="Cosine similarity for near-duplicate clusters"
    )
    dedup_pre_cap: int = Field(default=2, description="Chunks per source before clustering")
    dedup_post_cap: int = Field(default=1, description="Chunks per source in the final context")
    complete_chunk_tokens: int = Field(
        default=50, description="Token count at which a chunk is considered complete"
    )

    @field_validator(
        "fusion_base_dense_weight",
        "fusion_min_dense_weight",
        "fusion_max_keyword_weight",
        "volatile_decay",
        "mmr_lambda",
        "dedup_cluster_threshold",
    )
    @classmethod
    def validate_unit_interval(cls, v: float, info) -> float:
        """Ensure weights and thresholds lie in [0, 1]."""
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"{info.field_name} must be between 0 and 1, got {v}")
        return v

    @field_validator("score_aggregation")
    @classmethod
    def validate_score_aggregation(cls, v: str) -> str:
        """Validate the child score aggregation method."""
        if v not in ["max", "mean", "max_plus_mean"]:
            raise ValueError(f"score_aggregation must be max, mean or max_plus_mean, got '{v}'")
        return v

    @field_validator("context_format")
    @classmethod
    def validate_context_format(cls, v: str) -> str:
        """Validate the context output style."""
        if v not in ["structured", "conversational", "minimal"]:
            raise ValueError(
                f"context_format must be structured, conversational or minimal, got '{v}'"
            )
        return v

    @model_validator(mode="after")
    def validate_parent_token_range(self) -> "Settings":
        """Ensure the parent block token range is ordered."""
        if self.parent_min_tokens > self.parent_max_tokens:
            raise ValueError("parent_min_tokens must not exceed parent_max_tokens")
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()
