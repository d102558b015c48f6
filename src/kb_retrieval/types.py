"""Core types for the retrieval engine.

This module defines the data structures that flow through the pipeline:
chunks and their metadata, per-stage retrieval results, parent blocks built
by the aggregator, query analysis output, and the context builder's result.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator
from pydantic_core import core_schema


class ChunkId(str):
    """Typed chunk identifier.

    ``ChunkId.of`` is the single canonical constructor. Wrapping a value that is
    already a ``ChunkId`` returns it unchanged, and ``part`` derives fragment ids
    from the base id so repeated splitting never stacks suffixes.
    """

    PART_SUFFIX = re.compile(r"_part\d+$")
    PARENT_PREFIX = "parent_"

    @classmethod
    def of(cls, value: Any) -> "ChunkId":
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        if not text:
            raise ValueError("Chunk id must be a non-empty string")
        return cls(text)

    @property
    def base(self) -> "ChunkId":
        """Identifier with any fragment suffix removed."""
        return ChunkId(self.PART_SUFFIX.sub("", self))

    def part(self, index: int) -> "ChunkId":
        """Identifier of the ``index``-th fragment of this chunk."""
        return ChunkId(f"{self.base}_part{index}")

    @classmethod
    def for_parent(cls, parent_id: str) -> "ChunkId":
        """Identifier of the block rebuilt for ``parent_id``, prefixed once."""
        text = str(parent_id)
        if not text.startswith(cls.PARENT_PREFIX):
            text = f"{cls.PARENT_PREFIX}{text}"
        return cls.of(text)

    @classmethod
    def __get_pydantic_core_schema__(cls, source: Any, handler: Any) -> core_schema.CoreSchema:
        return core_schema.no_info_after_validator_function(
            cls.of,
            core_schema.str_schema(),
            serialization=core_schema.plain_serializer_function_ser_schema(str),
        )


class _OpenModel(BaseModel):
    """Model with declared fields plus an ``extra`` map for dynamic keys."""

    extra: dict[str, Any] = Field(default_factory=dict, description="Undeclared attributes")

    @model_validator(mode="before")
    @classmethod
    def collect_extra(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        declared = set(cls.model_fields)
        known = {k: v for k, v in data.items() if k in declared}
        unknown = {k: v for k, v in data.items() if k not in declared}
        if unknown:
            known["extra"] = {**data.get("extra", {}), **unknown}
        return known

    def get(self, key: str, default: Any = None) -> Any:
        """Read a declared field or an extension key."""
        if key in type(self).model_fields and key != "extra":
            value = getattr(self, key)
            return default if value is None else value
        return self.extra.get(key, default)


class ChunkMetadata(_OpenModel):
    """Metadata attached to a chunk.

    Attributes:
        source_id: Identity of the underlying document, used for deduplication.
        source: Source path or name (e.g. ``kb/tokens/wangchai.yaml``).
        title: Human-readable title used in citations.
        type: Chunk type (e.g. ``facts``, ``integration``, ``faq``).
        tags: Free-form tags.
        section: Section of the source document.
        category: Coarse category.
        parent_chunk: Explicit parent identifier.
        chunk_part: Ordinal position within the parent.
        stability: ``stable`` or ``volatile``.
        volatile: Volatility flag; content may go stale.
        as_of: When volatile content was last confirmed.
        verified: Whether an integration is verified.
        status: Integration status (``beta``, ``live``, ...).
        exclude_from_tech: Exclude from technical-spec answers.
    """

    source_id: str | None = None
    source: str | None = None
    title: str | None = None
    type: str | None = None
    tags: list[str] = Field(default_factory=list)
    section: str | None = None
    category: str | None = None
    parent_chunk: str | None = None
    chunk_part: int | None = None
    stability: str | None = None
    volatile: bool = False
    as_of: datetime | None = None
    verified: bool | None = None
    status: str | None = None
    exclude_from_tech: bool = False
    url: str | None = None
    path: str | None = None
    collection_id: str | None = None
    doc_key: str | None = None
    domain: str | None = None

    @property
    def is_volatile(self) -> bool:
        return self.volatile or self.stability == "volatile"

    def richness(self) -> int:
        """Number of populated metadata attributes."""
        populated = [
            name
            for name in type(self).model_fields
            if name != "extra" and getattr(self, name) not in (None, False, [], "")
        ]
        return len(populated) + len(self.extra)


class MetaCard(_OpenModel):
    """Structured sidecar facts attached to a chunk.

    Attributes:
        contract_address: Token contract address.
        ticker_symbol: Ticker symbol (e.g. ``$NYLA``).
        blockchain: Network the contract lives on.
        official_channels: Channel name to link.
    """

    contract_address: str | None = None
    ticker_symbol: str | None = None
    blockchain: str | None = None
    official_channels: dict[str, str] = Field(default_factory=dict)

    def has_field_for(self, intent: "IntentType") -> bool:
        """Whether the card carries a field that answers the given intent."""
        if intent == IntentType.CONTRACT_ADDRESS:
            return bool(self.contract_address)
        if intent == IntentType.TICKER_SYMBOL:
            return bool(self.ticker_symbol)
        if intent == IntentType.OFFICIAL_CHANNEL:
            return bool(self.official_channels)
        if intent == IntentType.TECHNICAL_SPECS:
            return bool(self.blockchain)
        return False


class Chunk(BaseModel):
    """Unit of retrievable text.

    Attributes:
        id: Unique chunk identifier.
        text: Display and dense-embedding form.
        search_text: Keyword-indexing form; may differ from ``text``.
        embedding: Fixed-dimension vector, absent until embedded.
        metadata: Chunk metadata.
        meta_card: Optional structured sidecar.
    """

    id: ChunkId
    text: str
    search_text: str | None = None
    embedding: list[float] | None = None
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)
    meta_card: MetaCard | None = None


class RetrievalSource(str, Enum):
    """Retriever that produced a candidate."""

    DENSE = "dense"
    BM25 = "bm25"


class RetrievalResult(BaseModel):
    """A candidate passage as it moves through the pipeline.

    Attributes:
        id: Chunk (or parent block) identifier.
        text: Passage text.
        metadata: Chunk metadata.
        meta_card: Optional structured sidecar.
        embedding: Chunk embedding, carried for diversity and clustering stages.
        score: Raw score from the producing stage.
        dense_score: Cosine similarity from the vector store.
        bm25_score: BM25 score from the keyword index.
        fused_score: Weighted fusion of dense and keyword contributions.
        final_score: Authoritative ranking score for later stages.
        cross_encoder_score: Relevance reranker score.
        mmr_score: Diversity reranker score.
        sources: Retrievers that produced this candidate.
        rerank_method: ``model`` or ``fallback`` once reranked.
        truncated: Text was cut to fit a token budget.
    """

    id: ChunkId
    text: str
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)
    meta_card: MetaCard | None = None
    embedding: list[float] | None = None
    score: float = 0.0
    dense_score: float | None = None
    bm25_score: float | None = None
    fused_score: float | None = None
    final_score: float | None = None
    cross_encoder_score: float | None = None
    mmr_score: float | None = None
    sources: list[RetrievalSource] = Field(default_factory=list)
    rerank_method: str | None = None
    truncated: bool = False

    def effective_score(self) -> float:
        """Score in fixed priority order: final, cross-encoder, raw, zero."""
        for value in (self.final_score, self.cross_encoder_score, self.score):
            if value is not None:
                return value
        return 0.0

    @classmethod
    def from_chunk(cls, chunk: Chunk, score: float = 0.0, **kwargs: Any) -> "RetrievalResult":
        return cls(
            id=chunk.id,
            text=chunk.text,
            metadata=chunk.metadata,
            meta_card=chunk.meta_card,
            embedding=chunk.embedding,
            score=score,
            **kwargs,
        )


class BuildMethod(str, Enum):
    """How a parent block's text was assembled.

    Attributes:
        CONTIGUOUS: Children merged in order with overlap removal.
        CONCATENATED: Highest-scoring children joined with a delimiter.
        LARGEST_CHILD: Fallback after a build failure.
    """

    CONTIGUOUS = "contiguous"
    CONCATENATED = "concatenated"
    LARGEST_CHILD = "largest_child"


class ChildRef(BaseModel):
    """Reference to a child chunk inside a parent block."""

    id: ChunkId
    score: float
    position: int | None = None
    tokens: int = 0


class ParentBlock(BaseModel):
    """Context block reconstructed from child hits that share a parent.

    Attributes:
        parent_id: Resolved parent identity.
        text: Merged text.
        tokens: Estimated token count of ``text``.
        child_count: Number of child hits in the group.
        base_score: Aggregate of child scores.
        bonus: Multi-hit bonus.
        aggregated_score: ``base_score + bonus``.
        metadata: First child's metadata with tags and sources unioned.
        children: Child references with individual scores and positions.
        build_method: How the text was assembled.
        meta_card: First meta card found among the children.
        embedding: Mean embedding of the children used in ``text``, for
            clustering-based deduplication of blocks.
    """

    parent_id: str
    text: str
    tokens: int
    child_count: int
    base_score: float
    bonus: float
    aggregated_score: float
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)
    children: list[ChildRef] = Field(default_factory=list)
    build_method: BuildMethod = BuildMethod.CONTIGUOUS
    meta_card: MetaCard | None = None
    embedding: list[float] | None = None

    def to_result(self) -> RetrievalResult:
        """Express the block as a retrieval result for the context builder."""
        return RetrievalResult(
            id=ChunkId.for_parent(self.parent_id),
            text=self.text,
            metadata=self.metadata,
            meta_card=self.meta_card,
            embedding=self.embedding,
            score=self.aggregated_score,
            final_score=self.aggregated_score,
        )


class SignalType(str, Enum):
    """Exact-signal categories detected in queries."""

    EVM_ADDRESS = "evm_address"
    EVM_TX_HASH = "evm_tx_hash"
    SOLANA_ADDRESS = "solana_address"
    HANDLE = "handle"
    TICKER = "ticker"
    NUMBER_UNIT = "number_unit"


class ExactSignal(BaseModel):
    """A high-precision query substring.

    Attributes:
        type: Signal category.
        value: Matched text (ticker and handle values without their sigil).
        start: Start offset in the original query.
        end: End offset in the original query.
        unit: Unit for number+unit signals.
    """

    type: SignalType
    value: str
    start: int
    end: int
    unit: str | None = None


class IntentType(str, Enum):
    """Classified query purpose.

    Attributes:
        CONTRACT_ADDRESS: Looking up a contract or wallet address.
        TICKER_SYMBOL: Looking up a token ticker.
        OFFICIAL_CHANNEL: Looking for official links or socials.
        TECHNICAL_SPECS: Asking about how the technology works.
    """

    CONTRACT_ADDRESS = "contract_address"
    TICKER_SYMBOL = "ticker_symbol"
    OFFICIAL_CHANNEL = "official_channel"
    TECHNICAL_SPECS = "technical_specs"


class Intent(BaseModel):
    """A detected intent with confidence in [0, 1]."""

    type: IntentType
    confidence: float = Field(ge=0.0, le=1.0)


class QueryAnalysis(BaseModel):
    """Output of query preparation.

    Attributes:
        original: Query as received.
        expanded: Query with glossary translations appended.
        exact_signals: Detected exact signals.
        intents: Detected intents; several may co-occur.
        needs_keyword_search: Whether the keyword index should be queried.
    """

    original: str
    expanded: str
    exact_signals: list[ExactSignal] = Field(default_factory=list)
    intents: list[Intent] = Field(default_factory=list)
    needs_keyword_search: bool = False

    @property
    def intent_types(self) -> set[IntentType]:
        return {intent.type for intent in self.intents}

    def has_intent(self, intent: IntentType) -> bool:
        return intent in self.intent_types


class ContextFormat(str, Enum):
    """Output style of the built context."""

    STRUCTURED = "structured"
    CONVERSATIONAL = "conversational"
    MINIMAL = "minimal"


class SourceRef(BaseModel):
    """A source cited by the built context."""

    source: str
    title: str | None = None
    chunk_ids: list[str] = Field(default_factory=list)


class ContextMetadata(BaseModel):
    """Token accounting for a built context."""

    chunks_used: int = 0
    total_chunks: int = 0
    estimated_tokens: int = 0
    sources: list[SourceRef] = Field(default_factory=list)
    truncated_chunks: int = 0
    conversation_tokens: int = 0
    format: ContextFormat = ContextFormat.STRUCTURED


class PromptSections(BaseModel):
    """Prompt pieces assembled from the context."""

    system: str = ""
    user: str = ""
    full: str = ""


class BuiltContext(BaseModel):
    """Result of building a context for a query."""

    context: str = ""
    conversation: str | None = None
    prompt_sections: PromptSections = Field(default_factory=PromptSections)
    metadata: ContextMetadata = Field(default_factory=ContextMetadata)
    chunks: list[RetrievalResult] = Field(default_factory=list)
