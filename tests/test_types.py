"""Tests for core pipeline types."""

import pytest
from pydantic import ValidationError

from kb_retrieval.types import (
    Chunk,
    ChunkId,
    ChunkMetadata,
    Intent,
    IntentType,
    MetaCard,
    ParentBlock,
    QueryAnalysis,
    RetrievalResult,
)


class TestChunkId:
    """Tests for typed chunk identifiers."""

    def test_of_is_idempotent(self) -> None:
        """Test that wrapping an existing id returns the same object."""
        chunk_id = ChunkId.of("nyla-token")
        assert ChunkId.of(chunk_id) is chunk_id

    def test_of_strips_whitespace(self) -> None:
        """Test that surrounding whitespace is removed."""
        assert ChunkId.of("  faq-1 ") == "faq-1"

    @pytest.mark.parametrize("value", ["", "   "])
    def test_of_rejects_empty(self, value: str) -> None:
        """Test that empty identifiers are rejected."""
        with pytest.raises(ValueError, match="non-empty"):
            ChunkId.of(value)

    def test_base_drops_part_suffix(self) -> None:
        """Test that the fragment suffix is removed from the base id."""
        assert ChunkId.of("guide_part1").base == "guide"
        assert ChunkId.of("guide").base == "guide"

    def test_part_does_not_stack(self) -> None:
        """Test that splitting a fragment again replaces its suffix."""
        first = ChunkId.of("guide").part(1)
        assert first == "guide_part1"
        assert first.part(2) == "guide_part2"

    def test_for_parent_prefixes_once(self) -> None:
        """Test that the parent prefix is applied exactly once."""
        assert ChunkId.for_parent("doc") == "parent_doc"
        assert ChunkId.for_parent("parent_doc") == "parent_doc"

    def test_validated_in_models(self) -> None:
        """Test that model fields coerce and validate chunk ids."""
        chunk = Chunk(id=" nyla ", text="NYLA")
        assert isinstance(chunk.id, ChunkId)
        assert chunk.id == "nyla"
        assert chunk.model_dump()["id"] == "nyla"

        with pytest.raises(ValidationError):
            Chunk(id="", text="empty id")


class TestChunkMetadata:
    """Tests for chunk metadata."""

    def test_unknown_keys_collected(self) -> None:
        """Test that undeclared attributes land in the extra map."""
        metadata = ChunkMetadata.model_validate(
            {"source": "kb/tokens/nyla.yaml", "network": "algorand", "extra": {"tier": 1}}
        )

        assert metadata.source == "kb/tokens/nyla.yaml"
        assert metadata.extra == {"tier": 1, "network": "algorand"}
        assert metadata.get("network") == "algorand"
        assert metadata.get("source") == "kb/tokens/nyla.yaml"
        assert metadata.get("title", "untitled") == "untitled"

    def test_richness_counts_populated_fields(self) -> None:
        """Test that richness counts declared and extra attributes with values."""
        sparse = ChunkMetadata(source="a.md")
        rich = ChunkMetadata.model_validate(
            {"source": "a.md", "title": "A", "tags": ["x"], "network": "algorand"}
        )

        assert sparse.richness() == 1
        assert rich.richness() == 4

    @pytest.mark.parametrize(
        ("fields", "expected"),
        [
            ({}, False),
            ({"volatile": True}, True),
            ({"stability": "volatile"}, True),
            ({"stability": "stable"}, False),
        ],
    )
    def test_is_volatile(self, fields: dict, expected: bool) -> None:
        """Test volatility from either the flag or the stability field."""
        assert ChunkMetadata(**fields).is_volatile is expected


class TestMetaCard:
    """Tests for meta cards."""

    def test_has_field_for(self) -> None:
        """Test which intents a card can answer."""
        card = MetaCard(ticker_symbol="$NYLA", official_channels={"x": "https://x.com/nyla"})

        assert card.has_field_for(IntentType.TICKER_SYMBOL)
        assert card.has_field_for(IntentType.OFFICIAL_CHANNEL)
        assert not card.has_field_for(IntentType.CONTRACT_ADDRESS)
        assert not card.has_field_for(IntentType.TECHNICAL_SPECS)


class TestRetrievalResult:
    """Tests for retrieval results."""

    @pytest.mark.parametrize(
        ("scores", "expected"),
        [
            ({"score": 0.2}, 0.2),
            ({"score": 0.2, "cross_encoder_score": 0.5}, 0.5),
            ({"score": 0.2, "cross_encoder_score": 0.5, "final_score": 0.9}, 0.9),
            ({"score": 0.2, "final_score": 0.0}, 0.0),
        ],
    )
    def test_effective_score_priority(self, scores: dict, expected: float) -> None:
        """Test that the final score wins over the reranker and raw scores."""
        result = RetrievalResult(id="a", text="a", **scores)
        assert result.effective_score() == expected

    def test_from_chunk(self) -> None:
        """Test that a result carries the chunk's text, metadata and embedding."""
        chunk = Chunk(
            id="nyla",
            text="NYLA token",
            embedding=[1.0, 0.0],
            metadata=ChunkMetadata(source="nyla.md"),
            meta_card=MetaCard(ticker_symbol="$NYLA"),
        )

        result = RetrievalResult.from_chunk(chunk, score=0.7, dense_score=0.7)

        assert result.id == "nyla"
        assert result.text == "NYLA token"
        assert result.embedding == [1.0, 0.0]
        assert result.metadata.source == "nyla.md"
        assert result.meta_card.ticker_symbol == "$NYLA"
        assert result.score == 0.7
        assert result.dense_score == 0.7


class TestParentBlock:
    """Tests for parent blocks."""

    def test_to_result(self) -> None:
        """Test that a block becomes a prefixed result scored by its aggregate."""
        block = ParentBlock(
            parent_id="guide",
            text="merged",
            tokens=2,
            child_count=2,
            base_score=0.8,
            bonus=0.1,
            aggregated_score=0.9,
        )

        result = block.to_result()

        assert result.id == "parent_guide"
        assert result.final_score == 0.9
        assert result.effective_score() == 0.9


class TestQueryAnalysis:
    """Tests for query analysis output."""

    def test_has_intent(self) -> None:
        """Test intent membership checks."""
        analysis = QueryAnalysis(
            original="What is the ticker?",
            expanded="What is the ticker?",
            intents=[Intent(type=IntentType.TICKER_SYMBOL, confidence=0.9)],
        )

        assert analysis.has_intent(IntentType.TICKER_SYMBOL)
        assert not analysis.has_intent(IntentType.CONTRACT_ADDRESS)
        assert analysis.intent_types == {IntentType.TICKER_SYMBOL}

    def test_intent_confidence_bounds(self) -> None:
        """Test that confidence outside [0, 1] is rejected."""
        with pytest.raises(ValidationError):
            Intent(type=IntentType.TICKER_SYMBOL, confidence=1.5)
