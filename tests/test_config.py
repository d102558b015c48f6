"""Tests for configuration module."""

import pytest
from pydantic import ValidationError

from kb_retrieval.config import Settings, get_settings


class TestSettings:
    """Tests for Settings configuration."""

    def test_default_values(self) -> None:
        """Test default configuration values."""
        settings = Settings(_env_file=None)

        assert settings.embedding_dimension == 768
        assert settings.bm25_k1 == 1.2
        assert settings.bm25_b == 0.75
        assert settings.retrieval_top_k == 20
        assert settings.retrieval_bm25_top_k == 10
        assert settings.retrieval_final_top_k == 8
        assert settings.retrieval_min_score == 0.3
        assert settings.fusion_min_dense_weight == 0.2
        assert settings.volatile_max_age_days == 7
        assert settings.reranker_top_k == 15
        assert settings.parent_min_tokens == 600
        assert settings.parent_max_tokens == 1200
        assert settings.context_max_tokens == 800
        assert settings.context_max_chunks == 5
        assert settings.reranker_model is None
        assert not settings.mmr_enabled

    def test_environment_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that environment variables override defaults."""
        monkeypatch.setenv("EMBEDDING_DIMENSION", "384")
        monkeypatch.setenv("RERANKER_ENABLED", "false")
        monkeypatch.setenv("CONTEXT_FORMAT", "minimal")

        settings = Settings(_env_file=None)

        assert settings.embedding_dimension == 384
        assert settings.reranker_enabled is False
        assert settings.context_format == "minimal"

    @pytest.mark.parametrize(
        "field",
        ["fusion_min_dense_weight", "volatile_decay", "mmr_lambda", "dedup_cluster_threshold"],
    )
    def test_unit_interval_fields(self, field: str) -> None:
        """Test that weights and thresholds outside [0, 1] are rejected."""
        with pytest.raises(ValidationError, match="must be between 0 and 1"):
            Settings(_env_file=None, **{field: 1.5})

    def test_score_aggregation_invalid(self) -> None:
        """Test that an unknown aggregation method is rejected."""
        with pytest.raises(ValidationError, match="score_aggregation must be"):
            Settings(_env_file=None, score_aggregation="median")

    def test_context_format_invalid(self) -> None:
        """Test that an unknown context style is rejected."""
        with pytest.raises(ValidationError, match="context_format must be"):
            Settings(_env_file=None, context_format="xml")

    def test_parent_token_range(self) -> None:
        """Test that the parent token range must be ordered."""
        with pytest.raises(ValidationError, match="parent_min_tokens must not exceed"):
            Settings(_env_file=None, parent_min_tokens=2000, parent_max_tokens=1000)

    def test_get_settings_is_cached(self) -> None:
        """Test that get_settings returns one shared instance."""
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()
