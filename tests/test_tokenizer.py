"""Tests for the keyword index tokenizer."""

from kb_retrieval.indexing.tokenizer import NOISE_BIGRAMS, cjk_tokens, latin_tokens, tokenize


class TestLatinTokens:
    """Tests for Latin-script tokenization."""

    def test_lowercases_and_splits_on_punctuation(self) -> None:
        """Test that text is lowercased and split on punctuation."""
        assert latin_tokens("Hello, World! Social-transfers") == [
            "hello",
            "world",
            "social",
            "transfers",
        ]

    def test_drops_stop_words_and_short_tokens(self) -> None:
        """Test that stop words and single characters are removed."""
        assert latin_tokens("the token is a x on chain") == ["token", "chain"]

    def test_keeps_ticker_sigil(self) -> None:
        """Test that a dollar-prefixed ticker stays one token."""
        assert latin_tokens("What is $NYLA?") == ["what", "$nyla"]


class TestCjkTokens:
    """Tests for CJK run tokenization."""

    def test_two_character_run_emits_run_and_characters(self) -> None:
        """Test that a two-character run yields the run and both characters."""
        assert cjk_tokens("合约") == ["合约", "合", "约"]

    def test_long_run_emits_run_and_bigrams(self) -> None:
        """Test that runs of four or more characters also yield bigrams."""
        tokens = cjk_tokens("合约地址")
        assert tokens[0] == "合约地址"
        assert {"合约", "约地", "地址"} <= set(tokens)

    def test_noise_bigrams_never_emitted(self) -> None:
        """Test that denylisted bigrams are filtered from long runs."""
        tokens = cjk_tokens("旺柴的合约地址")
        assert "柴的" not in tokens
        assert "的合" not in tokens
        assert "合约" in tokens
        assert not NOISE_BIGRAMS & set(tokens)

    def test_overlong_run_emits_only_bigrams(self) -> None:
        """Test that runs longer than eight characters are not emitted whole."""
        run = "旺柴项目代币合约地址查询"
        tokens = cjk_tokens(run)
        assert run not in tokens
        assert "地址" in tokens

    def test_single_character_run_emits_nothing(self) -> None:
        """Test that an isolated ideograph yields no token."""
        assert cjk_tokens("a 币 b") == []


class TestTokenize:
    """Tests for the combined tokenizer."""

    def test_empty_input(self) -> None:
        """Test that empty and missing text yield no tokens."""
        assert tokenize("") == []
        assert tokenize(None) == []

    def test_deduplicates_in_first_seen_order(self) -> None:
        """Test that repeated tokens appear once."""
        assert tokenize("token Token TOKEN chain") == ["token", "chain"]

    def test_mixed_script(self) -> None:
        """Test that Latin and CJK parts of one string are both tokenized."""
        assert tokenize("NYLA代币") == ["nyla", "代币", "代", "币"]
