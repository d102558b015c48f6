"""Tests for glossary query expansion."""

import json
from pathlib import Path

from kb_retrieval.retrieval.glossary import Glossary


class TestGlossary:
    """Tests for Glossary."""

    def test_english_term_expands_to_chinese(self) -> None:
        """Test that an English term gains its Chinese translation."""
        assert Glossary.default().expand("what is nyla") == "what is nyla 奈拉"

    def test_chinese_term_found_without_spaces(self) -> None:
        """Test that Chinese terms are found inside unspaced text."""
        assert Glossary.default().expand("旺柴是什么") == "旺柴是什么 wangchai"

    def test_punctuation_is_ignored(self) -> None:
        """Test that trailing punctuation does not block a match."""
        assert "以太坊" in Glossary.default().expand("Ethereum?")

    def test_terms_already_present_are_not_repeated(self) -> None:
        """Test that expansion skips translations the query already contains."""
        expanded = Glossary.default().expand("solana 索拉纳 SOL")
        assert expanded == "solana 索拉纳 SOL"

    def test_no_match_returns_query_unchanged(self) -> None:
        """Test that unknown words leave the query alone."""
        assert Glossary.default().expand("hello world") == "hello world"

    def test_from_mapping_merges_defaults(self) -> None:
        """Test that custom entries are added alongside the defaults."""
        glossary = Glossary.from_mapping({"staking": {"zh": ["质押"], "en": ["Staking"]}})

        assert "staking" in glossary
        assert "nyla" in glossary
        assert glossary.lookup("质押") == ["staking"]

    def test_from_mapping_without_defaults(self) -> None:
        """Test that defaults can be left out."""
        glossary = Glossary.from_mapping(
            {"staking": {"zh": ["质押"], "en": ["Staking"]}}, include_defaults=False
        )
        assert "nyla" not in glossary
        assert glossary.expand("what is staking") == "what is staking 质押"

    def test_from_file(self, tmp_path: Path) -> None:
        """Test loading entries from a JSON file."""
        path = tmp_path / "glossary.json"
        path.write_text(
            json.dumps({"bridge": {"zh": ["跨链桥"], "en": ["Bridge"]}}, ensure_ascii=False),
            encoding="utf-8",
        )
        glossary = Glossary.from_file(path)

        assert glossary.expand("跨链桥怎么用") == "跨链桥怎么用 bridge"
        assert "wangchai" in glossary

    def test_english_alias_expands_to_key_and_chinese(self) -> None:
        """Test that a ticker-style alias expands to the full name and its translation."""
        expanded = Glossary.default().expand("ETH gas fees")

        assert expanded == "ETH gas fees ethereum 以太坊"

    def test_alias_with_punctuation(self) -> None:
        """Test that aliases match after punctuation is stripped."""
        assert Glossary.default().expand("price of SOL?") == "price of SOL? solana 索拉纳"
        assert "阿尔戈兰德" in Glossary.default().expand("ALGO staking")

    def test_alias_lookup(self) -> None:
        """Test that aliases are looked up case-insensitively."""
        glossary = Glossary.default()

        assert glossary.lookup("eth") == ["ethereum", "以太坊"]
        assert glossary.lookup("Mandarin") == ["chinese", "中文", "华语"]
        assert "sol" in glossary

    def test_multi_word_alias_not_registered(self) -> None:
        """Test that phrase aliases are not turned into single-word lookups."""
        assert "ask me anything" not in Glossary.default()
