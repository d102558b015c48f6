"""Bidirectional English/Chinese glossary for query expansion.

Proper nouns (projects, networks, tokens) are written differently across
languages, and a query in one language should still match passages written in
the other. Expansion appends translations to the query; it never replaces the
original text.
"""

import json
import logging
import re
from collections.abc import Mapping
from pathlib import Path

logger = logging.getLogger(__name__)

CJK_PATTERN = re.compile(r"[\u4e00-\u9fff]")
CLEAN_WORD_PATTERN = re.compile(r"[^\w\u4e00-\u9fff]")

DEFAULT_GLOSSARY: dict[str, dict[str, list[str]]] = {
    "wangchai": {"zh": ["旺柴"], "en": ["WangChai"]},
    "nyla": {"zh": ["奈拉"], "en": ["NYLA"]},
    "solana": {"zh": ["索拉纳"], "en": ["Solana", "SOL"]},
    "ethereum": {"zh": ["以太坊"], "en": ["Ethereum", "ETH"]},
    "algorand": {"zh": ["阿尔戈兰德"], "en": ["Algorand", "ALGO"]},
    "bonk": {"zh": ["邦克"], "en": ["BONK"]},
    "ama": {"zh": ["问答"], "en": ["AMA", "Ask Me Anything"]},
    "dex": {"zh": ["去中心化交易所"], "en": ["DEX", "Decentralized Exchange"]},
    "chinese": {"zh": ["中文", "华语"], "en": ["Chinese", "Mandarin"]},
}


class Glossary:
    """Term map from normalized words to their translations.

    English keys map to their ``en``/``zh`` aliases. Single-word English
    aliases such as ``ETH`` map to the key and its other aliases, and every
    Chinese alias maps back to its English key.
    """

    def __init__(self, entries: Mapping[str, Mapping[str, list[str]]] | None = None) -> None:
        self._terms: dict[str, list[str]] = {}
        self._cjk_terms: list[str] = []
        for key, translations in (entries or {}).items():
            self.add(key, translations.get("en", []), translations.get("zh", []))

    def __len__(self) -> int:
        return len(self._terms)

    def __contains__(self, term: object) -> bool:
        return isinstance(term, str) and term.lower() in self._terms

    @classmethod
    def default(cls) -> "Glossary":
        return cls(DEFAULT_GLOSSARY)

    @classmethod
    def from_mapping(
        cls, entries: Mapping[str, Mapping[str, list[str]]], include_defaults: bool = True
    ) -> "Glossary":
        merged: dict[str, Mapping[str, list[str]]] = {}
        if include_defaults:
            merged.update(DEFAULT_GLOSSARY)
        merged.update(entries)
        return cls(merged)

    @classmethod
    def from_file(cls, path: str | Path, include_defaults: bool = True) -> "Glossary":
        """Load entries from a JSON file of ``{"term": {"en": [...], "zh": [...]}}``."""
        with open(path, encoding="utf-8") as f:
            entries = json.load(f)
        glossary = cls.from_mapping(entries, include_defaults=include_defaults)
        logger.info(f"Loaded glossary with {len(glossary)} term mappings from {path}")
        return glossary

    def add(self, key: str, en: list[str], zh: list[str]) -> None:
        """Register a term with its English and Chinese aliases."""
        normalized = key.lower()
        translations = self._terms.setdefault(normalized, [])
        for term in [*en, *zh]:
            if term not in translations:
                translations.append(term)

        for term in zh:
            reverse = self._terms.setdefault(term.lower(), [])
            if key not in reverse:
                reverse.append(key)
            if CJK_PATTERN.search(term) and term not in self._cjk_terms:
                self._cjk_terms.append(term)

        # Single-word English aliases (ETH, SOL) expand like the key itself.
        for alias in en:
            normalized_alias = alias.lower()
            if normalized_alias == normalized or " " in normalized_alias:
                continue
            related = self._terms.setdefault(normalized_alias, [])
            seen = {term.lower() for term in related} | {normalized_alias}
            for term in [key, *en, *zh]:
                if term.lower() not in seen:
                    seen.add(term.lower())
                    related.append(term)

    def lookup(self, word: str) -> list[str]:
        return list(self._terms.get(word.lower(), []))

    def expansions(self, query: str) -> list[str]:
        """Translations for every glossary term found in the query.

        Words are matched after stripping punctuation. Chinese terms are also
        found as substrings, since Chinese text has no spaces between words.
        """
        found: list[str] = []
        for word in query.lower().split():
            clean = CLEAN_WORD_PATTERN.sub("", word)
            if clean:
                found.extend(self._terms.get(clean, []))

        for term in self._cjk_terms:
            if term in query:
                found.extend(self._terms.get(term.lower(), []))

        lowered = query.lower()
        unique: list[str] = []
        for term in found:
            if term.lower() not in lowered and term not in unique:
                unique.append(term)
        return unique

    def expand(self, query: str) -> str:
        """Append translations of glossary terms to the query."""
        terms = self.expansions(query)
        if not terms:
            return query
        expanded = f"{query} {' '.join(terms)}"
        logger.debug(f"Query expanded: {query!r} -> {expanded!r}")
        return expanded
