"""Query analysis for hybrid retrieval.

Analyzes queries to determine:
- Exact signals (addresses, transaction hashes, handles, tickers, amounts)
- Intents that drive fusion weighting and metadata filtering
- Whether the keyword index should be consulted at all
- Dense/keyword fusion weights
"""

import logging
import re
from dataclasses import dataclass

from kb_retrieval.retrieval.constants import (
    BASE_KEYWORD_WEIGHT,
    INTENT_KEYWORD_WEIGHTS,
    MAX_SIGNAL_BOOST,
    SIGNAL_BOOST_PER_SIGNAL,
)
from kb_retrieval.retrieval.glossary import Glossary
from kb_retrieval.types import ExactSignal, Intent, IntentType, QueryAnalysis, SignalType

logger = logging.getLogger(__name__)

BASE58 = "[1-9A-HJ-NP-Za-km-z]"


@dataclass
class FusionWeights:
    """Dense and keyword weights for score fusion; they always sum to 1."""

    dense: float
    keyword: float
    reason: str


class QueryAnalyzer:
    """Analyzer that prepares queries for hybrid retrieval.

    Uses high-precision regexes for exact signals and keyword lists (English and
    Chinese) for intents. Detectors run in a fixed order and a span claimed by
    an earlier detector is not reported again by a later one, so a transaction
    hash is not also reported as an address or a number.
    """

    # Detectors in priority order
    SIGNAL_PATTERNS: list[tuple[SignalType, re.Pattern[str]]] = [
        (SignalType.EVM_TX_HASH, re.compile(r"0x[a-fA-F0-9]{64}(?![a-fA-F0-9])")),
        (SignalType.EVM_ADDRESS, re.compile(r"0x[a-fA-F0-9]{40}(?![a-fA-F0-9])")),
        (
            SignalType.SOLANA_ADDRESS,
            re.compile(rf"(?<!{BASE58})[1-9A-HJ-NP-Za-km-z]{{32,44}}(?!{BASE58})"),
        ),
        (SignalType.HANDLE, re.compile(r"(?<![\w.])@([A-Za-z0-9_]{1,15})(?!\w)")),
        (
            SignalType.TICKER,
            re.compile(r"\$([A-Z0-9]{2,10}|[\u4e00-\u9fff]{1,6})(?![A-Za-z0-9_])"),
        ),
        (
            SignalType.NUMBER_UNIT,
            re.compile(
                r"(\d+(?:\.\d+)?)\s*(USD|SOL|ALGO|ETH|%|s|min|hrs?|days?)(?!\w)", re.IGNORECASE
            ),
        ),
    ]

    CONTRACT_KEYWORDS = [
        "contract address", "smart contract", "contract", "token address", "mint address", "ca",
        "合約", "合约", "合約地址", "合约地址", "合同地址", "智能合約", "智能合约", "代币地址",
    ]  # fmt: skip

    TICKER_KEYWORDS = [
        "ticker", "symbol", "token symbol", "coin symbol",
        "代號", "代号", "符號", "符号", "代幣符號", "代币符号",
    ]  # fmt: skip

    OFFICIAL_KEYWORDS = [
        "official", "website", "twitter", "telegram", "discord", "link", "links",
        "channel", "community", "socials",
        "官方", "官網", "官网", "推特", "電報", "电报", "社群", "社区", "链接", "連結",
    ]  # fmt: skip

    TECHNICAL_KEYWORDS = [
        "technical", "technology", "how does", "how it works", "architecture", "protocol",
        "consensus", "blockchain", "network", "specs", "specification", "fee", "fees", "gas",
        "tps", "speed", "transaction",
        "技術", "技术", "原理", "架構", "架构", "區塊鏈", "区块链", "手續費", "手续费", "網絡", "网络",
    ]  # fmt: skip

    def __init__(
        self,
        glossary: Glossary | None = None,
        min_dense_weight: float = 0.2,
        max_keyword_weight: float = 0.8,
        base_keyword_weight: float = BASE_KEYWORD_WEIGHT,
    ) -> None:
        """Initialize analyzer.

        Args:
            glossary: Glossary for query expansion; the built-in one if None.
            min_dense_weight: Floor on the dense fusion weight.
            max_keyword_weight: Ceiling on the keyword weight after signal boosts.
            base_keyword_weight: Keyword weight when no intent is detected.
        """
        self.glossary = glossary if glossary is not None else Glossary.default()
        self.min_dense_weight = min_dense_weight
        self.max_keyword_weight = max_keyword_weight
        self.base_keyword_weight = base_keyword_weight

        self._contract = self._keyword_pattern(self.CONTRACT_KEYWORDS)
        self._ticker = self._keyword_pattern(self.TICKER_KEYWORDS)
        self._official = self._keyword_pattern(self.OFFICIAL_KEYWORDS)
        self._technical = self._keyword_pattern(self.TECHNICAL_KEYWORDS)

    def detect_exact_signals(self, query: str) -> list[ExactSignal]:
        """Detect high-precision exact signals.

        Args:
            query: Query text.

        Returns:
            Signals ordered by detector priority, then position.
        """
        signals: list[ExactSignal] = []
        claimed: list[tuple[int, int]] = []

        for signal_type, pattern in self.SIGNAL_PATTERNS:
            for match in pattern.finditer(query):
                start, end = match.span()
                if any(start < c_end and c_start < end for c_start, c_end in claimed):
                    continue
                claimed.append((start, end))

                if signal_type in (SignalType.HANDLE, SignalType.TICKER):
                    value = match.group(1)
                    unit = None
                elif signal_type == SignalType.NUMBER_UNIT:
                    value = match.group(1)
                    unit = match.group(2)
                else:
                    value = match.group(0)
                    unit = None

                signals.append(
                    ExactSignal(type=signal_type, value=value, start=start, end=end, unit=unit)
                )

        return signals

    def classify_intents(self, query: str, signals: list[ExactSignal]) -> list[Intent]:
        """Classify query intents from signals and keyword lists.

        Args:
            query: Query text.
            signals: Exact signals detected in the query.

        Returns:
            Detected intents, highest-priority first. Several may co-occur.
        """
        lowered = query.lower()
        signal_types = {s.type for s in signals}
        intents: list[Intent] = []

        if signal_types & {SignalType.EVM_ADDRESS, SignalType.SOLANA_ADDRESS}:
            intents.append(Intent(type=IntentType.CONTRACT_ADDRESS, confidence=0.95))
        elif self._contract.search(lowered):
            intents.append(Intent(type=IntentType.CONTRACT_ADDRESS, confidence=0.9))

        if SignalType.TICKER in signal_types:
            intents.append(Intent(type=IntentType.TICKER_SYMBOL, confidence=0.9))
        elif self._ticker.search(lowered):
            intents.append(Intent(type=IntentType.TICKER_SYMBOL, confidence=0.8))

        if SignalType.HANDLE in signal_types:
            intents.append(Intent(type=IntentType.OFFICIAL_CHANNEL, confidence=0.85))
        elif self._official.search(lowered):
            intents.append(Intent(type=IntentType.OFFICIAL_CHANNEL, confidence=0.8))

        if SignalType.NUMBER_UNIT in signal_types or self._technical.search(lowered):
            intents.append(Intent(type=IntentType.TECHNICAL_SPECS, confidence=0.7))

        return intents

    def prepare_query(self, query: str) -> QueryAnalysis:
        """Detect signals, expand via glossary, and classify intents.

        Args:
            query: Query as received.

        Returns:
            QueryAnalysis for the retrieval pipeline.
        """
        signals = self.detect_exact_signals(query)
        expanded = self.glossary.expand(query)
        intents = self.classify_intents(query, signals)

        analysis = QueryAnalysis(
            original=query,
            expanded=expanded,
            exact_signals=signals,
            intents=intents,
            needs_keyword_search=bool(signals or intents),
        )
        logger.debug(
            f"Prepared query {query!r}: signals={[s.type.value for s in signals]}, "
            f"intents={[i.type.value for i in intents]}, keyword={analysis.needs_keyword_search}"
        )
        return analysis

    def calculate_dynamic_weights(self, analysis: QueryAnalysis) -> FusionWeights:
        """Compute dense/keyword fusion weights for a query.

        The keyword weight starts from the highest-priority intent's weight,
        gets a capped boost per exact signal, and is bounded by
        ``max_keyword_weight``. The dense weight is then floored at
        ``min_dense_weight`` and the keyword weight recomputed as its complement.

        Args:
            analysis: Prepared query.

        Returns:
            FusionWeights whose components sum to 1.
        """
        keyword = self.base_keyword_weight
        reason = "base_weights"

        intent_types = analysis.intent_types
        for intent in IntentType:
            if intent in intent_types:
                keyword = INTENT_KEYWORD_WEIGHTS[intent.value]
                reason = f"{intent.value}_intent"
                break

        if analysis.exact_signals:
            boost = min(SIGNAL_BOOST_PER_SIGNAL * len(analysis.exact_signals), MAX_SIGNAL_BOOST)
            keyword = min(keyword + boost, self.max_keyword_weight)
            reason += "_with_exact_signals"

        dense = max(1.0 - keyword, self.min_dense_weight)
        keyword = 1.0 - dense

        return FusionWeights(dense=dense, keyword=keyword, reason=reason)

    @staticmethod
    def _keyword_pattern(keywords: list[str]) -> re.Pattern[str]:
        """Match Latin keywords on word boundaries and CJK keywords anywhere."""
        latin = [re.escape(k) for k in keywords if k.isascii()]
        cjk = [re.escape(k) for k in keywords if not k.isascii()]
        alternatives = []
        if latin:
            joined = "|".join(latin)
            alternatives.append(rf"\b(?:{joined})\b")
        if cjk:
            alternatives.append("|".join(cjk))
        return re.compile("|".join(alternatives))
