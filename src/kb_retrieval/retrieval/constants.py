"""Constants for query analysis and fusion.

Tunable values (top-k, thresholds, weight bounds) live in ``Settings``; the
values here are the fixed parts of the weighting policy.
"""

BASE_KEYWORD_WEIGHT = 0.3
"""Keyword weight when no intent is detected (dense gets the remainder)."""

INTENT_KEYWORD_WEIGHTS = {
    "contract_address": 0.8,
    "ticker_symbol": 0.75,
    "official_channel": 0.65,
    "technical_specs": 0.45,
}
"""Keyword weight per intent, checked in this priority order.

Contract addresses and tickers are literal strings that lexical matching finds
reliably; technical questions are phrased freely and lean on dense retrieval.
"""

SIGNAL_BOOST_PER_SIGNAL = 0.1
MAX_SIGNAL_BOOST = 0.2
"""Keyword weight boost per detected exact signal, and its cap."""

INTEGRATION_INTENTS = frozenset({"contract_address", "official_channel"})
"""Intents that route to integration/support content."""

LIVE_INTEGRATION_STATUSES = frozenset({"beta", "live"})
"""Integration statuses allowed for integration-support queries."""

WEIGHT_EPSILON = 1e-9
