"""Token-budgeted context assembly.

Turns the ranked passages of a retrieval call into a context string and prompt
for a language model:
- Cross-source deduplication (see ``kb_retrieval.context.dedup``)
- Greedy selection within the knowledge token allowance, truncating the last
  passage at a sentence or word boundary when enough budget remains
- Rendering in one of three styles, with meta card blocks and citations
- Prompt assembly with optional conversation context
"""

import logging
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from kb_retrieval.context.dedup import SourceDeduplicator
from kb_retrieval.context.formatting import (
    SYSTEM_PROMPT,
    build_user_prompt,
    extract_sources,
    format_context,
)
from kb_retrieval.types import (
    BuiltContext,
    ContextFormat,
    ContextMetadata,
    PromptSections,
    QueryAnalysis,
    RetrievalResult,
)
from kb_retrieval.utils.metrics import record_context, record_degradation
from kb_retrieval.utils.tokens import estimate_tokens, truncate_to_tokens

logger = logging.getLogger(__name__)

TRUNCATION_MARGIN_TOKENS = 20


@dataclass
class ConversationContext:
    """Formatted conversation history and its token count."""

    text: str
    tokens: int


@runtime_checkable
class ConversationContextProvider(Protocol):
    """Supplies conversation history relevant to a query."""

    async def build_context(self, query: str, max_tokens: int) -> ConversationContext: ...


@dataclass
class TokenBudgets:
    """Token allowances reserved for each prompt section."""

    system_prompt: int = 150
    query: int = 100
    knowledge: int = 600
    conversation: int = 250
    buffer: int = 50
    min_knowledge: int = 300


class ContextBuilder:
    """Builds a deduplicated, token-budgeted context from ranked passages.

    Attributes:
        max_tokens: Budget for the full prompt; exceeding it is logged.
        max_chunks: Maximum passages in the context.
        style: Default output style.
        preserve_citations: Prefix structured sections with their source.
        budgets: Per-section token allowances.
        deduplicator: Cross-source deduplication stage.
        conversation_provider: Optional conversation history source.
    """

    def __init__(
        self,
        max_tokens: int = 800,
        max_chunks: int = 5,
        style: ContextFormat = ContextFormat.STRUCTURED,
        preserve_citations: bool = True,
        budgets: TokenBudgets | None = None,
        min_truncated_tokens: int = 100,
        deduplicator: SourceDeduplicator | None = None,
        conversation_provider: ConversationContextProvider | None = None,
    ) -> None:
        """Initialize context builder.

        Args:
            max_tokens: Budget for the full prompt.
            max_chunks: Maximum passages in the context.
            style: Default output style.
            preserve_citations: Prefix structured sections with their source.
            budgets: Per-section token allowances; defaults if None.
            min_truncated_tokens: Remaining budget required to truncate a passage in.
            deduplicator: Deduplication stage; hash-based defaults if None.
            conversation_provider: Optional conversation history source.
        """
        self.max_tokens = max_tokens
        self.max_chunks = max_chunks
        self.style = ContextFormat(style)
        self.preserve_citations = preserve_citations
        self.budgets = budgets or TokenBudgets()
        self.min_truncated_tokens = min_truncated_tokens
        self.deduplicator = deduplicator or SourceDeduplicator()
        self.conversation_provider = conversation_provider

    async def build_context(
        self,
        query: str,
        results: list[RetrievalResult],
        analysis: QueryAnalysis | None = None,
        style: ContextFormat | None = None,
        conversation: ConversationContext | None = None,
    ) -> BuiltContext:
        """Build the context and prompt for a query.

        Args:
            query: The user's question.
            results: Ranked passages from retrieval.
            analysis: Prepared query, used for deduplication tie-breaks.
            style: Output style; the builder's default if None.
            conversation: Conversation history; fetched from the provider if None.

        Returns:
            Context string, prompt sections, token accounting and the passages used.
        """
        style = ContextFormat(style) if style is not None else self.style
        logger.debug(f"Building context from {len(results)} passages")

        if conversation is None:
            conversation = await self._fetch_conversation(query)
        conversation_tokens = conversation.tokens if conversation else 0

        deduplicated = await self.deduplicator.deduplicate(results, query, analysis)
        budget = max(self.budgets.knowledge - conversation_tokens, self.budgets.min_knowledge)
        selected = self.select_chunks(deduplicated, budget)

        context = format_context(selected, style, self.preserve_citations)
        prompt = self.build_prompt(context, query, conversation.text if conversation else None)

        total_tokens = estimate_tokens(prompt.full)
        if total_tokens > self.max_tokens:
            logger.warning(f"Context exceeds token limit: {total_tokens} > {self.max_tokens}")

        record_context(len(selected), total_tokens)
        return BuiltContext(
            context=context,
            conversation=conversation.text if conversation else None,
            prompt_sections=prompt,
            metadata=ContextMetadata(
                chunks_used=len(selected),
                total_chunks=len(results),
                estimated_tokens=total_tokens,
                sources=extract_sources(selected),
                truncated_chunks=sum(1 for c in selected if c.truncated),
                conversation_tokens=conversation_tokens,
                format=style,
            ),
            chunks=selected,
        )

    def select_chunks(self, chunks: list[RetrievalResult], budget: int) -> list[RetrievalResult]:
        """Greedily select passages by score within a token budget.

        A passage that would overflow the budget is truncated into the
        remaining space when more than ``min_truncated_tokens`` remain, which
        ends selection; otherwise it is skipped.

        Args:
            chunks: Candidate passages.
            budget: Knowledge token allowance.

        Returns:
            Selected passages, at most ``max_chunks``.
        """
        selected: list[RetrievalResult] = []
        used = 0

        for chunk in sorted(chunks, key=lambda c: c.effective_score(), reverse=True):
            tokens = estimate_tokens(chunk.text)
            if used + tokens > budget:
                remaining = budget - used
                if remaining > self.min_truncated_tokens:
                    text = truncate_to_tokens(chunk.text, remaining - TRUNCATION_MARGIN_TOKENS)
                    selected.append(chunk.model_copy(update={"text": text, "truncated": True}))
                    break
                continue

            selected.append(chunk)
            used += tokens
            if len(selected) >= self.max_chunks:
                break

        return selected

    def build_prompt(
        self, context: str, query: str, conversation: str | None = None
    ) -> PromptSections:
        user = build_user_prompt(context, query, conversation)
        return PromptSections(system=SYSTEM_PROMPT, user=user, full=f"{SYSTEM_PROMPT}\n\n{user}")

    async def _fetch_conversation(self, query: str) -> ConversationContext | None:
        if self.conversation_provider is None:
            return None
        try:
            conversation = await self.conversation_provider.build_context(
                query, self.budgets.conversation
            )
        except Exception as e:
            logger.warning(f"Conversation context unavailable ({e}), continuing without it")
            record_degradation("conversation", "provider_error")
            return None
        if conversation is not None and conversation.text:
            logger.debug(f"Added conversation context: {conversation.tokens} tokens")
            return conversation
        return None
