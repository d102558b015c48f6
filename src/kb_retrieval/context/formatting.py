"""Rendering of selected passages and prompts."""

from kb_retrieval.types import ContextFormat, MetaCard, RetrievalResult, SourceRef

SECTION_DELIMITER = "\n\n---\n\n"
TRUNCATION_MARKER = "..."

SYSTEM_PROMPT = """You are a knowledge assistant. Answer questions using the knowledge base information provided with each question.

IMPORTANT RULES:
1. Answer ONLY based on the provided context
2. If the information is not in the context, say "I don't have that information"
3. Be concise and accurate
4. Quote addresses, tickers and links exactly as they appear in the context"""

INSTRUCTION = "Please provide a helpful answer based only on the context above."
INSTRUCTION_WITH_CONVERSATION = (
    "Please provide a helpful answer based on the context above, "
    "taking into account our previous conversation."
)


def format_meta_card(card: MetaCard) -> str:
    """Render a meta card as a ``Technical Details`` block."""
    lines = ["Technical Details:"]
    if card.contract_address:
        lines.append(f"Contract Address: {card.contract_address}")
    if card.ticker_symbol:
        lines.append(f"Ticker Symbol: {card.ticker_symbol}")
    if card.blockchain:
        lines.append(f"Blockchain: {card.blockchain}")
    for channel, link in card.official_channels.items():
        lines.append(f"{channel.replace('_', ' ').title()}: {link}")
    for key, value in card.extra.items():
        if isinstance(value, str | int | float | bool) and value != "":
            lines.append(f"{key.replace('_', ' ').title()}: {value}")
    return "\n".join(lines) if len(lines) > 1 else ""


def format_chunk_text(result: RetrievalResult) -> str:
    """Passage text with its truncation marker and meta card block."""
    text = result.text
    if result.truncated:
        text += TRUNCATION_MARKER
    if result.meta_card is not None:
        card = format_meta_card(result.meta_card)
        if card:
            text = f"{text}\n\n{card}"
    return text


def format_citation(result: RetrievalResult) -> str:
    label = result.metadata.title or result.metadata.source
    return f"[Source: {label}]" if label else ""


def format_context(
    chunks: list[RetrievalResult],
    style: ContextFormat = ContextFormat.STRUCTURED,
    preserve_citations: bool = True,
) -> str:
    """Render selected passages in the requested style.

    Args:
        chunks: Selected passages in output order.
        style: Structured sections, a conversational bullet list or bare text.
        preserve_citations: Prefix structured sections with their source.

    Returns:
        The rendered context, empty when there are no passages.
    """
    if not chunks:
        return ""

    if style == ContextFormat.CONVERSATIONAL:
        lines = ["Based on my knowledge:"]
        lines.extend(f"• {format_chunk_text(c)}" for c in chunks)
        return "\n".join(lines)

    if style == ContextFormat.MINIMAL:
        return " ".join(format_chunk_text(c) for c in chunks)

    sections = []
    for chunk in chunks:
        citation = format_citation(chunk) if preserve_citations else ""
        body = format_chunk_text(chunk)
        sections.append(f"{citation}\n{body}" if citation else body)
    return SECTION_DELIMITER.join(sections)


def build_user_prompt(context: str, query: str, conversation: str | None = None) -> str:
    sections = []
    if conversation:
        sections.append(f"Conversation Context:\n{conversation}")
    sections.append(f"Knowledge Base Information:\n{context}")
    sections.append(f"Current Question: {query}")
    sections.append(INSTRUCTION_WITH_CONVERSATION if conversation else INSTRUCTION)
    return "\n\n".join(sections)


def extract_sources(chunks: list[RetrievalResult]) -> list[SourceRef]:
    """Group the cited chunk ids by source, in first-seen order."""
    sources: dict[str, SourceRef] = {}
    for chunk in chunks:
        source = chunk.metadata.source or "unknown"
        if source not in sources:
            sources[source] = SourceRef(source=source, title=chunk.metadata.title or source)
        sources[source].chunk_ids.append(str(chunk.id))
    return list(sources.values())
