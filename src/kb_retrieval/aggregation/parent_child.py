"""Parent/child aggregation of retrieval hits.

Retrieval works on small fragments so that matches are precise, but answers
need more context than one fragment carries. This module groups hits that were
cut from the same parent document, scores each group, and rebuilds a larger
block of text per group:
- Parent identity resolution (explicit parent, knowledge-base document, section)
- Group scoring with meta card and multi-hit bonuses
- Contiguous merge with sentence overlap removal, or concatenation of the
  best children when the contiguous block falls outside the token range
"""

import logging
import re
from dataclasses import dataclass, field

import numpy as np

from kb_retrieval.types import (
    BuildMethod,
    ChildRef,
    ChunkMetadata,
    MetaCard,
    ParentBlock,
    QueryAnalysis,
    RetrievalResult,
)
from kb_retrieval.utils.metrics import record_degradation
from kb_retrieval.utils.tokens import estimate_tokens

logger = logging.getLogger(__name__)

CONCATENATION_DELIMITER = "\n\n---\n\n"
MAX_OVERLAP_SENTENCES = 3

SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")
SCORE_AGGREGATIONS = ("max", "mean", "max_plus_mean")
KB_ROOT_SEGMENTS = ("pwa", "kb")
FILE_EXTENSION = re.compile(r"\.[A-Za-z0-9]+$")


@dataclass
class ScoredGroup:
    """Children sharing a parent, with the group's scores."""

    parent_id: str
    children: list[RetrievalResult]
    child_scores: list[float] = field(default_factory=list)
    base_score: float = 0.0
    bonus: float = 0.0

    @property
    def aggregated_score(self) -> float:
        return self.base_score + self.bonus


class ParentChildAggregator:
    """Groups child hits by parent and rebuilds parent-sized context blocks.

    Aggregated scores are the sum of the base aggregate and the multi-hit
    bonus and are never clamped, so groups with different child scores keep
    different aggregated scores.

    Attributes:
        max_parent_tokens: Upper bound on a rebuilt block.
        min_parent_tokens: Lower bound for accepting a contiguous block.
        multi_hit_bonus: Bonus per child beyond the first.
        max_multi_hit_bonus: Cap on the multi-hit bonus.
        score_aggregation: ``max``, ``mean`` or ``max_plus_mean``.
    """

    def __init__(
        self,
        max_parent_tokens: int = 1200,
        min_parent_tokens: int = 600,
        multi_hit_bonus: float = 0.1,
        max_multi_hit_bonus: float = 0.3,
        score_aggregation: str = "max_plus_mean",
        meta_card_bonus: float = 0.05,
        meta_card_intent_bonus: float = 0.1,
        max_meta_card_bonus: float = 0.15,
    ) -> None:
        """Initialize aggregator.

        Args:
            max_parent_tokens: Upper bound on a rebuilt block.
            min_parent_tokens: Lower bound for accepting a contiguous block.
            multi_hit_bonus: Bonus per child beyond the first.
            max_multi_hit_bonus: Cap on the multi-hit bonus.
            score_aggregation: How child scores combine into a base score.
            meta_card_bonus: Bonus for a child carrying a meta card.
            meta_card_intent_bonus: Extra bonus when the card answers the query intent.
            max_meta_card_bonus: Cap on the per-child meta card bonus.

        Raises:
            ValueError: If ``score_aggregation`` is unknown.
        """
        if score_aggregation not in SCORE_AGGREGATIONS:
            raise ValueError(f"Unknown score aggregation: {score_aggregation}")
        self.max_parent_tokens = max_parent_tokens
        self.min_parent_tokens = min_parent_tokens
        self.multi_hit_bonus = multi_hit_bonus
        self.max_multi_hit_bonus = max_multi_hit_bonus
        self.score_aggregation = score_aggregation
        self.meta_card_bonus = meta_card_bonus
        self.meta_card_intent_bonus = meta_card_intent_bonus
        self.max_meta_card_bonus = max_meta_card_bonus

    def aggregate_to_parents(
        self,
        results: list[RetrievalResult],
        top_k: int = 3,
        analysis: QueryAnalysis | None = None,
    ) -> list[ParentBlock]:
        """Group hits by parent and build one block per top-scoring group.

        Args:
            results: Child-level retrieval results.
            top_k: Number of parent blocks to build.
            analysis: Prepared query, used for the meta card intent bonus.

        Returns:
            Parent blocks sorted by aggregated score descending.
        """
        if not results or top_k <= 0:
            return []

        groups = self.group_by_parent(results)
        scored = self.score_parent_groups(groups, analysis)
        blocks = [self.build_parent_block(group) for group in scored[:top_k]]

        logger.debug(
            f"Aggregated {len(results)} hits into {len(groups)} parents, "
            f"built {len(blocks)} blocks"
        )
        return blocks

    @staticmethod
    def get_parent_id(result: RetrievalResult) -> str:
        """Resolve the parent identity of a hit.

        Resolution order: explicit ``parent_chunk``; the document path of a
        knowledge-base style source; ``source:section``; the hit's own id,
        which makes it a group of one.
        """
        metadata = result.metadata
        if metadata.parent_chunk:
            return metadata.parent_chunk

        source = metadata.source or ""
        document = kb_document_path(source)
        if document:
            return document

        if source and metadata.section:
            return f"{source}:{metadata.section}"

        return str(result.id)

    def group_by_parent(self, results: list[RetrievalResult]) -> dict[str, list[RetrievalResult]]:
        groups: dict[str, list[RetrievalResult]] = {}
        for result in results:
            groups.setdefault(self.get_parent_id(result), []).append(result)
        return groups

    def score_parent_groups(
        self,
        groups: dict[str, list[RetrievalResult]],
        analysis: QueryAnalysis | None = None,
    ) -> list[ScoredGroup]:
        """Score each group and sort by aggregated score descending.

        Args:
            groups: Children keyed by parent id.
            analysis: Prepared query, used for the meta card intent bonus.

        Returns:
            Scored groups, best first.
        """
        scored: list[ScoredGroup] = []
        for parent_id, children in groups.items():
            child_scores = [
                child.effective_score() + self.meta_card_score(child.meta_card, analysis)
                for child in children
            ]
            bonus = min((len(children) - 1) * self.multi_hit_bonus, self.max_multi_hit_bonus)
            scored.append(
                ScoredGroup(
                    parent_id=parent_id,
                    children=children,
                    child_scores=child_scores,
                    base_score=self._aggregate(child_scores),
                    bonus=bonus,
                )
            )

        scored.sort(key=lambda g: g.aggregated_score, reverse=True)
        return scored

    def meta_card_score(self, card: MetaCard | None, analysis: QueryAnalysis | None) -> float:
        """Bonus for a child with a meta card, larger when it answers the intent."""
        if card is None:
            return 0.0
        bonus = self.meta_card_bonus
        if analysis is not None and any(card.has_field_for(i) for i in analysis.intent_types):
            bonus += self.meta_card_intent_bonus
        return min(bonus, self.max_meta_card_bonus)

    def build_parent_block(self, group: ScoredGroup) -> ParentBlock:
        """Rebuild a group's text; a failing build falls back to the largest child."""
        try:
            return self._build_block(group)
        except Exception as e:
            logger.warning(f"Failed to build parent block {group.parent_id}: {e}")
            record_degradation("aggregator", "build_error")
            largest = max(group.children, key=lambda c: estimate_tokens(c.text))
            return self._make_block(group, largest.text, [largest], BuildMethod.LARGEST_CHILD)

    def _build_block(self, group: ScoredGroup) -> ParentBlock:
        ordered = self.sort_children(group.children)
        text, used = self.build_contiguous_text(ordered)
        tokens = estimate_tokens(text)
        if self.min_parent_tokens <= tokens <= self.max_parent_tokens:
            return self._make_block(group, text, used, BuildMethod.CONTIGUOUS)

        text, used = self.build_concatenated_text(group.children)
        return self._make_block(group, text, used, BuildMethod.CONCATENATED)

    @staticmethod
    def sort_children(children: list[RetrievalResult]) -> list[RetrievalResult]:
        """Order children by ``chunk_part`` when present, otherwise by score.

        Children with a position come first in position order; the rest
        follow by score.
        """
        return sorted(
            children,
            key=lambda c: (
                c.metadata.chunk_part is None,
                c.metadata.chunk_part or 0,
                -c.effective_score(),
            ),
        )

    def build_contiguous_text(
        self, ordered: list[RetrievalResult]
    ) -> tuple[str, list[RetrievalResult]]:
        """Merge children in order, dropping sentences repeated across boundaries.

        Stops once the running token estimate exceeds ``max_parent_tokens``.
        """
        parts: list[str] = []
        used: list[RetrievalResult] = []
        total = 0
        previous: str | None = None

        for child in ordered:
            text = child.text if previous is None else remove_overlap(previous, child.text)
            previous = child.text
            if not text.strip():
                used.append(child)
                continue
            parts.append(text.strip())
            used.append(child)
            total += estimate_tokens(text)
            if total > self.max_parent_tokens:
                break

        return " ".join(parts), used

    def build_concatenated_text(
        self, children: list[RetrievalResult]
    ) -> tuple[str, list[RetrievalResult]]:
        """Join the highest-scoring children that fit in ``max_parent_tokens``.

        The top child is always kept, even when it alone exceeds the budget.
        """
        by_score = sorted(children, key=lambda c: c.effective_score(), reverse=True)
        selected: list[RetrievalResult] = []
        total = 0
        for child in by_score:
            tokens = estimate_tokens(child.text)
            if total + tokens > self.max_parent_tokens:
                break
            selected.append(child)
            total += tokens

        if not selected:
            selected = by_score[:1]
        return CONCATENATION_DELIMITER.join(c.text for c in selected), selected

    def _make_block(
        self,
        group: ScoredGroup,
        text: str,
        used: list[RetrievalResult],
        method: BuildMethod,
    ) -> ParentBlock:
        children = [
            ChildRef(
                id=child.id,
                score=child.effective_score(),
                position=child.metadata.chunk_part,
                tokens=estimate_tokens(child.text),
            )
            for child in used
        ]
        meta_card = next((c.meta_card for c in group.children if c.meta_card is not None), None)
        return ParentBlock(
            parent_id=group.parent_id,
            text=text,
            tokens=estimate_tokens(text),
            child_count=len(group.children),
            base_score=group.base_score,
            bonus=group.bonus,
            aggregated_score=group.aggregated_score,
            metadata=merge_child_metadata(group.children),
            children=children,
            build_method=method,
            meta_card=meta_card,
            embedding=mean_embedding(used),
        )

    def _aggregate(self, scores: list[float]) -> float:
        if not scores:
            return 0.0
        top = max(scores)
        mean = sum(scores) / len(scores)
        if self.score_aggregation == "max":
            return top
        if self.score_aggregation == "mean":
            return mean
        return 0.7 * top + 0.3 * mean


def kb_document_path(source: str) -> str | None:
    """Document key of a knowledge-base file path, or None for other sources.

    Root folders (``pwa/``, ``kb/``) and the file extension are dropped, so
    ``pwa/kb/about/team.json`` becomes ``about/team``. Every file is its own
    document; chunks from sibling files never share a parent.
    """
    if "/" not in source or "://" in source:
        return None
    segments = [s for s in source.strip("/").split("/") if s and s != "."]
    if len(segments) < 2:
        return None
    while len(segments) > 1 and segments[0].lower() in KB_ROOT_SEGMENTS:
        segments.pop(0)
    segments[-1] = FILE_EXTENSION.sub("", segments[-1]) or segments[-1]
    return "/".join(segments)


def mean_embedding(children: list[RetrievalResult]) -> list[float] | None:
    """Average the children's embeddings, ignoring vectors of a different length.

    Returns None when no child carries an embedding.
    """
    vectors = [c.embedding for c in children if c.embedding]
    if not vectors:
        return None
    dimension = len(vectors[0])
    matrix = np.array([v for v in vectors if len(v) == dimension], dtype=np.float64)
    return matrix.mean(axis=0).tolist()


def split_sentences(text: str) -> list[str]:
    return [s for s in SENTENCE_BOUNDARY.split(text.strip()) if s]


def remove_overlap(previous: str, current: str) -> str:
    """Drop the leading sentences of ``current`` that repeat the end of ``previous``.

    Up to three trailing sentences of ``previous`` are compared, case
    insensitively, against the same number of leading sentences of ``current``;
    the longest matching run is removed.
    """
    prev_sentences = [s.strip().lower() for s in split_sentences(previous)]
    curr_sentences = split_sentences(current)
    curr_lowered = [s.strip().lower() for s in curr_sentences]

    longest = min(MAX_OVERLAP_SENTENCES, len(prev_sentences), len(curr_sentences))
    for size in range(longest, 0, -1):
        if prev_sentences[-size:] == curr_lowered[:size]:
            return " ".join(curr_sentences[size:])
    return current


def merge_child_metadata(children: list[RetrievalResult]) -> ChunkMetadata:
    """First child's metadata with tags and sources unioned across children."""
    first = children[0].metadata
    tags = list(dict.fromkeys(tag for child in children for tag in child.metadata.tags))
    sources = list(
        dict.fromkeys(child.metadata.source for child in children if child.metadata.source)
    )
    extra = {**first.extra, "sources": sources, "child_count": len(children)}
    return first.model_copy(update={"tags": tags, "extra": extra})
