"""Metadata filters evaluated by the vector store before truncation."""

from typing import Any

from pydantic import BaseModel, Field

from kb_retrieval.types import ChunkMetadata


class MetadataFilter(BaseModel):
    """Predicate over chunk metadata.

    All populated conditions must hold. ``any_of`` holds when at least one of its
    sub-filters matches.

    Attributes:
        tags: Chunk must carry at least one of these tags.
        equals: Field must equal the given value.
        not_equals: Field must differ from the given value.
        in_set: Field value must be one of the given values.
        any_of: Sub-filters combined with OR.
    """

    tags: list[str] = Field(default_factory=list)
    equals: dict[str, Any] = Field(default_factory=dict)
    not_equals: dict[str, Any] = Field(default_factory=dict)
    in_set: dict[str, list[Any]] = Field(default_factory=dict)
    any_of: list["MetadataFilter"] = Field(default_factory=list)

    def matches(self, metadata: ChunkMetadata) -> bool:
        if self.any_of and not any(sub.matches(metadata) for sub in self.any_of):
            return False

        if self.tags and not set(self.tags) & set(metadata.tags):
            return False

        for key, expected in self.equals.items():
            if metadata.get(key) != expected:
                return False

        for key, excluded in self.not_equals.items():
            if metadata.get(key) == excluded:
                return False

        for key, allowed in self.in_set.items():
            if metadata.get(key) not in allowed:
                return False

        return True
