"""Parent/child aggregation of retrieval hits."""

from kb_retrieval.aggregation.parent_child import (
    CONCATENATION_DELIMITER,
    ParentChildAggregator,
    ScoredGroup,
    remove_overlap,
)

__all__ = [
    "CONCATENATION_DELIMITER",
    "ParentChildAggregator",
    "ScoredGroup",
    "remove_overlap",
]
