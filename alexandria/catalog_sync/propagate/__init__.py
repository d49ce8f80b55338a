"""
Propagation of parent renames and deletions to library items.
"""

from .propagator import (
    ConsistencyPropagator,
    PropagationBatchResult,
    PropagationReport,
    item_sort_key,
)

__all__ = [
    "ConsistencyPropagator",
    "PropagationBatchResult",
    "PropagationReport",
    "item_sort_key",
]
