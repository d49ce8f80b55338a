"""
Primary store access for the catalog table.

The catalog table itself is owned by the API layer. This package only needs
a narrow port onto it:
- Listing the items of a library through the children index
- Chunked, conditional point updates (PartiQL batch statements)
- Batch reads by table key (search result resolution)
- Share grant lookups and full scans (reindexing)

Implementations:
    - DynamoPrimaryStore: aiobotocore DynamoDB client
    - InMemoryPrimaryStore: dictionary-backed, for tests and local runs
"""

from .base import (
    BatchWriteResult,
    ItemPage,
    PrimaryStore,
    StoreError,
    UpdateStatement,
)
from .dynamodb import DynamoPrimaryStore
from .memory import InMemoryPrimaryStore

__all__ = [
    # Protocol and types
    "PrimaryStore",
    "UpdateStatement",
    "BatchWriteResult",
    "ItemPage",
    "StoreError",
    # Implementations
    "DynamoPrimaryStore",
    "InMemoryPrimaryStore",
]
