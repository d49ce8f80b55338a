"""
Base protocol and types for primary store access.

Invariants:
    - Updates are point updates addressed by the full table key
    - An update never creates an item (the key must already exist)
    - A failed batch write raises StoreError; per-statement failures are counted

How to change safely:
    - Protocol changes require updating every implementation
    - Keep UpdateStatement free of backend syntax; render it per backend
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Mapping, Protocol, Sequence, runtime_checkable

from ..model import ShareGrant


class StoreError(Exception):
    """A primary store operation failed."""

    pass


@dataclass(frozen=True)
class UpdateStatement:
    """A conditional point update of one item.

    Attributes:
        pk: Partition key of the target item
        sk: Sort key of the target item
        set: Attributes to set, in order
        remove: Attributes to remove
    """

    pk: str
    sk: str
    set: Mapping[str, Any] = field(default_factory=dict)
    remove: tuple[str, ...] = ()

    def to_partiql(self, table_name: str) -> tuple[str, list[Any]]:
        """Render as a PartiQL UPDATE and its positional parameters.

        The WHERE clause on the full key makes the update fail instead of
        creating an item when the target no longer exists.
        """
        clauses = [f'SET "{name}"=?' for name in self.set]
        clauses.extend(f'REMOVE "{name}"' for name in self.remove)
        statement = f'UPDATE "{table_name}" {" ".join(clauses)} WHERE "PK"=? AND "SK"=?'
        return statement, [*self.set.values(), self.pk, self.sk]


@dataclass
class BatchWriteResult:
    """Outcome of one batch of update statements."""

    succeeded: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class ItemPage:
    """One page of library items.

    Attributes:
        items: Items as plain attribute maps
        next_cursor: Opaque cursor for the next page, None on the last page
    """

    items: list[dict[str, Any]]
    next_cursor: str | None = None


@runtime_checkable
class PrimaryStore(Protocol):
    """Narrow port onto the catalog table."""

    @abstractmethod
    def query_children(
        self,
        owner_id: str,
        library_id: str,
        collection_id: str | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield every item of a library, across all pages.

        Args:
            owner_id: Library owner
            library_id: Library identifier
            collection_id: Restrict to the members of one collection

        Raises:
            StoreError: If a page cannot be read
        """
        ...

    @abstractmethod
    async def execute_batch(self, statements: Sequence[UpdateStatement]) -> BatchWriteResult:
        """Execute up to 25 update statements as one batch.

        Raises:
            StoreError: If the batch request itself fails
        """
        ...

    @abstractmethod
    async def set_sort_key(self, pk: str, sk: str, gsi1sk: str) -> None:
        """Rewrite the children-index sort key of one item."""
        ...

    @abstractmethod
    async def batch_get_items(self, keys: Sequence[tuple[str, str]]) -> list[dict[str, Any]]:
        """Read items by (PK, SK); missing items are absent from the result."""
        ...

    @abstractmethod
    async def query_share_grants(self, grantee_id: str) -> list[ShareGrant]:
        """List the libraries shared to a user."""
        ...

    @abstractmethod
    async def list_library_items(
        self,
        owner_id: str,
        library_id: str,
        cursor: str | None = None,
        page_size: int = 50,
    ) -> ItemPage:
        """Read one page of a library's items.

        Raises:
            InvalidCursor: If the cursor cannot be decoded
        """
        ...

    @abstractmethod
    def scan_entities(self) -> AsyncIterator[dict[str, Any]]:
        """Yield every item of the table (reindexing)."""
        ...
