"""
Consistency propagator for cached parent names.

Library items cache the name of their library (LibraryName) and of their
collection (CollectionName), and the collection name is part of their
children-index sort key. When a parent is renamed or a collection deleted,
every child must be rewritten.

Flow for one rename:
    1. Fast exit when the cached name did not change
    2. Repair the parent's own GSI1SK if the API left it stale
    3. Query every child through GSI1, across all pages
    4. One point update per child (cached name + recomputed GSI1SK)
    5. Execute in chunks of 25, concurrently, each chunk independently

Invariants:
    - A chunk failure never stops the other chunks of the same rename
    - Failures are logged and reported, never raised
    - Updates only target existing items (WHERE on the full key)
    - No retry inside the propagator; redelivery repairs what was missed

How to change safely:
    - Keep updates limited to the fields derived from the parent
    - A new cached parent attribute needs its own MODIFY route
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from .. import keys
from ..config import MAX_BATCH_STATEMENTS
from ..dispatch import Dispatcher, RoutingTable
from ..model import (
    ChangeEvent,
    Collection,
    EntityKind,
    Library,
    LibraryItem,
    MalformedRecordError,
    Operation,
)
from ..store import PrimaryStore, StoreError, UpdateStatement

logger = logging.getLogger(__name__)


@dataclass
class PropagationReport:
    """Outcome of one propagation.

    Attributes:
        parent_kind: LIBRARY or COLLECTION
        parent_id: Renamed or deleted parent
        statements: Update statements emitted
        chunks: Batches the statements were split into
        failed_chunks: Batches whose request failed as a whole
        failed_statements: Statements that did not apply (including failed chunks)
        errors: Error messages, one per failure
    """

    parent_kind: EntityKind
    parent_id: str
    statements: int = 0
    chunks: int = 0
    failed_chunks: int = 0
    failed_statements: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        """True if every child received its update."""
        return self.failed_statements == 0


@dataclass
class PropagationBatchResult:
    """Outcome of one batch of stream records."""

    processed: int = 0
    reports: list[PropagationReport] = field(default_factory=list)

    @property
    def failed_statements(self) -> int:
        return sum(r.failed_statements for r in self.reports)


def chunked(statements: Sequence[UpdateStatement], size: int) -> list[list[UpdateStatement]]:
    return [list(statements[i : i + size]) for i in range(0, len(statements), size)]


def item_sort_key(item: LibraryItem, collection_name: str | None = None) -> str:
    """GSI1SK of an item, optionally with a new collection name."""
    if item.collection_id is None:
        return keys.child_sort_key(item.title)
    return keys.child_sort_key(item.title, collection_name or item.collection_name, item.order)


class ConsistencyPropagator:
    """Rewrites cached parent data on library items.

    Attributes:
        store: Primary store holding parents and children
        chunk_size: Statements per batch write (at most 25)
        max_concurrent_chunks: Batches in flight at the same time

    Example:
        >>> propagator = ConsistencyPropagator(store)
        >>> result = await propagator.process_batch(event["Records"])
        >>> result.failed_statements
        0
    """

    def __init__(
        self,
        store: PrimaryStore,
        chunk_size: int = MAX_BATCH_STATEMENTS,
        max_concurrent_chunks: int = 4,
    ) -> None:
        """Initialize the propagator.

        Args:
            store: PrimaryStore implementation
            chunk_size: Statements per batch write
            max_concurrent_chunks: Concurrency limit for batch writes

        Raises:
            ValueError: If chunk_size is outside [1, 25]
        """
        if not 1 <= chunk_size <= MAX_BATCH_STATEMENTS:
            raise ValueError(f"chunk_size must be between 1 and {MAX_BATCH_STATEMENTS}")

        self.store = store
        self.chunk_size = chunk_size
        self.max_concurrent_chunks = max(1, max_concurrent_chunks)
        self.dispatcher = Dispatcher(self.routes(), name="propagator")

    def routes(self) -> RoutingTable:
        """Routing table of the propagator."""
        return {
            (Operation.MODIFY, EntityKind.LIBRARY): self.on_library_modified,
            (Operation.MODIFY, EntityKind.COLLECTION): self.on_collection_modified,
            (Operation.REMOVE, EntityKind.COLLECTION): self.on_collection_removed,
        }

    async def process_batch(self, records: Iterable[Mapping[str, Any]]) -> PropagationBatchResult:
        """Propagate every record of a stream batch, in order."""
        result = PropagationBatchResult()
        for record in records:
            result.processed += 1
            resolved = self.dispatcher.resolve(record)
            if resolved is None:
                continue
            event, handler = resolved
            report = await handler(event)
            if report is not None:
                result.reports.append(report)
        return result

    async def on_library_modified(self, event: ChangeEvent) -> PropagationReport | None:
        """Propagate a library rename to LibraryName on every item."""
        try:
            old = Library.from_image(event.old_image or {})
            new = Library.from_image(event.new_image or {})
        except MalformedRecordError as e:
            logger.warning(f"Skipping library update: {e}")
            return None

        if old.name == new.name:
            return None

        logger.info(
            "Library renamed, updating items",
            extra={"library_id": new.id, "owner_id": new.owner_id},
        )
        await self._repair_parent_sort_key(new.pk, new.sk, new.gsi1sk, keys.library_gsi1sk(new.name))

        children = await self._collect_children(new.owner_id, new.id)
        if children is None:
            return None

        statements = []
        for item in children:
            sort_key = self._sort_key_or_none(item)
            if sort_key is None:
                continue
            statements.append(
                UpdateStatement(
                    pk=item.pk,
                    sk=item.sk,
                    set={"LibraryName": new.name, "GSI1SK": sort_key},
                )
            )

        return await self._execute(EntityKind.LIBRARY, new.id, statements)

    async def on_collection_modified(self, event: ChangeEvent) -> PropagationReport | None:
        """Propagate a collection rename to CollectionName and GSI1SK of its members."""
        try:
            old = Collection.from_image(event.old_image or {})
            new = Collection.from_image(event.new_image or {})
        except MalformedRecordError as e:
            logger.warning(f"Skipping collection update: {e}")
            return None

        if old.name == new.name:
            return None

        logger.info(
            "Collection renamed, updating items",
            extra={"collection_id": new.id, "library_id": new.library_id},
        )
        await self._repair_parent_sort_key(
            new.pk, new.sk, new.gsi1sk, keys.collection_gsi1sk(new.name)
        )

        children = await self._collect_children(new.owner_id, new.library_id, new.id)
        if children is None:
            return None

        statements = []
        for item in children:
            sort_key = self._sort_key_or_none(item, new.name)
            if sort_key is None:
                continue
            statements.append(
                UpdateStatement(
                    pk=item.pk,
                    sk=item.sk,
                    set={"CollectionName": new.name, "GSI1SK": sort_key},
                )
            )

        return await self._execute(EntityKind.COLLECTION, new.id, statements)

    async def on_collection_removed(self, event: ChangeEvent) -> PropagationReport | None:
        """Detach the members of a deleted collection."""
        try:
            collection = Collection.from_image(event.old_image or {})
        except MalformedRecordError as e:
            logger.warning(f"Skipping collection removal: {e}")
            return None

        logger.info(
            "Collection deleted, orphaning items",
            extra={"collection_id": collection.id, "library_id": collection.library_id},
        )

        children = await self._collect_children(
            collection.owner_id, collection.library_id, collection.id
        )
        if children is None:
            return None

        statements = [
            UpdateStatement(
                pk=item.pk,
                sk=item.sk,
                set={"GSI1SK": keys.child_sort_key(item.title)},
                remove=("CollectionId", "CollectionName", "Order"),
            )
            for item in children
        ]
        return await self._execute(EntityKind.COLLECTION, collection.id, statements)

    async def _repair_parent_sort_key(
        self,
        pk: str,
        sk: str,
        current: str | None,
        expected: str,
    ) -> None:
        if current == expected:
            return

        logger.warning(
            "Parent GSI1SK not updated by the API, repairing",
            extra={"pk": pk, "sk": sk},
        )
        try:
            await self.store.set_sort_key(pk, sk, expected)
        except StoreError as e:
            logger.error(f"Failed to repair parent GSI1SK: {e}", extra={"pk": pk, "sk": sk})

    async def _collect_children(
        self,
        owner_id: str,
        library_id: str,
        collection_id: str | None = None,
    ) -> list[LibraryItem] | None:
        children: list[LibraryItem] = []
        try:
            async for image in self.store.query_children(owner_id, library_id, collection_id):
                try:
                    children.append(LibraryItem.from_image(image))
                except MalformedRecordError as e:
                    logger.warning(
                        f"Skipping undecodable library item: {e}",
                        extra={"library_id": library_id},
                    )
        except StoreError as e:
            logger.error(
                f"Failed to query library items: {e}",
                extra={"library_id": library_id, "collection_id": collection_id},
            )
            return None
        return children

    def _sort_key_or_none(self, item: LibraryItem, collection_name: str | None = None) -> str | None:
        try:
            return item_sort_key(item, collection_name)
        except keys.KeySchemeError as e:
            logger.warning(f"Skipping item with invalid order: {e}", extra={"item_id": item.id})
            return None

    async def _execute(
        self,
        parent_kind: EntityKind,
        parent_id: str,
        statements: list[UpdateStatement],
    ) -> PropagationReport:
        report = PropagationReport(
            parent_kind=parent_kind,
            parent_id=parent_id,
            statements=len(statements),
        )
        if not statements:
            logger.info("No items to update", extra={"parent_id": parent_id})
            return report

        chunks = chunked(statements, self.chunk_size)
        report.chunks = len(chunks)
        semaphore = asyncio.Semaphore(self.max_concurrent_chunks)

        async def run_chunk(index: int, chunk: list[UpdateStatement]) -> None:
            async with semaphore:
                try:
                    outcome = await self.store.execute_batch(chunk)
                except StoreError as e:
                    report.failed_chunks += 1
                    report.failed_statements += len(chunk)
                    report.errors.append(str(e))
                    logger.warning(
                        f"Failed to batch update items: {e}",
                        extra={"parent_id": parent_id, "chunk": index, "size": len(chunk)},
                    )
                    return

                if outcome.failed:
                    report.failed_statements += outcome.failed
                    report.errors.extend(outcome.errors)
                    logger.warning(
                        "Some item updates were rejected",
                        extra={"parent_id": parent_id, "chunk": index, "failed": outcome.failed},
                    )

        await asyncio.gather(*(run_chunk(i, c) for i, c in enumerate(chunks)))

        logger.info(
            f"Updated {report.statements - report.failed_statements} of {report.statements} items",
            extra={
                "parent_kind": parent_kind.value,
                "parent_id": parent_id,
                "chunks": report.chunks,
                "failed_chunks": report.failed_chunks,
            },
        )
        return report
