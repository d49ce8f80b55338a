"""
In-memory primary store for testing.

This module provides a dict-backed catalog table for:
- Unit tests of the propagator and the search executor
- Integration tests of the worker
- Local runs without DynamoDB

Invariants:
    - All data is lost on process exit
    - Children are returned ordered by GSI1SK, like the real index
    - An update of a missing key fails instead of creating the item

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the PrimaryStore protocol
    - Add failure hooks here rather than in the callers
"""

from __future__ import annotations

import copy
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Set, Tuple

from .. import keys
from ..config import MAX_BATCH_STATEMENTS
from ..cursor import CursorCodec
from ..model import ENTITY_TYPE_ATTRIBUTE, EntityKind, ShareGrant
from .base import BatchWriteResult, ItemPage, StoreError, UpdateStatement

logger = logging.getLogger(__name__)

TableKey = Tuple[str, str]


class InMemoryPrimaryStore:
    """Dict-backed implementation of PrimaryStore.

    Attributes:
        executed_batches: Every batch passed to execute_batch, in call order
        fail_batches: Call indexes of execute_batch that raise StoreError
        fail_queries: Make query_children raise StoreError

    Example:
        >>> store = InMemoryPrimaryStore()
        >>> store.put_item({"PK": "owner#u1", "SK": "library#l1", "LibraryName": "Home"})
        >>> store.get_item("owner#u1", "library#l1")["LibraryName"]
        'Home'
    """

    def __init__(self, codec: Optional[CursorCodec] = None) -> None:
        self.codec = codec
        self._items: Dict[TableKey, Dict[str, Any]] = {}
        self.executed_batches: List[List[UpdateStatement]] = []
        self.fail_batches: Set[int] = set()
        self.fail_queries = False
        self.query_count = 0
        self.sort_key_updates: List[Tuple[str, str, str]] = []

    # Testing helpers

    def put_item(self, item: Dict[str, Any]) -> None:
        """Insert or replace an item (test setup)."""
        self._items[(item["PK"], item["SK"])] = copy.deepcopy(item)

    def get_item(self, pk: str, sk: str) -> Optional[Dict[str, Any]]:
        item = self._items.get((pk, sk))
        return copy.deepcopy(item) if item is not None else None

    def delete_item(self, pk: str, sk: str) -> None:
        self._items.pop((pk, sk), None)

    @property
    def statement_count(self) -> int:
        return sum(len(batch) for batch in self.executed_batches)

    # PrimaryStore

    async def query_children(
        self,
        owner_id: str,
        library_id: str,
        collection_id: Optional[str] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        self.query_count += 1
        if self.fail_queries:
            raise StoreError("Injected query failure")

        gsi1pk = keys.item_gsi1pk(owner_id, library_id)
        for item in self._children(gsi1pk):
            if collection_id is not None and item.get("CollectionId") != collection_id:
                continue
            yield copy.deepcopy(item)

    def _children(self, gsi1pk: str) -> List[Dict[str, Any]]:
        children = [
            item
            for item in self._items.values()
            if item.get("GSI1PK") == gsi1pk
            and str(item.get("GSI1SK", "")).startswith(keys.ITEM_PREFIX)
        ]
        return sorted(children, key=lambda i: (i["GSI1SK"], i["PK"], i["SK"]))

    async def execute_batch(self, statements: Sequence[UpdateStatement]) -> BatchWriteResult:
        if len(statements) > MAX_BATCH_STATEMENTS:
            raise ValueError(f"At most {MAX_BATCH_STATEMENTS} statements per batch")

        call_index = len(self.executed_batches)
        self.executed_batches.append(list(statements))
        if call_index in self.fail_batches:
            raise StoreError(f"Injected failure for batch {call_index}")

        result = BatchWriteResult()
        for statement in statements:
            item = self._items.get((statement.pk, statement.sk))
            if item is None:
                result.failed += 1
                result.errors.append(
                    f"ConditionalCheckFailed: {statement.pk}/{statement.sk} does not exist"
                )
                continue
            item.update(copy.deepcopy(dict(statement.set)))
            for name in statement.remove:
                item.pop(name, None)
            result.succeeded += 1
        return result

    async def set_sort_key(self, pk: str, sk: str, gsi1sk: str) -> None:
        item = self._items.get((pk, sk))
        if item is None:
            raise StoreError(f"Item {pk}/{sk} does not exist")
        item["GSI1SK"] = gsi1sk
        self.sort_key_updates.append((pk, sk, gsi1sk))

    async def batch_get_items(self, keys: Sequence[Tuple[str, str]]) -> List[Dict[str, Any]]:
        return [
            copy.deepcopy(self._items[key]) for key in keys if key in self._items
        ]

    async def query_share_grants(self, grantee_id: str) -> List[ShareGrant]:
        pk = keys.shared_library_pk(grantee_id)
        prefix = keys.shared_library_sk("")
        return [
            ShareGrant.from_image(item)
            for (item_pk, item_sk), item in sorted(self._items.items())
            if item_pk == pk
            and item_sk.startswith(prefix)
            and item.get(ENTITY_TYPE_ATTRIBUTE) == EntityKind.SHARED_LIBRARY.value
        ]

    async def list_library_items(
        self,
        owner_id: str,
        library_id: str,
        cursor: Optional[str] = None,
        page_size: int = 50,
    ) -> ItemPage:
        if self.codec is None:
            raise StoreError("Cursor pagination requires a cursor key")

        children = self._children(keys.item_gsi1pk(owner_id, library_id))
        start = 0
        if cursor:
            token = self.codec.decode(cursor)
            resume = (token.get("GSI1SK"), token.get("PK"), token.get("SK"))
            start = next(
                (
                    i + 1
                    for i, item in enumerate(children)
                    if (item["GSI1SK"], item["PK"], item["SK"]) == resume
                ),
                len(children),
            )

        page = children[start : start + page_size]
        next_cursor = None
        if page and start + page_size < len(children):
            last = page[-1]
            next_cursor = self.codec.encode(
                {
                    "PK": last["PK"],
                    "SK": last["SK"],
                    "GSI1PK": last["GSI1PK"],
                    "GSI1SK": last["GSI1SK"],
                }
            )
        return ItemPage(items=copy.deepcopy(page), next_cursor=next_cursor)

    async def scan_entities(self) -> AsyncIterator[Dict[str, Any]]:
        for key in sorted(self._items):
            yield copy.deepcopy(self._items[key])
