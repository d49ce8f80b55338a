"""
Search executor.

Three sequential phases per request:
    1. Open the full-text index (download if remote)
    2. Match terms within the requester's access filter
    3. Read the matched items back from the catalog table

Invariants:
    - Returned content always comes from the catalog table, never the index
    - Results keep the index order
    - No terms, or no index yet, is an empty result; anything else that goes
      wrong is a SearchError

How to change safely:
    - Access filtering must stay in the index query, scoped per grant
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Iterable, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .. import keys
from ..model import CatalogItem, MalformedRecordError
from ..store import PrimaryStore, StoreError
from .index import FullTextIndex
from .query import AccessFilter, build_text_query, normalize_terms
from .sources import IndexSource

logger = logging.getLogger(__name__)


class SearchError(Exception):
    """A search could not be executed."""

    pass


class SearchExecutor:
    """Searches library items visible to a user.

    Example:
        >>> executor = SearchExecutor(store, LocalIndexSource("/data/global-index.sqlite"))
        >>> items = await executor.search("user-1", ["dune", "herbert"])
        >>> [item.title for item in items]
        ['Dune']
    """

    def __init__(
        self,
        store: PrimaryStore,
        source: IndexSource,
        fuzziness: int = 1,
        max_results: int = 50,
    ) -> None:
        """Initialize the executor.

        Args:
            store: Catalog table access (grants and result resolution)
            source: Location of the full-text index
            fuzziness: Maximum edit distance for fuzzy matches
            max_results: Maximum documents per search
        """
        self.store = store
        self.source = source
        self.fuzziness = fuzziness
        self.max_results = max_results

    async def search(self, requester_id: str, terms: Iterable[str]) -> list[CatalogItem]:
        """Search the items visible to `requester_id`.

        Args:
            requester_id: User running the search
            terms: Free-text terms, all of which must match

        Returns:
            Matching items in index order

        Raises:
            SearchError: If the index, the query or the catalog read fails
        """
        normalized = normalize_terms(terms)
        if not normalized:
            return []

        try:
            path = await self.source.fetch()
        except (ClientError, BotoCoreError, OSError) as e:
            raise SearchError(f"Failed to open search index: {e}") from e

        if path is None:
            return []

        try:
            grants = await self.store.query_share_grants(requester_id)
        except StoreError as e:
            raise SearchError(f"Failed to read share grants: {e}") from e

        access = AccessFilter(requester_id, grants)

        try:
            doc_ids = self._match(path, normalized, access)
        except (sqlite3.Error, OSError) as e:
            raise SearchError(f"Search query failed: {e}") from e

        logger.debug(
            "Search matched documents",
            extra={"requester_id": requester_id, "terms": len(normalized), "matches": len(doc_ids)},
        )
        if not doc_ids:
            return []

        return await self._resolve(doc_ids)

    def _match(self, path: Any, terms: list[str], access: AccessFilter) -> list[str]:
        with FullTextIndex.open(path) as index:
            vocabulary = index.vocabulary() if self.fuzziness > 0 else []
            expression = build_text_query(terms, vocabulary, self.fuzziness)
            access_sql, access_params = access.to_sql("d")
            return index.match(expression, access_sql, access_params, self.max_results)

    async def _resolve(self, doc_ids: list[str]) -> list[CatalogItem]:
        try:
            table_keys = [keys.parse_document_id(doc_id) for doc_id in doc_ids]
        except keys.KeySchemeError as e:
            raise SearchError(f"Corrupt search index: {e}") from e

        try:
            records = await self.store.batch_get_items(table_keys)
        except StoreError as e:
            raise SearchError(f"Failed to read matched items: {e}") from e

        by_key = {(r.get("PK"), r.get("SK")): r for r in records}
        items: list[CatalogItem] = []
        for table_key in table_keys:
            record: Optional[dict[str, Any]] = by_key.get(table_key)
            if record is None:
                # Deleted since the index was built
                continue
            try:
                items.append(CatalogItem.from_record(record))
            except MalformedRecordError as e:
                logger.warning(f"Skipping undecodable item: {e}", extra={"pk": table_key[0]})
        return items
