"""
Index snapshot document.

The snapshot is a denormalized view of every indexable library item and of
every share grant, persisted as one JSON object:

    {
      "libraries": {<ownerId>: {<libraryId>: {"id": ..., "items": {<itemId>: IndexItem}}}},
      "shares":    {<granteeId>: {<libraryId>: {"ownerId": ..., "libraryId": ...}}}
    }

Invariants:
    - No empty grantee bucket is ever serialized
    - Item entries are keyed by item id (re-inserting overwrites)
    - Unknown keys in a stored document are ignored

How to change safely:
    - Add new IndexItem fields as optional keys
    - Never rename existing JSON keys; stored snapshots must keep loading
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..model import LibraryItem, ShareGrant


@dataclass
class IndexItem:
    """Indexed projection of a library item."""

    pk: str
    sk: str
    id: str
    type: int
    owner_id: str
    library_id: str
    title: str
    authors: List[str] = field(default_factory=list)
    directors: List[str] = field(default_factory=list)
    cast: List[str] = field(default_factory=list)
    collection_id: Optional[str] = None
    collection_name: Optional[str] = None

    @classmethod
    def from_library_item(cls, item: LibraryItem) -> IndexItem:
        return cls(
            pk=item.pk,
            sk=item.sk,
            id=item.id,
            type=item.type,
            owner_id=item.owner_id,
            library_id=item.library_id,
            title=item.title,
            authors=list(item.authors),
            directors=list(item.directors),
            cast=list(item.cast),
            collection_id=item.collection_id,
            collection_name=item.collection_name,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> IndexItem:
        return cls(
            pk=data["PK"],
            sk=data["SK"],
            id=data["id"],
            type=int(data.get("type", 0)),
            owner_id=data["ownerId"],
            library_id=data["libraryId"],
            title=data.get("title", ""),
            authors=list(data.get("authors") or []),
            directors=list(data.get("directors") or []),
            cast=list(data.get("cast") or []),
            collection_id=data.get("collectionId"),
            collection_name=data.get("collectionName"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "PK": self.pk,
            "SK": self.sk,
            "id": self.id,
            "type": self.type,
            "ownerId": self.owner_id,
            "libraryId": self.library_id,
            "title": self.title,
        }
        if self.authors:
            data["authors"] = list(self.authors)
        if self.directors:
            data["directors"] = list(self.directors)
        if self.cast:
            data["cast"] = list(self.cast)
        if self.collection_id is not None:
            data["collectionId"] = self.collection_id
        if self.collection_name is not None:
            data["collectionName"] = self.collection_name
        return data


@dataclass
class IndexLibrary:
    """Library bucket of the snapshot."""

    id: str
    items: Dict[str, IndexItem] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> IndexLibrary:
        return cls(
            id=data["id"],
            items={
                item_id: IndexItem.from_dict(item)
                for item_id, item in (data.get("items") or {}).items()
            },
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "items": {item_id: item.to_dict() for item_id, item in self.items.items()},
        }


@dataclass
class IndexSnapshot:
    """Libraries and share grants known to the search index.

    Attributes:
        libraries: owner id -> library id -> IndexLibrary
        shares: grantee id -> library id -> ShareGrant

    Example:
        >>> snapshot = IndexSnapshot()
        >>> snapshot.to_json()
        '{"libraries": {}, "shares": {}}'
    """

    libraries: Dict[str, Dict[str, IndexLibrary]] = field(default_factory=dict)
    shares: Dict[str, Dict[str, ShareGrant]] = field(default_factory=dict)

    def find_library(self, owner_id: str, library_id: str) -> Optional[IndexLibrary]:
        return self.libraries.get(owner_id, {}).get(library_id)

    def item_count(self) -> int:
        return sum(
            len(library.items)
            for owner in self.libraries.values()
            for library in owner.values()
        )

    def grants_for(self, grantee_id: str) -> List[ShareGrant]:
        return list(self.shares.get(grantee_id, {}).values())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> IndexSnapshot:
        libraries = {
            owner_id: {
                library_id: IndexLibrary.from_dict(library)
                for library_id, library in (owner or {}).items()
            }
            for owner_id, owner in (data.get("libraries") or {}).items()
        }
        shares = {
            grantee_id: {
                library_id: ShareGrant(
                    owner_id=grant["ownerId"],
                    grantee_id=grantee_id,
                    library_id=grant.get("libraryId", library_id),
                )
                for library_id, grant in bucket.items()
            }
            for grantee_id, bucket in (data.get("shares") or {}).items()
            if bucket
        }
        return cls(libraries=libraries, shares=shares)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "libraries": {
                owner_id: {library_id: library.to_dict() for library_id, library in owner.items()}
                for owner_id, owner in self.libraries.items()
            },
            "shares": {
                grantee_id: {
                    library_id: {"ownerId": grant.owner_id, "libraryId": grant.library_id}
                    for library_id, grant in bucket.items()
                }
                for grantee_id, bucket in self.shares.items()
                if bucket
            },
        }

    @classmethod
    def from_json(cls, raw: str | bytes) -> IndexSnapshot:
        """Parse a stored snapshot.

        Raises:
            ValueError: If the document is not a JSON object
        """
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("Snapshot document must be a JSON object")
        return cls.from_dict(data)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())
