"""
Change events and entity projections.

A change event is the decoded form of one DynamoDB Stream record: the kind of
mutation, the entity kind read from the relevant image, and both images with
DynamoDB attribute values converted to plain Python values.

Invariants:
    - INSERT carries only a new image, REMOVE only an old image, MODIFY both
    - The entity kind of a REMOVE is read from the old image
    - Events are transient: built per record, never persisted

How to change safely:
    - Add new entity kinds to EntityKind, then route them explicitly
    - Attribute names must match what the API layer writes
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer

from . import keys

_deserializer = TypeDeserializer()
_serializer = TypeSerializer()

ENTITY_TYPE_ATTRIBUTE = "EntityType"


class Operation(str, Enum):
    """Kind of mutation reported by the change stream."""

    INSERT = "INSERT"
    MODIFY = "MODIFY"
    REMOVE = "REMOVE"


class EntityKind(str, Enum):
    """Entity kinds stored in the catalog table."""

    LIBRARY = "LIBRARY"
    COLLECTION = "COLLECTION"
    BOOK = "BOOK"
    VIDEO = "VIDEO"
    SHARED_LIBRARY = "SHARED_LIBRARY"

    @classmethod
    def parse(cls, value: Any) -> EntityKind | None:
        """Return the matching kind, or None for kinds this service ignores."""
        try:
            return cls(value)
        except ValueError:
            return None


ITEM_KINDS = frozenset({EntityKind.BOOK, EntityKind.VIDEO})


class MalformedRecordError(ValueError):
    """A stream record or image lacks required attributes."""

    pass


def deserialize_image(image: Mapping[str, Any] | None) -> dict[str, Any] | None:
    """Convert a DynamoDB-typed image into plain Python values."""
    if image is None:
        return None
    return {name: _deserializer.deserialize(value) for name, value in image.items()}


def serialize_image(item: Mapping[str, Any]) -> dict[str, Any]:
    """Convert plain Python values into a DynamoDB-typed image."""
    return {name: _serializer.serialize(value) for name, value in item.items()}


def serialize_value(value: Any) -> dict[str, Any]:
    return _serializer.serialize(value)


def _as_int(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, (int, Decimal)):
        return int(value)
    return int(str(value))


def _required(image: Mapping[str, Any], name: str) -> str:
    value = image.get(name)
    if value is None or value == "":
        raise MalformedRecordError(f"Missing attribute {name}")
    return str(value)


@dataclass
class ChangeEvent:
    """A decoded change-stream record.

    Attributes:
        operation: INSERT, MODIFY or REMOVE
        entity_kind: Kind of the changed entity (None if not recognised)
        raw_kind: EntityType attribute as found in the image
        old_image: Image before the change (MODIFY, REMOVE)
        new_image: Image after the change (INSERT, MODIFY)
    """

    operation: Operation
    entity_kind: EntityKind | None
    raw_kind: str | None
    old_image: dict[str, Any] | None = None
    new_image: dict[str, Any] | None = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> ChangeEvent:
        """Decode a DynamoDB Stream record.

        Args:
            record: ``{"eventName": ..., "dynamodb": {"NewImage": ..., "OldImage": ...}}``

        Returns:
            ChangeEvent instance

        Raises:
            MalformedRecordError: If the operation is unknown or the image needed
                to read the entity kind is missing
        """
        try:
            operation = Operation(record.get("eventName"))
        except ValueError:
            raise MalformedRecordError(f"Unknown event name: {record.get('eventName')!r}")

        change = record.get("dynamodb") or {}
        old_image = deserialize_image(change.get("OldImage"))
        new_image = deserialize_image(change.get("NewImage"))

        # A removed entity can only be described by what it was
        source = old_image if operation is Operation.REMOVE else new_image
        if source is None:
            raise MalformedRecordError(f"{operation.value} record without the expected image")

        raw_kind = source.get(ENTITY_TYPE_ATTRIBUTE)
        return cls(
            operation=operation,
            entity_kind=EntityKind.parse(raw_kind),
            raw_kind=None if raw_kind is None else str(raw_kind),
            old_image=old_image,
            new_image=new_image,
        )

    @property
    def image(self) -> dict[str, Any]:
        """The image describing the entity (old one for REMOVE)."""
        image = self.old_image if self.operation is Operation.REMOVE else self.new_image
        return image or {}


@dataclass
class Library:
    """Library (parent entity) as stored in the catalog table."""

    id: str
    owner_id: str
    name: str
    pk: str
    sk: str
    gsi1sk: str | None = None

    @classmethod
    def from_image(cls, image: Mapping[str, Any]) -> Library:
        library_id = _required(image, "LibraryId")
        owner_id = _required(image, "OwnerId")
        return cls(
            id=library_id,
            owner_id=owner_id,
            name=str(image.get("LibraryName") or ""),
            pk=str(image.get("PK") or keys.library_pk(owner_id)),
            sk=str(image.get("SK") or keys.library_sk(library_id)),
            gsi1sk=image.get("GSI1SK"),
        )


@dataclass
class Collection:
    """Collection (parent entity grouping items of one library)."""

    id: str
    library_id: str
    owner_id: str
    name: str
    pk: str
    sk: str
    gsi1sk: str | None = None

    @classmethod
    def from_image(cls, image: Mapping[str, Any]) -> Collection:
        collection_id = _required(image, "CollectionId")
        library_id = _required(image, "LibraryId")
        owner_id = _required(image, "OwnerId")
        return cls(
            id=collection_id,
            library_id=library_id,
            owner_id=owner_id,
            name=str(image.get("CollectionName") or ""),
            pk=str(image.get("PK") or keys.collection_pk(owner_id)),
            sk=str(image.get("SK") or keys.collection_sk(library_id, collection_id)),
            gsi1sk=image.get("GSI1SK"),
        )


@dataclass
class LibraryItem:
    """Library item (child entity: book or video)."""

    id: str
    library_id: str
    owner_id: str
    title: str
    pk: str
    sk: str
    kind: EntityKind = EntityKind.BOOK
    type: int = 0
    library_name: str = ""
    authors: list[str] = field(default_factory=list)
    directors: list[str] = field(default_factory=list)
    cast: list[str] = field(default_factory=list)
    collection_id: str | None = None
    collection_name: str | None = None
    order: int | None = None

    @classmethod
    def from_image(cls, image: Mapping[str, Any]) -> LibraryItem:
        item_id = _required(image, "ItemId")
        library_id = _required(image, "LibraryId")
        owner_id = _required(image, "OwnerId")
        return cls(
            id=item_id,
            library_id=library_id,
            owner_id=owner_id,
            title=str(image.get("Title") or ""),
            pk=str(image.get("PK") or keys.item_pk(owner_id)),
            sk=str(image.get("SK") or keys.item_sk(library_id, item_id)),
            kind=EntityKind.parse(image.get(ENTITY_TYPE_ATTRIBUTE)) or EntityKind.BOOK,
            type=_as_int(image.get("Type")) or 0,
            library_name=str(image.get("LibraryName") or ""),
            authors=[str(a) for a in image.get("Authors") or []],
            directors=[str(d) for d in image.get("Directors") or []],
            cast=[str(c) for c in image.get("Cast") or []],
            collection_id=image.get("CollectionId") or None,
            collection_name=image.get("CollectionName") or None,
            order=_as_int(image.get("Order")),
        )


@dataclass(frozen=True)
class ShareGrant:
    """Directional grant of a library to another user.

    Attributes:
        owner_id: Original owner of the library
        grantee_id: User the library is shared to
        library_id: Shared library
    """

    owner_id: str
    grantee_id: str
    library_id: str

    @classmethod
    def from_image(cls, image: Mapping[str, Any]) -> ShareGrant:
        return cls(
            owner_id=_required(image, "SharedFromId"),
            grantee_id=_required(image, "SharedToId"),
            library_id=_required(image, "LibraryId"),
        )


@dataclass
class CatalogItem:
    """Authoritative library item returned by search.

    Built from the catalog table, never from the search index.
    """

    id: str
    library_id: str
    owner_id: str
    title: str
    kind: EntityKind
    type: int = 0
    owner_name: str | None = None
    library_name: str | None = None
    authors: list[str] = field(default_factory=list)
    directors: list[str] = field(default_factory=list)
    cast: list[str] = field(default_factory=list)
    summary: str | None = None
    isbn: str | None = None
    picture_url: str | None = None
    lent_to: str | None = None
    collection_id: str | None = None
    collection_name: str | None = None
    order: int | None = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> CatalogItem:
        item = LibraryItem.from_image(record)
        return cls(
            id=item.id,
            library_id=item.library_id,
            owner_id=item.owner_id,
            title=item.title,
            kind=item.kind,
            type=item.type,
            owner_name=record.get("OwnerName"),
            library_name=item.library_name or None,
            authors=item.authors,
            directors=item.directors,
            cast=item.cast,
            summary=record.get("Summary"),
            isbn=record.get("Isbn"),
            picture_url=record.get("PictureUrl"),
            lent_to=record.get("LentTo"),
            collection_id=item.collection_id,
            collection_name=item.collection_name,
            order=item.order,
        )
