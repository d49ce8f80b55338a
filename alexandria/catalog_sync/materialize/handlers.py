"""
Snapshot handlers, one per (operation, entity kind).

Each handler is a plain function ``(snapshot, event) -> mutated`` that applies
one change event to the in-memory snapshot and reports whether it changed
anything. Handlers never perform I/O.

Invariants:
    - A child is never indexed before its parent (warning, no mutation)
    - Removing a library also scrubs every share grant pointing at it
    - No empty owner or grantee bucket is left behind
    - Re-applying an event yields the same snapshot

How to change safely:
    - Add new handlers to ROUTES; the materializer picks them up
    - Keep handlers pure so they stay testable without storage
"""

from __future__ import annotations

import logging

from ..dispatch import RoutingTable
from ..model import (
    ChangeEvent,
    EntityKind,
    Library,
    LibraryItem,
    MalformedRecordError,
    Operation,
    ShareGrant,
)
from .snapshot import IndexItem, IndexLibrary, IndexSnapshot

logger = logging.getLogger(__name__)

# Item attributes whose change must reach the index
INDEXED_FIELDS = (
    "title",
    "authors",
    "directors",
    "cast",
    "collection_id",
    "collection_name",
)


def _decode(factory, image, what: str):
    try:
        return factory(image or {})
    except MalformedRecordError as e:
        logger.warning(f"Skipping undecodable {what}: {e}")
        return None


def on_library_inserted(snapshot: IndexSnapshot, event: ChangeEvent) -> bool:
    library = _decode(Library.from_image, event.new_image, "library")
    if library is None:
        return False

    owner = snapshot.libraries.setdefault(library.owner_id, {})
    if library.id in owner:
        logger.debug("Library already indexed", extra={"library_id": library.id})
        return False

    owner[library.id] = IndexLibrary(id=library.id)
    logger.info("New library indexed", extra={"library_id": library.id})
    return True


def on_library_removed(snapshot: IndexSnapshot, event: ChangeEvent) -> bool:
    library = _decode(Library.from_image, event.old_image, "library")
    if library is None:
        return False

    owner = snapshot.libraries.get(library.owner_id)
    if owner is None:
        logger.warning(
            "No owner found for deleted library",
            extra={"owner_id": library.owner_id, "library_id": library.id},
        )
        return False

    removed = owner.pop(library.id, None) is not None
    if not owner:
        del snapshot.libraries[library.owner_id]

    for grantee_id in list(snapshot.shares):
        bucket = snapshot.shares[grantee_id]
        if bucket.pop(library.id, None) is not None:
            removed = True
        if not bucket:
            del snapshot.shares[grantee_id]

    if not removed:
        logger.debug("Deleted library was not indexed", extra={"library_id": library.id})
        return False

    logger.info("Deleted library removed from index", extra={"library_id": library.id})
    return True


def _library_for(snapshot: IndexSnapshot, item: LibraryItem, action: str) -> IndexLibrary | None:
    owner = snapshot.libraries.get(item.owner_id)
    if owner is None:
        logger.warning(
            f"No owner found for {action} item",
            extra={"owner_id": item.owner_id, "item_id": item.id},
        )
        return None

    library = owner.get(item.library_id)
    if library is None:
        logger.warning(
            f"No library found for {action} item",
            extra={"library_id": item.library_id, "item_id": item.id},
        )
        return None
    return library


def on_item_inserted(snapshot: IndexSnapshot, event: ChangeEvent) -> bool:
    item = _decode(LibraryItem.from_image, event.new_image, "item")
    if item is None:
        return False

    library = _library_for(snapshot, item, "new")
    if library is None:
        return False

    library.items[item.id] = IndexItem.from_library_item(item)
    logger.info("New item indexed", extra={"item_id": item.id, "library_id": item.library_id})
    return True


def on_item_modified(snapshot: IndexSnapshot, event: ChangeEvent) -> bool:
    new = _decode(LibraryItem.from_image, event.new_image, "item")
    old = _decode(LibraryItem.from_image, event.old_image, "item")
    if new is None or old is None:
        return False

    if all(getattr(new, name) == getattr(old, name) for name in INDEXED_FIELDS):
        logger.debug("Updated item has no indexed change", extra={"item_id": new.id})
        return False

    library = _library_for(snapshot, new, "updated")
    if library is None:
        return False

    indexed = library.items.get(new.id)
    if indexed is None:
        logger.warning("Updated item was not indexed, adding it", extra={"item_id": new.id})
        library.items[new.id] = IndexItem.from_library_item(new)
        return True

    indexed.library_id = new.library_id
    indexed.title = new.title
    indexed.authors = list(new.authors)
    indexed.directors = list(new.directors)
    indexed.cast = list(new.cast)
    indexed.collection_id = new.collection_id
    indexed.collection_name = new.collection_name
    logger.info("Indexed item updated", extra={"item_id": new.id, "library_id": new.library_id})
    return True


def on_item_removed(snapshot: IndexSnapshot, event: ChangeEvent) -> bool:
    item = _decode(LibraryItem.from_image, event.old_image, "item")
    if item is None:
        return False

    library = _library_for(snapshot, item, "deleted")
    if library is None:
        return False

    if library.items.pop(item.id, None) is None:
        logger.debug("Deleted item was not indexed", extra={"item_id": item.id})
        return False

    logger.info("Deleted item removed from index", extra={"item_id": item.id})
    return True


def on_share_inserted(snapshot: IndexSnapshot, event: ChangeEvent) -> bool:
    grant = _decode(ShareGrant.from_image, event.new_image, "shared library")
    if grant is None:
        return False

    snapshot.shares.setdefault(grant.grantee_id, {})[grant.library_id] = grant
    logger.info("New shared library indexed", extra={"library_id": grant.library_id})
    return True


def on_share_removed(snapshot: IndexSnapshot, event: ChangeEvent) -> bool:
    grant = _decode(ShareGrant.from_image, event.old_image, "shared library")
    if grant is None:
        return False

    bucket = snapshot.shares.get(grant.grantee_id)
    if bucket is None:
        logger.warning(
            "No grantee found for deleted shared library",
            extra={"grantee_id": grant.grantee_id, "library_id": grant.library_id},
        )
        return False

    removed = bucket.pop(grant.library_id, None) is not None
    if not bucket:
        del snapshot.shares[grant.grantee_id]
    if not removed:
        logger.debug("Unshared library was not indexed", extra={"library_id": grant.library_id})
        return False

    logger.info("Unshared library removed from index", extra={"library_id": grant.library_id})
    return True


ROUTES: RoutingTable = {
    (Operation.INSERT, EntityKind.LIBRARY): on_library_inserted,
    (Operation.REMOVE, EntityKind.LIBRARY): on_library_removed,
    (Operation.INSERT, EntityKind.BOOK): on_item_inserted,
    (Operation.MODIFY, EntityKind.BOOK): on_item_modified,
    (Operation.REMOVE, EntityKind.BOOK): on_item_removed,
    (Operation.INSERT, EntityKind.VIDEO): on_item_inserted,
    (Operation.MODIFY, EntityKind.VIDEO): on_item_modified,
    (Operation.REMOVE, EntityKind.VIDEO): on_item_removed,
    (Operation.INSERT, EntityKind.SHARED_LIBRARY): on_share_inserted,
    (Operation.REMOVE, EntityKind.SHARED_LIBRARY): on_share_removed,
}
