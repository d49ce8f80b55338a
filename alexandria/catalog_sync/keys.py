"""
Key scheme for the catalog table.

Pure functions deriving partition/sort keys and secondary-index keys for each
entity kind from its identity and display attributes.

Layout:
    Library         PK=owner#<owner>    SK=library#<library>
                    GSI1PK=owner#<owner>    GSI1SK=library#<name>
    Collection      PK=owner#<owner>    SK=library#<library>#collection#<collection>
                    GSI1PK=owner#<owner>#library#<library>    GSI1SK=collection#<name>
    Library item    PK=owner#<owner>    SK=library#<library>#item#<item>
                    GSI1PK=owner#<owner>#library#<library>    GSI1SK=<child sort key>
                    GSI2PK=owner#<owner>    GSI2SK=item#<title>
    Shared library  PK=owner#<grantee>  SK=shared-library#<library>

Invariants:
    - Items of one collection sort contiguously, by explicit order, under GSI1
    - Orders are zero-padded to 5 digits, so only [0, 99999] is representable
    - Changing a title, a collection or an order always changes GSI1SK

How to change safely:
    - These formats are shared with the API layer and the stored data
    - A format change requires a table migration and a full reindex
"""

from __future__ import annotations

ITEM_PREFIX = "item#"
ORDER_WIDTH = 5
MAX_ORDER = 10**ORDER_WIDTH - 1

# Separates the table keys inside a full-text document identifier
DOCUMENT_ID_SEPARATOR = "|"


class KeySchemeError(ValueError):
    """A key cannot be derived from the given attributes."""

    pass


def owner_pk(owner_id: str) -> str:
    return f"owner#{owner_id}"


def library_pk(owner_id: str) -> str:
    return owner_pk(owner_id)


def library_sk(library_id: str) -> str:
    return f"library#{library_id}"


def library_gsi1pk(owner_id: str) -> str:
    return owner_pk(owner_id)


def library_gsi1sk(library_name: str) -> str:
    return f"library#{library_name}"


def item_pk(owner_id: str) -> str:
    return owner_pk(owner_id)


def item_sk(library_id: str, item_id: str) -> str:
    return f"library#{library_id}#item#{item_id}"


def item_gsi1pk(owner_id: str, library_id: str) -> str:
    """Partition of the children index holding the content of one library."""
    return f"owner#{owner_id}#library#{library_id}"


def item_gsi2pk(owner_id: str) -> str:
    return owner_pk(owner_id)


def item_gsi2sk(title: str) -> str:
    return f"{ITEM_PREFIX}{title}"


def collection_pk(owner_id: str) -> str:
    return owner_pk(owner_id)


def collection_sk(library_id: str, collection_id: str) -> str:
    return f"library#{library_id}#collection#{collection_id}"


def collection_gsi1pk(owner_id: str, library_id: str) -> str:
    return item_gsi1pk(owner_id, library_id)


def collection_gsi1sk(collection_name: str) -> str:
    return f"collection#{collection_name}"


def shared_library_pk(grantee_id: str) -> str:
    return owner_pk(grantee_id)


def shared_library_sk(library_id: str) -> str:
    return f"shared-library#{library_id}"


def child_sort_key(
    title: str,
    collection: str | None = None,
    order: int | None = None,
) -> str:
    """Compute the children-index sort key of a library item.

    Items outside a collection sort by title. Items inside a collection sort
    first by collection, then by their explicit order, then by title.

    Args:
        title: Item title
        collection: Grouping value of the item's collection (its cached name)
        order: Position within the collection; defaults to 0

    Returns:
        ``item#<title>`` or ``item#<collection>#<order:05d>#<title>``

    Raises:
        KeySchemeError: If order is outside [0, 99999]

    Example:
        >>> child_sort_key("Dune", "Saga", 3)
        'item#Saga#00003#Dune'
    """
    if collection is None:
        return f"{ITEM_PREFIX}{title}"

    position = 0 if order is None else int(order)
    if not 0 <= position <= MAX_ORDER:
        raise KeySchemeError(f"Order {position} is outside [0, {MAX_ORDER}]")

    return f"{ITEM_PREFIX}{collection}#{position:0{ORDER_WIDTH}d}#{title}"


def document_id(pk: str, sk: str) -> str:
    """Full-text document identifier encoding the item's table key."""
    return f"{pk}{DOCUMENT_ID_SEPARATOR}{sk}"


def parse_document_id(doc_id: str) -> tuple[str, str]:
    """Split a full-text document identifier back into (PK, SK).

    Raises:
        KeySchemeError: If the identifier does not carry both keys
    """
    pk, sep, sk = doc_id.partition(DOCUMENT_ID_SEPARATOR)
    if not sep or not pk or not sk:
        raise KeySchemeError(f"Malformed document id: {doc_id!r}")
    return pk, sk
