"""
SQLite FTS5 full-text index over library items.

The index is a single SQLite file, built offline by IndexBuilder and opened
read-only by the search executor. It is a locator: it stores just enough to
match and scope a document, and the document id encodes the item's table key
so results can be read back from the catalog table.

Table schema:
    documents:
        - doc_id TEXT PRIMARY KEY ("<PK>|<SK>")
        - owner_id TEXT
        - library_id TEXT
        - title TEXT
        - authors TEXT (authors, directors and cast, space separated)
        - collection TEXT (collection name)

    fts_documents:
        - FTS5 virtual table over title, authors, collection
        - unicode61 tokenizer, case and diacritics folded

    fts_vocabulary:
        - fts5vocab table listing every indexed term

Invariants:
    - The searchable columns are exactly title, authors and collection
    - Readers never write; the file is replaced wholesale on rebuild

How to change safely:
    - Adding a searchable column requires a full rebuild (reindex tool)
    - Keep doc_id in sync with keys.document_id
"""

from __future__ import annotations

import logging
import os
import sqlite3
import tempfile
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from .. import keys
from ..model import ENTITY_TYPE_ATTRIBUTE, ITEM_KINDS, EntityKind, LibraryItem

logger = logging.getLogger(__name__)

SCHEMA = """
    CREATE TABLE IF NOT EXISTS documents (
        doc_id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        library_id TEXT NOT NULL,
        title TEXT NOT NULL DEFAULT '',
        authors TEXT NOT NULL DEFAULT '',
        collection TEXT NOT NULL DEFAULT ''
    );

    CREATE INDEX IF NOT EXISTS idx_documents_owner ON documents(owner_id, library_id);

    CREATE VIRTUAL TABLE IF NOT EXISTS fts_documents USING fts5(
        title,
        authors,
        collection,
        content='documents',
        content_rowid='rowid',
        tokenize='unicode61 remove_diacritics 2'
    );

    CREATE VIRTUAL TABLE IF NOT EXISTS fts_vocabulary USING fts5vocab(fts_documents, 'row');

    CREATE TRIGGER IF NOT EXISTS documents_ai AFTER INSERT ON documents BEGIN
        INSERT INTO fts_documents(rowid, title, authors, collection)
        VALUES (new.rowid, new.title, new.authors, new.collection);
    END;
"""


@dataclass(frozen=True)
class IndexDocument:
    """One searchable library item."""

    doc_id: str
    owner_id: str
    library_id: str
    title: str
    authors: str = ""
    collection: str = ""

    @classmethod
    def from_item(cls, item: LibraryItem) -> IndexDocument:
        return cls(
            doc_id=keys.document_id(item.pk, item.sk),
            owner_id=item.owner_id,
            library_id=item.library_id,
            title=item.title,
            authors=" ".join([*item.authors, *item.directors, *item.cast]),
            collection=item.collection_name or "",
        )

    @classmethod
    def from_image(cls, image: Mapping[str, Any]) -> IndexDocument | None:
        """Build a document from a catalog record, or None if it is not an item."""
        if EntityKind.parse(image.get(ENTITY_TYPE_ATTRIBUTE)) not in ITEM_KINDS:
            return None
        return cls.from_item(LibraryItem.from_image(image))


class IndexBuilder:
    """Writes a fresh index file.

    The file is built next to its destination and moved into place, so a
    reader never sees a half-written index.

    Example:
        >>> builder = IndexBuilder("/tmp/global-index.sqlite")
        >>> builder.build(IndexDocument.from_item(i) for i in items)
        42
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def build(self, documents: Iterable[IndexDocument]) -> int:
        """Replace the index with the given documents.

        Returns:
            Number of documents written
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        os.close(fd)

        count = 0
        try:
            conn = sqlite3.connect(tmp_name)
            try:
                conn.executescript(SCHEMA)
                with conn:
                    for document in documents:
                        conn.execute(
                            """
                            INSERT OR REPLACE INTO documents
                                (doc_id, owner_id, library_id, title, authors, collection)
                            VALUES (?, ?, ?, ?, ?, ?)
                            """,
                            (
                                document.doc_id,
                                document.owner_id,
                                document.library_id,
                                document.title,
                                document.authors,
                                document.collection,
                            ),
                        )
                        count += 1
                conn.execute("INSERT INTO fts_documents(fts_documents) VALUES('optimize')")
            finally:
                conn.close()
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.info("Full-text index built", extra={"path": str(self.path), "documents": count})
        return count


class FullTextIndex:
    """Read-only view of an index file.

    Example:
        >>> with FullTextIndex.open(path) as index:
        ...     index.match('"dune"*', "owner_id = ?", ["u1"], limit=10)
        ['owner#u1|library#l1#item#i1']
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    @classmethod
    @contextmanager
    def open(cls, path: str | Path) -> Iterator[FullTextIndex]:
        """Open an index file read-only.

        Raises:
            FileNotFoundError: If the file does not exist
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Index not found: {path}")

        conn = sqlite3.connect(path.resolve().as_uri() + "?mode=ro", uri=True)
        conn.row_factory = sqlite3.Row
        try:
            yield cls(conn)
        finally:
            conn.close()

    def vocabulary(self) -> list[str]:
        """Every term of the index."""
        return [row["term"] for row in self._conn.execute("SELECT term FROM fts_vocabulary")]

    def match(
        self,
        expression: str,
        access_sql: str,
        access_params: list[Any],
        limit: int,
    ) -> list[str]:
        """Document ids matching an FTS5 expression within an access filter."""
        sql = f"""
            SELECT d.doc_id
            FROM fts_documents
            JOIN documents d ON d.rowid = fts_documents.rowid
            WHERE fts_documents MATCH ?
              AND {access_sql}
            ORDER BY fts_documents.rank
            LIMIT ?
        """
        rows = self._conn.execute(sql, [expression, *access_params, limit])
        return [row["doc_id"] for row in rows]

    def count(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0]
