"""
Full resync tool for the derived artifacts.

Rebuilds both artifacts from a scan of the catalog table, discarding
whatever the stream consumers produced:
1. Index snapshot (libraries, items, share grants)
2. Full-text index file

Usage:
    catalog-sync-reindex [--dry-run] [--index-path PATH] [--skip-snapshot]

Invariants:
    - The catalog table is only read
    - The index file is replaced atomically
    - A record that cannot be decoded is skipped and counted, never fatal

How to change safely:
    - Keep the snapshot built here identical to what the handlers would build
    - Run with --dry-run first against a new table
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from ..config import ServiceConfig
from ..materialize import IndexItem, IndexLibrary, IndexSnapshot, SnapshotStore
from ..model import (
    ENTITY_TYPE_ATTRIBUTE,
    ITEM_KINDS,
    EntityKind,
    Library,
    LibraryItem,
    MalformedRecordError,
    ShareGrant,
)
from ..runtime import build_runtime
from ..search import IndexBuilder, IndexDocument, S3IndexSource
from ..store import PrimaryStore

logger = logging.getLogger(__name__)

IndexPublisher = Callable[[Path], Awaitable[None]]


@dataclass
class ReindexResult:
    """Result of a reindex run.

    Attributes:
        success: Whether the run completed
        scanned: Records read from the table
        libraries: Libraries in the new snapshot
        items: Items indexed
        shares: Share grants in the new snapshot
        skipped: Records that could not be decoded
        orphans: Items whose library was not found
        duration_ms: Wall time
        error: Failure message
    """

    success: bool = False
    scanned: int = 0
    libraries: int = 0
    items: int = 0
    shares: int = 0
    skipped: int = 0
    orphans: int = 0
    duration_ms: int = 0
    error: Optional[str] = None
    documents: list[IndexDocument] = field(default_factory=list, repr=False)


class Reindexer:
    """Rebuilds the snapshot and the full-text index from the catalog table.

    Example:
        >>> reindexer = Reindexer(store, snapshot_store, "/tmp/global-index.sqlite")
        >>> result = await reindexer.run()
        >>> result.items
        1234
    """

    def __init__(
        self,
        store: PrimaryStore,
        snapshot_store: SnapshotStore,
        index_path: str | Path,
        publish: Optional[IndexPublisher] = None,
        dry_run: bool = False,
        skip_snapshot: bool = False,
    ) -> None:
        """Initialize the reindexer.

        Args:
            store: Catalog table access
            snapshot_store: Where the snapshot is written
            index_path: Local path of the index file to build
            publish: Uploads the built index file (None keeps it local)
            dry_run: Scan and count only
            skip_snapshot: Rebuild the full-text index only
        """
        self.store = store
        self.snapshot_store = snapshot_store
        self.index_path = Path(index_path)
        self.publish = publish
        self.dry_run = dry_run
        self.skip_snapshot = skip_snapshot

    async def scan(self) -> tuple[IndexSnapshot, ReindexResult]:
        """Read the whole table into a fresh snapshot."""
        result = ReindexResult()
        snapshot = IndexSnapshot()
        items: list[LibraryItem] = []

        async for image in self.store.scan_entities():
            result.scanned += 1
            kind = EntityKind.parse(image.get(ENTITY_TYPE_ATTRIBUTE))
            try:
                if kind is EntityKind.LIBRARY:
                    library = Library.from_image(image)
                    owner = snapshot.libraries.setdefault(library.owner_id, {})
                    owner.setdefault(library.id, IndexLibrary(id=library.id))
                elif kind in ITEM_KINDS:
                    items.append(LibraryItem.from_image(image))
                elif kind is EntityKind.SHARED_LIBRARY:
                    grant = ShareGrant.from_image(image)
                    snapshot.shares.setdefault(grant.grantee_id, {})[grant.library_id] = grant
            except MalformedRecordError as e:
                result.skipped += 1
                logger.warning(f"Skipping undecodable record: {e}", extra={"pk": image.get("PK")})

        # Items are attached once every library has been seen
        for item in items:
            library = snapshot.find_library(item.owner_id, item.library_id)
            if library is None:
                result.orphans += 1
                logger.warning(
                    "Item without library",
                    extra={"item_id": item.id, "library_id": item.library_id},
                )
                continue
            library.items[item.id] = IndexItem.from_library_item(item)
            result.documents.append(IndexDocument.from_item(item))

        result.libraries = sum(len(owner) for owner in snapshot.libraries.values())
        result.items = len(result.documents)
        result.shares = sum(len(bucket) for bucket in snapshot.shares.values())
        return snapshot, result

    async def run(self) -> ReindexResult:
        """Scan, then write both artifacts."""
        start = time.monotonic()
        try:
            snapshot, result = await self.scan()
            logger.info(
                "Table scanned",
                extra={
                    "scanned": result.scanned,
                    "libraries": result.libraries,
                    "items": result.items,
                    "shares": result.shares,
                },
            )

            if not self.dry_run:
                IndexBuilder(self.index_path).build(result.documents)
                if self.publish is not None:
                    await self.publish(self.index_path)
                if not self.skip_snapshot:
                    await self.snapshot_store.save(snapshot)

            result.success = True
        except Exception as e:
            logger.error(f"Reindex failed: {e}", exc_info=True)
            result = ReindexResult(error=str(e))

        result.duration_ms = int((time.monotonic() - start) * 1000)
        return result


async def _run(args: Any, config: ServiceConfig) -> ReindexResult:
    runtime = build_runtime(config)
    await runtime.connect()
    try:
        publish: Optional[IndexPublisher] = None
        index_path = args.index_path or config.search.index_path
        if index_path is None:
            index_path = str(Path(tempfile.mkdtemp()) / Path(config.s3.index_key).name)
            publish = S3IndexSource(runtime.objects, config.s3.index_key).publish

        reindexer = Reindexer(
            store=runtime.store,
            snapshot_store=runtime.materializer.store,
            index_path=index_path,
            publish=publish,
            dry_run=args.dry_run,
            skip_snapshot=args.skip_snapshot,
        )
        return await reindexer.run()
    finally:
        await runtime.close()


def main() -> None:
    """CLI entry point for the reindex tool."""
    parser = argparse.ArgumentParser(
        description="Rebuild the index snapshot and the full-text index from the catalog table"
    )
    parser.add_argument("--index-path", help="Write the index file here instead of uploading it")
    parser.add_argument("--skip-snapshot", action="store_true", help="Only rebuild the full-text index")
    parser.add_argument("--dry-run", action="store_true", help="Scan and count, don't write")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    try:
        config = ServiceConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    result = asyncio.run(_run(args, config))

    if result.success:
        print("Reindex completed successfully")
        print(f"  Records scanned: {result.scanned}")
        print(f"  Libraries: {result.libraries}")
        print(f"  Items indexed: {result.items}")
        print(f"  Share grants: {result.shares}")
        print(f"  Skipped: {result.skipped} (orphans: {result.orphans})")
        print(f"  Duration: {result.duration_ms}ms")
        sys.exit(0)
    else:
        print(f"Reindex failed: {result.error}")
        sys.exit(1)


if __name__ == "__main__":
    main()
