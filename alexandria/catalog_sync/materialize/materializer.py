"""
Index materializer batch driver.

One invocation = one batch of stream records:
    download snapshot -> apply every record in order -> upload once if mutated

Invariants:
    - Records are applied sequentially against a single snapshot
    - A missing snapshot starts from an empty one
    - A snapshot read failure aborts the batch before anything is applied
    - Nothing is uploaded when no handler reported a mutation

How to change safely:
    - Keep I/O out of the handlers; they only see the in-memory snapshot
    - SnapshotWriteError must reach the caller so the batch is redelivered
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

from ..dispatch import Dispatcher, RoutingTable
from .handlers import ROUTES
from .snapshot import IndexSnapshot
from .store import SnapshotStore

logger = logging.getLogger(__name__)


@dataclass
class MaterializeResult:
    """Outcome of one batch.

    Attributes:
        processed: Records seen
        mutated: Records that changed the snapshot
        uploaded: Whether the snapshot was written back
    """

    processed: int = 0
    mutated: int = 0
    uploaded: bool = False


class Materializer:
    """Maintains the index snapshot from change-stream batches.

    Example:
        >>> materializer = Materializer(S3SnapshotStore(objects, "indexes/libraries.json"))
        >>> result = await materializer.process_batch(event["Records"])
        >>> result.uploaded
        True
    """

    def __init__(self, store: SnapshotStore, routes: Optional[RoutingTable] = None) -> None:
        """Initialize the materializer.

        Args:
            store: Snapshot persistence
            routes: Routing table (defaults to the snapshot handlers)
        """
        self.store = store
        self.dispatcher = Dispatcher(routes if routes is not None else ROUTES, name="materializer")

    async def process_batch(self, records: Iterable[Mapping[str, Any]]) -> MaterializeResult:
        """Apply a batch of records to the snapshot.

        Raises:
            SnapshotReadError: If the stored snapshot cannot be read
            SnapshotWriteError: If the updated snapshot cannot be uploaded
        """
        snapshot = await self.store.load()
        if snapshot is None:
            snapshot = IndexSnapshot()

        result = MaterializeResult()
        for record in records:
            result.processed += 1
            try:
                mutated = await self.dispatcher.dispatch(record, snapshot)
            except Exception as e:
                logger.error(
                    f"Snapshot handler failed: {e}",
                    extra={"event_name": record.get("eventName")},
                    exc_info=True,
                )
                continue
            if mutated:
                result.mutated += 1

        if result.mutated == 0:
            logger.info("No snapshot change in batch", extra={"records": result.processed})
            return result

        await self.store.save(snapshot)
        result.uploaded = True
        logger.info(
            "Snapshot updated",
            extra={"records": result.processed, "mutated": result.mutated},
        )
        return result
