"""
Snapshot persistence.

Invariants:
    - load() returns None only when no snapshot was ever written
    - Any other read failure raises SnapshotReadError, so the caller aborts
      instead of overwriting the last good snapshot with a partial one
    - save() replaces the whole document

How to change safely:
    - There is no concurrency check on save; concurrent writers race and
      the last upload wins
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from botocore.exceptions import BotoCoreError, ClientError

from ..s3 import S3Objects
from .snapshot import IndexSnapshot

logger = logging.getLogger(__name__)


class SnapshotReadError(Exception):
    """The snapshot exists but could not be read or parsed."""

    pass


class SnapshotWriteError(Exception):
    """The snapshot could not be uploaded."""

    pass


class SnapshotStore(Protocol):
    """Where the snapshot document lives."""

    async def load(self) -> Optional[IndexSnapshot]:
        ...

    async def save(self, snapshot: IndexSnapshot) -> None:
        ...


class S3SnapshotStore:
    """Snapshot stored as one JSON object in S3.

    Example:
        >>> store = S3SnapshotStore(S3Objects("alexandria-indexes", AwsConfig()), "indexes/libraries.json")
        >>> snapshot = await store.load() or IndexSnapshot()
    """

    def __init__(self, objects: S3Objects, key: str) -> None:
        self.objects = objects
        self.key = key

    async def load(self) -> Optional[IndexSnapshot]:
        try:
            raw = await self.objects.get_bytes(self.key)
        except (ClientError, BotoCoreError) as e:
            raise SnapshotReadError(f"Failed to download snapshot {self.key}: {e}") from e

        if raw is None:
            logger.info("No snapshot found, starting empty", extra={"key": self.key})
            return None

        try:
            return IndexSnapshot.from_json(raw)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise SnapshotReadError(f"Snapshot {self.key} is corrupt: {e}") from e

    async def save(self, snapshot: IndexSnapshot) -> None:
        body = snapshot.to_json().encode("utf-8")
        try:
            await self.objects.put_bytes(self.key, body, "application/json")
        except (ClientError, BotoCoreError) as e:
            raise SnapshotWriteError(f"Failed to upload snapshot {self.key}: {e}") from e

        logger.info(
            "Snapshot uploaded",
            extra={"key": self.key, "size_bytes": len(body), "items": snapshot.item_count()},
        )


class InMemorySnapshotStore:
    """Snapshot kept as serialized JSON in memory, for tests and local runs.

    Attributes:
        saves: Number of successful save() calls
        fail_reads: Make load() raise SnapshotReadError
        fail_writes: Make save() raise SnapshotWriteError
    """

    def __init__(self, snapshot: Optional[IndexSnapshot] = None) -> None:
        self._document: Optional[str] = snapshot.to_json() if snapshot is not None else None
        self.saves = 0
        self.fail_reads = False
        self.fail_writes = False

    @property
    def document(self) -> Optional[str]:
        return self._document

    async def load(self) -> Optional[IndexSnapshot]:
        if self.fail_reads:
            raise SnapshotReadError("Injected read failure")
        if self._document is None:
            return None
        return IndexSnapshot.from_json(self._document)

    async def save(self, snapshot: IndexSnapshot) -> None:
        if self.fail_writes:
            raise SnapshotWriteError("Injected write failure")
        self._document = snapshot.to_json()
        self.saves += 1
