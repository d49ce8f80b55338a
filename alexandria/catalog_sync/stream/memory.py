"""
In-memory change stream for testing.

Invariants:
    - All data is lost on process exit
    - Batches are delivered in the order they were put
    - batches() ends once the stream is closed and drained

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the ChangeStream protocol
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List

from .base import StreamBatch, StreamConnectionError

logger = logging.getLogger(__name__)


class InMemoryChangeStream:
    """Queue-backed implementation of ChangeStream.

    Attributes:
        committed: Batches committed by the consumer, in order

    Example:
        >>> stream = InMemoryChangeStream()
        >>> await stream.connect()
        >>> stream.put_batch([record])
        >>> stream.finish()
        >>> async for batch in stream.batches():
        ...     await stream.commit(batch)
    """

    def __init__(self, shard_id: str = "shardId-000000000000") -> None:
        self.shard_id = shard_id
        self._queue: asyncio.Queue[StreamBatch | None] = asyncio.Queue()
        self._connected = False
        self._sequence = 0
        self.committed: List[StreamBatch] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True
        logger.debug("InMemoryChangeStream connected")

    async def close(self) -> None:
        self._connected = False
        self.finish()
        logger.debug("InMemoryChangeStream closed")

    def put_batch(self, records: List[Dict[str, Any]]) -> StreamBatch:
        """Queue a batch, assigning sequence numbers to its records."""
        stamped = []
        for record in records:
            self._sequence += 1
            record = dict(record)
            record["dynamodb"] = dict(record.get("dynamodb") or {})
            record["dynamodb"].setdefault("SequenceNumber", f"{self._sequence:021d}")
            stamped.append(record)

        batch = StreamBatch(shard_id=self.shard_id, records=stamped)
        self._queue.put_nowait(batch)
        return batch

    def finish(self) -> None:
        """End batches() once the queued batches are consumed."""
        self._queue.put_nowait(None)

    async def batches(self) -> AsyncIterator[StreamBatch]:
        if not self._connected:
            raise StreamConnectionError("Not connected")

        while True:
            batch = await self._queue.get()
            if batch is None:
                return
            yield batch

    async def commit(self, batch: StreamBatch) -> None:
        self.committed.append(batch)
