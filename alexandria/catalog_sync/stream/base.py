"""
Base protocol and types for change stream sources.

A change stream delivers the catalog table's change records in batches, one
shard at a time. Records are DynamoDB Stream records:

    {"eventName": "INSERT", "dynamodb": {"NewImage": {...}, "SequenceNumber": "..."}}

Invariants:
    - Records within a shard are delivered in commit order
    - Delivery is at-least-once; a batch that is not committed may come again
    - Different shards are not ordered relative to each other

How to change safely:
    - Protocol changes require updating every implementation
    - Consumers must stay idempotent
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol, runtime_checkable


class StreamError(Exception):
    """Base exception for change stream errors."""

    pass


class StreamConnectionError(StreamError):
    """The stream could not be reached or does not exist."""

    pass


@dataclass
class StreamBatch:
    """Records read from one shard in one poll.

    Attributes:
        shard_id: Shard the records come from
        records: Stream records in shard order
    """

    shard_id: str
    records: list[dict[str, Any]] = field(default_factory=list)

    @property
    def last_sequence_number(self) -> str | None:
        if not self.records:
            return None
        return self.records[-1].get("dynamodb", {}).get("SequenceNumber")

    def __len__(self) -> int:
        return len(self.records)


@runtime_checkable
class ChangeStream(Protocol):
    """Source of change record batches."""

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the stream.

        Raises:
            StreamConnectionError: If the stream cannot be reached
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    def batches(self) -> AsyncIterator[StreamBatch]:
        """Yield non-empty batches until closed.

        Raises:
            StreamError: On unrecoverable read failures
        """
        ...

    @abstractmethod
    async def commit(self, batch: StreamBatch) -> None:
        """Mark a batch as processed."""
        ...
