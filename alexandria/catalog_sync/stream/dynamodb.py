"""
DynamoDB Streams change stream.

Polls every open shard of the table stream with GetRecords and yields one
batch per non-empty poll.

Invariants:
    - Shard iterators advance only through NextShardIterator
    - An expired iterator restarts after the last committed sequence number
    - Closed shards are dropped and the shard list is refreshed right away,
      so their children are picked up on the next poll
    - Checkpoints live in memory; a restart begins at the configured iterator type

How to change safely:
    - Test with DynamoDB Local before deploying to AWS
    - Keep Limit at or below 1000 (GetRecords maximum)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator

from aiobotocore.session import get_session
from botocore.exceptions import ClientError, EndpointConnectionError

from ..config import AwsConfig, StreamConfig
from .base import StreamBatch, StreamConnectionError, StreamError

logger = logging.getLogger(__name__)

# Polls between two shard listings
SHARD_REFRESH_POLLS = 30


class DynamoDBChangeStream:
    """DynamoDB Streams implementation of ChangeStream.

    Attributes:
        config: Stream configuration
        aws: AWS client configuration

    Example:
        >>> stream = DynamoDBChangeStream(StreamConfig(stream_arn=arn), AwsConfig())
        >>> await stream.connect()
        >>> async for batch in stream.batches():
        ...     await handle(batch.records)
        ...     await stream.commit(batch)
    """

    def __init__(self, config: StreamConfig, aws: AwsConfig, client: Any = None) -> None:
        self.config = config
        self.aws = aws
        self._client = client
        self._client_ctx = None
        self._connected = client is not None
        self._closing = False
        self._shard_iterators: dict[str, str | None] = {}
        self._checkpoints: dict[str, str] = {}
        self._finished_shards: set[str] = set()

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect to the table stream.

        Raises:
            StreamConnectionError: If the endpoint or the stream is unreachable
        """
        if self._connected:
            return

        if not self.config.stream_arn:
            raise StreamConnectionError("DYNAMODB_STREAM_ARN is not set")

        try:
            session = get_session()
            self._client_ctx = session.create_client("dynamodbstreams", **self.aws.client_kwargs())
            self._client = await self._client_ctx.__aenter__()
            await self._client.describe_stream(StreamArn=self.config.stream_arn, Limit=1)
        except EndpointConnectionError as e:
            raise StreamConnectionError(f"Failed to connect to DynamoDB Streams endpoint: {e}") from e
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code == "ResourceNotFoundException":
                raise StreamConnectionError(f"Stream '{self.config.stream_arn}' not found") from e
            raise StreamConnectionError(f"DynamoDB Streams error: {e}") from e

        self._connected = True
        logger.info(
            "Connected to DynamoDB Streams",
            extra={"stream_arn": self.config.stream_arn, "endpoint": self.aws.endpoint_url or "AWS"},
        )

    async def close(self) -> None:
        self._closing = True
        if self._client_ctx is not None:
            try:
                await self._client_ctx.__aexit__(None, None, None)
            except Exception as e:
                logger.warning(f"Error closing DynamoDB Streams client: {e}")
            self._client_ctx = None
        self._client = None
        self._connected = False
        self._shard_iterators.clear()
        logger.info("DynamoDB Streams connection closed")

    async def _list_shards(self) -> list[dict[str, Any]]:
        shards: list[dict[str, Any]] = []
        request: dict[str, Any] = {"StreamArn": self.config.stream_arn}
        while True:
            response = await self._client.describe_stream(**request)
            description = response["StreamDescription"]
            shards.extend(description.get("Shards", []))
            last = description.get("LastEvaluatedShardId")
            if not last:
                return shards
            request["ExclusiveStartShardId"] = last

    async def _iterator_for(self, shard_id: str) -> str | None:
        request: dict[str, Any] = {"StreamArn": self.config.stream_arn, "ShardId": shard_id}
        checkpoint = self._checkpoints.get(shard_id)
        if checkpoint:
            request["ShardIteratorType"] = "AFTER_SEQUENCE_NUMBER"
            request["SequenceNumber"] = checkpoint
        else:
            request["ShardIteratorType"] = self.config.iterator_type
        response = await self._client.get_shard_iterator(**request)
        return response.get("ShardIterator")

    async def _refresh_shards(self) -> None:
        for shard in await self._list_shards():
            shard_id = shard["ShardId"]
            if shard_id in self._shard_iterators or shard_id in self._finished_shards:
                continue
            parent = shard.get("ParentShardId")
            if parent and parent in self._shard_iterators:
                # Children are read only after their parent is drained
                continue
            self._shard_iterators[shard_id] = await self._iterator_for(shard_id)
        logger.debug("Shards refreshed", extra={"shards": len(self._shard_iterators)})

    async def batches(self) -> AsyncIterator[StreamBatch]:
        if not self._connected:
            raise StreamConnectionError("Not connected to DynamoDB Streams")

        polls = 0
        try:
            await self._refresh_shards()
            while not self._closing:
                got_records = False
                shard_closed = False
                for shard_id, iterator in list(self._shard_iterators.items()):
                    if self._closing:
                        return
                    if iterator is None:
                        del self._shard_iterators[shard_id]
                        self._finished_shards.add(shard_id)
                        shard_closed = True
                        continue

                    records = await self._get_records(shard_id, iterator)
                    if records:
                        got_records = True
                        yield StreamBatch(shard_id=shard_id, records=records)

                polls += 1
                if shard_closed or polls % SHARD_REFRESH_POLLS == 0 or not self._shard_iterators:
                    await self._refresh_shards()
                if not got_records:
                    await asyncio.sleep(self.config.poll_interval_ms / 1000.0)
        except ClientError as e:
            raise StreamError(f"DynamoDB Streams read failed: {e}") from e

    async def _get_records(self, shard_id: str, iterator: str) -> list[dict[str, Any]]:
        try:
            response = await self._client.get_records(
                ShardIterator=iterator,
                Limit=self.config.max_records_per_get,
            )
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code == "ExpiredIteratorException":
                logger.warning(f"Iterator expired for shard {shard_id}, recreating")
                self._shard_iterators[shard_id] = await self._iterator_for(shard_id)
                return []
            if error_code == "TrimmedDataAccessException":
                logger.warning(f"Shard {shard_id} trimmed past checkpoint, restarting at TRIM_HORIZON")
                self._checkpoints.pop(shard_id, None)
                response = await self._client.get_shard_iterator(
                    StreamArn=self.config.stream_arn,
                    ShardId=shard_id,
                    ShardIteratorType="TRIM_HORIZON",
                )
                self._shard_iterators[shard_id] = response.get("ShardIterator")
                return []
            raise

        self._shard_iterators[shard_id] = response.get("NextShardIterator")
        return response.get("Records", [])

    async def commit(self, batch: StreamBatch) -> None:
        sequence = batch.last_sequence_number
        if sequence:
            self._checkpoints[batch.shard_id] = sequence
