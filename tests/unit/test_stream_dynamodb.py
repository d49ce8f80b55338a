"""
Unit tests for the DynamoDB Streams change stream against a stub client.

Tests cover:
- Expired iterators resume after the committed checkpoint
- Trimmed shards restart at TRIM_HORIZON
- A closed parent shard hands off to its child shard
- Other read failures surface as StreamError
"""

import asyncio

import pytest
from botocore.exceptions import ClientError

from alexandria.catalog_sync.config import AwsConfig, StreamConfig
from alexandria.catalog_sync.stream import DynamoDBChangeStream, StreamError
from tests.records import insert, item_image

ARN = "arn:aws:dynamodb:eu-west-3:123456789012:table/alexandria/stream/2024-01-01T00:00:00.000"


def client_error(code: str, operation: str = "GetRecords") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def numbered(sequence: str) -> dict:
    record = insert(item_image("u1", "l1", f"i{sequence}", f"Book {sequence}"))
    record["dynamodb"]["SequenceNumber"] = sequence
    return record


class FakeShard:
    def __init__(self, shard_id, records, parent=None, closed=False):
        self.shard_id = shard_id
        self.records = records
        self.parent = parent
        self.closed = closed

    def describe(self) -> dict:
        shard = {"ShardId": self.shard_id}
        if self.parent:
            shard["ParentShardId"] = self.parent
        return shard


class FakeStreamsClient:
    """Minimal stand-in for the aiobotocore DynamoDB Streams client.

    Iterators are "<shard>:<position>" strings.
    """

    def __init__(self, shards) -> None:
        self.shards = {shard.shard_id: shard for shard in shards}
        self.iterator_requests: list[dict] = []
        self.errors: list[ClientError] = []

    async def describe_stream(self, StreamArn, ExclusiveStartShardId=None, Limit=None):
        ids = list(self.shards)
        start = ids.index(ExclusiveStartShardId) + 1 if ExclusiveStartShardId else 0
        # One shard per page so listing has to follow LastEvaluatedShardId
        page = ids[start : start + 1]
        description = {"Shards": [self.shards[i].describe() for i in page]}
        if start + 1 < len(ids):
            description["LastEvaluatedShardId"] = page[-1]
        return {"StreamDescription": description}

    async def get_shard_iterator(self, StreamArn, ShardId, ShardIteratorType, SequenceNumber=None):
        self.iterator_requests.append(
            {"ShardId": ShardId, "ShardIteratorType": ShardIteratorType, "SequenceNumber": SequenceNumber}
        )
        records = self.shards[ShardId].records
        if ShardIteratorType == "TRIM_HORIZON":
            position = 0
        elif ShardIteratorType == "LATEST":
            position = len(records)
        else:
            sequences = [r["dynamodb"]["SequenceNumber"] for r in records]
            position = sequences.index(SequenceNumber) + 1
        return {"ShardIterator": f"{ShardId}:{position}"}

    async def get_records(self, ShardIterator, Limit):
        if self.errors:
            raise self.errors.pop(0)
        shard_id, position = ShardIterator.split(":")
        shard = self.shards[shard_id]
        start = int(position)
        served = shard.records[start : start + Limit]
        end = start + len(served)
        response = {"Records": served}
        if not (shard.closed and end >= len(shard.records)):
            response["NextShardIterator"] = f"{shard_id}:{end}"
        return response


async def take(stream, count, on_batch=None):
    """Collect `count` batches, committing each one."""
    batches = []

    async def collect():
        async for batch in stream.batches():
            batches.append(batch)
            await stream.commit(batch)
            if on_batch is not None:
                on_batch(len(batches))
            if len(batches) == count:
                break

    await asyncio.wait_for(collect(), timeout=5)
    return batches


def sequences(batch) -> list[str]:
    return [r["dynamodb"]["SequenceNumber"] for r in batch.records]


def make_stream(client, **overrides) -> DynamoDBChangeStream:
    config = StreamConfig(stream_arn=ARN, poll_interval_ms=0, **overrides)
    return DynamoDBChangeStream(config, AwsConfig(), client=client)


class TestIteratorRecovery:
    """Tests for GetRecords failures that the stream recovers from."""

    @pytest.mark.asyncio
    async def test_expired_iterator_resumes_after_checkpoint(self):
        client = FakeStreamsClient([FakeShard("s1", [numbered("1"), numbered("2")])])
        stream = make_stream(client, max_records_per_get=1)

        def expire_after_first(seen):
            if seen == 1:
                client.errors.append(client_error("ExpiredIteratorException"))

        batches = await take(stream, 2, on_batch=expire_after_first)

        assert [sequences(b) for b in batches] == [["1"], ["2"]]
        assert client.iterator_requests[-1] == {
            "ShardId": "s1",
            "ShardIteratorType": "AFTER_SEQUENCE_NUMBER",
            "SequenceNumber": "1",
        }

    @pytest.mark.asyncio
    async def test_trimmed_shard_restarts_at_trim_horizon(self):
        """Records trimmed past the checkpoint are read again from the oldest one."""
        client = FakeStreamsClient([FakeShard("s1", [numbered("1"), numbered("2")])])
        stream = make_stream(client, max_records_per_get=1)

        def trim_after_first(seen):
            if seen == 1:
                client.errors.append(client_error("TrimmedDataAccessException"))

        batches = await take(stream, 2, on_batch=trim_after_first)

        assert [sequences(b) for b in batches] == [["1"], ["1"]]
        assert len(client.iterator_requests) == 2
        assert client.iterator_requests[-1] == {
            "ShardId": "s1",
            "ShardIteratorType": "TRIM_HORIZON",
            "SequenceNumber": None,
        }

    @pytest.mark.asyncio
    async def test_other_errors_raise_stream_error(self):
        client = FakeStreamsClient([FakeShard("s1", [numbered("1")])])
        client.errors.append(client_error("AccessDeniedException"))
        stream = make_stream(client)

        with pytest.raises(StreamError):
            await take(stream, 1)


class TestShardLineage:
    """Tests for closed shards and their children."""

    @pytest.mark.asyncio
    async def test_closed_parent_hands_off_to_child(self):
        parent = FakeShard("p", [numbered("1"), numbered("2")], closed=True)
        child = FakeShard("c", [numbered("3")], parent="p")
        client = FakeStreamsClient([parent, child])
        stream = make_stream(client)

        batches = await take(stream, 2)

        assert [(b.shard_id, sequences(b)) for b in batches] == [
            ("p", ["1", "2"]),
            ("c", ["3"]),
        ]
        assert [r["ShardId"] for r in client.iterator_requests] == ["p", "c"]

    @pytest.mark.asyncio
    async def test_child_waits_for_open_parent(self):
        """A child is not read while its parent still has an iterator."""
        parent = FakeShard("p", [numbered("1")])
        child = FakeShard("c", [numbered("2")], parent="p")
        client = FakeStreamsClient([parent, child])
        stream = make_stream(client)

        batches = await take(stream, 1)

        assert [b.shard_id for b in batches] == ["p"]
        assert [r["ShardId"] for r in client.iterator_requests] == ["p"]
