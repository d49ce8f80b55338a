"""
Unit tests for the S3-backed snapshot store and index source.

Tests cover:
- Missing object reads as "no snapshot"
- Download and parse failures raise SnapshotReadError
- Upload failures raise SnapshotWriteError
- Index download into the local cache
"""

import json

import pytest
from botocore.exceptions import ClientError

from alexandria.catalog_sync.config import AwsConfig
from alexandria.catalog_sync.materialize import (
    IndexSnapshot,
    S3SnapshotStore,
    SnapshotReadError,
    SnapshotWriteError,
)
from alexandria.catalog_sync.s3 import S3Objects
from alexandria.catalog_sync.search import S3IndexSource


def client_error(code: str, operation: str = "GetObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeBody:
    def __init__(self, data: bytes) -> None:
        self._data = data

    async def read(self) -> bytes:
        return self._data


class FakeS3Client:
    """Minimal stand-in for the aiobotocore S3 client."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.get_error: ClientError | None = None
        self.put_error: ClientError | None = None
        self.puts: list[dict] = []

    async def get_object(self, Bucket, Key):
        if self.get_error is not None:
            raise self.get_error
        if Key not in self.objects:
            raise client_error("NoSuchKey")
        return {"Body": FakeBody(self.objects[Key])}

    async def put_object(self, Bucket, Key, Body, ContentType):
        if self.put_error is not None:
            raise self.put_error
        self.objects[Key] = Body
        self.puts.append({"Bucket": Bucket, "Key": Key, "ContentType": ContentType})


@pytest.fixture
def client():
    return FakeS3Client()


@pytest.fixture
def objects(client):
    return S3Objects("alexandria-indexes", AwsConfig(), client=client)


class TestS3SnapshotStore:
    """Tests for snapshot persistence in S3."""

    @pytest.mark.asyncio
    async def test_missing_object_is_none(self, objects):
        """No snapshot yet is not an error."""
        store = S3SnapshotStore(objects, "indexes/libraries.json")

        assert await store.load() is None

    @pytest.mark.asyncio
    async def test_save_then_load(self, objects, client):
        """A saved snapshot is uploaded as JSON and loads back."""
        store = S3SnapshotStore(objects, "indexes/libraries.json")
        snapshot = IndexSnapshot.from_dict(
            {"libraries": {"u1": {"l1": {"id": "l1", "items": {}}}}, "shares": {}}
        )

        await store.save(snapshot)

        assert client.puts[0]["ContentType"] == "application/json"
        assert json.loads(client.objects["indexes/libraries.json"])["libraries"]["u1"]["l1"]["id"] == "l1"
        assert await store.load() == snapshot

    @pytest.mark.asyncio
    async def test_access_denied_is_read_error(self, objects, client):
        """Only "not found" is an empty snapshot; other errors abort."""
        client.get_error = client_error("AccessDenied")
        store = S3SnapshotStore(objects, "indexes/libraries.json")

        with pytest.raises(SnapshotReadError):
            await store.load()

    @pytest.mark.parametrize("body", [b"{not json", b"[1, 2]", b'{"libraries": {"u1": {"l1": {}}}}'])
    @pytest.mark.asyncio
    async def test_corrupt_document_is_read_error(self, objects, client, body):
        """Unparseable documents never load as an empty snapshot."""
        client.objects["indexes/libraries.json"] = body
        store = S3SnapshotStore(objects, "indexes/libraries.json")

        with pytest.raises(SnapshotReadError):
            await store.load()

    @pytest.mark.asyncio
    async def test_upload_failure_is_write_error(self, objects, client):
        """Upload errors surface as SnapshotWriteError."""
        client.put_error = client_error("SlowDown", "PutObject")
        store = S3SnapshotStore(objects, "indexes/libraries.json")

        with pytest.raises(SnapshotWriteError):
            await store.save(IndexSnapshot())


class TestS3IndexSource:
    """Tests for fetching the index file from S3."""

    @pytest.mark.asyncio
    async def test_not_built_yet(self, objects, tmp_path):
        """A missing index object fetches as None."""
        source = S3IndexSource(objects, "indexes/global-index.sqlite", cache_dir=tmp_path)

        assert await source.fetch() is None

    @pytest.mark.asyncio
    async def test_fetch_writes_cache_file(self, objects, client, tmp_path):
        """The object is written to the cache directory."""
        client.objects["indexes/global-index.sqlite"] = b"sqlite bytes"
        source = S3IndexSource(objects, "indexes/global-index.sqlite", cache_dir=tmp_path / "cache")

        path = await source.fetch()

        assert path == tmp_path / "cache" / "global-index.sqlite"
        assert path.read_bytes() == b"sqlite bytes"

    @pytest.mark.asyncio
    async def test_publish_uploads_file(self, objects, client, tmp_path):
        """publish() uploads a local index file under the index key."""
        built = tmp_path / "built.sqlite"
        built.write_bytes(b"fresh index")
        source = S3IndexSource(objects, "indexes/global-index.sqlite")

        await source.publish(built)

        assert client.objects["indexes/global-index.sqlite"] == b"fresh index"

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self, objects, client, tmp_path):
        """Errors other than "not found" reach the caller."""
        client.get_error = client_error("AccessDenied")
        source = S3IndexSource(objects, "indexes/global-index.sqlite", cache_dir=tmp_path)

        with pytest.raises(ClientError):
            await source.fetch()
