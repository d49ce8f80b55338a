"""
DynamoDB implementation of the primary store.

Uses aiobotocore for async access to the catalog table.

Invariants:
    - Child listing goes through the children index (GSI1), all pages
    - Batch writes use BatchExecuteStatement (max 25 PartiQL statements)
    - Batch reads use BatchGetItem (max 100 keys per request)
    - Pagination state leaves this module only as an encrypted cursor

How to change safely:
    - Test with DynamoDB Local before deploying to AWS
    - Keep statement rendering in UpdateStatement, not here
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Sequence

from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from .. import keys
from ..config import AwsConfig, DynamoDBConfig, MAX_BATCH_STATEMENTS
from ..cursor import CursorCodec
from ..model import ShareGrant, deserialize_image, serialize_image, serialize_value
from .base import BatchWriteResult, ItemPage, StoreError, UpdateStatement

logger = logging.getLogger(__name__)

MAX_BATCH_GET_KEYS = 100

# Requests per chunk while BatchGetItem keeps returning UnprocessedKeys
MAX_BATCH_GET_ROUNDS = 5
UNPROCESSED_BACKOFF_SECONDS = 0.05


class DynamoPrimaryStore:
    """Catalog table access through aiobotocore.

    Attributes:
        config: Table configuration
        aws: Client configuration
        codec: Cursor codec for list_library_items (optional)

    Example:
        >>> store = DynamoPrimaryStore(DynamoDBConfig(table_name="alexandria"), AwsConfig())
        >>> await store.connect()
        >>> async for item in store.query_children("owner-1", "library-1"):
        ...     print(item["Title"])
    """

    def __init__(
        self,
        config: DynamoDBConfig,
        aws: AwsConfig,
        codec: CursorCodec | None = None,
        client: Any = None,
    ) -> None:
        """Initialize the store.

        Args:
            config: Table configuration
            aws: AWS client configuration
            codec: Cursor codec, required for list_library_items
            client: Pre-built DynamoDB client (skips connect)
        """
        self.config = config
        self.aws = aws
        self.codec = codec
        self._client = client
        self._client_ctx = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Create the DynamoDB client."""
        if self._client is not None:
            return

        session = get_session()
        self._client_ctx = session.create_client("dynamodb", **self.aws.client_kwargs())
        self._client = await self._client_ctx.__aenter__()
        logger.info(
            "Connected to DynamoDB",
            extra={"table": self.config.table_name, "endpoint": self.aws.endpoint_url or "AWS"},
        )

    async def close(self) -> None:
        """Close the DynamoDB client."""
        if self._client_ctx is not None:
            try:
                await self._client_ctx.__aexit__(None, None, None)
            except Exception as e:
                logger.warning(f"Error closing DynamoDB client: {e}")
            self._client_ctx = None
        self._client = None

    def _require_client(self) -> Any:
        if self._client is None:
            raise StoreError("Not connected to DynamoDB")
        return self._client

    def _children_query(
        self,
        owner_id: str,
        library_id: str,
        collection_id: str | None,
    ) -> dict[str, Any]:
        query: dict[str, Any] = {
            "TableName": self.config.table_name,
            "IndexName": self.config.children_index,
            "KeyConditionExpression": "#GSI1PK = :gsi1pk and begins_with(#GSI1SK, :item_prefix)",
            "ExpressionAttributeNames": {"#GSI1PK": "GSI1PK", "#GSI1SK": "GSI1SK"},
            "ExpressionAttributeValues": {
                ":gsi1pk": serialize_value(keys.item_gsi1pk(owner_id, library_id)),
                ":item_prefix": serialize_value(keys.ITEM_PREFIX),
            },
        }
        if collection_id is not None:
            query["FilterExpression"] = "#CollectionId = :collection_id"
            query["ExpressionAttributeNames"]["#CollectionId"] = "CollectionId"
            query["ExpressionAttributeValues"][":collection_id"] = serialize_value(collection_id)
        return query

    async def query_children(
        self,
        owner_id: str,
        library_id: str,
        collection_id: str | None = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield every item of a library through the children index."""
        client = self._require_client()
        paginator = client.get_paginator("query")
        query = self._children_query(owner_id, library_id, collection_id)

        try:
            async for page in paginator.paginate(**query):
                for item in page.get("Items", []):
                    yield deserialize_image(item)
        except (ClientError, BotoCoreError) as e:
            raise StoreError(f"Failed to query items of library {library_id}: {e}") from e

    async def execute_batch(self, statements: Sequence[UpdateStatement]) -> BatchWriteResult:
        """Execute one chunk of update statements."""
        if len(statements) > MAX_BATCH_STATEMENTS:
            raise ValueError(f"At most {MAX_BATCH_STATEMENTS} statements per batch")

        client = self._require_client()
        requests = []
        for statement in statements:
            text, params = statement.to_partiql(self.config.table_name)
            requests.append(
                {"Statement": text, "Parameters": [serialize_value(p) for p in params]}
            )

        try:
            response = await client.batch_execute_statement(Statements=requests)
        except (ClientError, BotoCoreError) as e:
            raise StoreError(f"Batch statement execution failed: {e}") from e

        result = BatchWriteResult()
        for entry in response.get("Responses", []):
            error = entry.get("Error")
            if error:
                result.failed += 1
                result.errors.append(f"{error.get('Code')}: {error.get('Message')}")
            else:
                result.succeeded += 1
        return result

    async def set_sort_key(self, pk: str, sk: str, gsi1sk: str) -> None:
        """Rewrite GSI1SK of one existing item."""
        client = self._require_client()
        try:
            await client.update_item(
                TableName=self.config.table_name,
                Key=serialize_image({"PK": pk, "SK": sk}),
                UpdateExpression="SET GSI1SK = :gsi1sk",
                ConditionExpression="attribute_exists(PK)",
                ExpressionAttributeValues={":gsi1sk": serialize_value(gsi1sk)},
            )
        except (ClientError, BotoCoreError) as e:
            raise StoreError(f"Failed to update sort key of {pk}/{sk}: {e}") from e

    async def batch_get_items(self, keys: Sequence[tuple[str, str]]) -> list[dict[str, Any]]:
        """Read items by table key, 100 keys per request.

        Unprocessed keys are requested again, up to MAX_BATCH_GET_ROUNDS
        requests per chunk.

        Raises:
            StoreError: If a request fails or keys are still unprocessed
        """
        client = self._require_client()
        items: list[dict[str, Any]] = []

        for start in range(0, len(keys), MAX_BATCH_GET_KEYS):
            chunk = keys[start : start + MAX_BATCH_GET_KEYS]
            pending = [serialize_image({"PK": pk, "SK": sk}) for pk, sk in chunk]
            items.extend(await self._batch_get_chunk(client, pending))

        return items

    async def _batch_get_chunk(self, client: Any, pending: list[dict[str, Any]]) -> list[dict[str, Any]]:
        table = self.config.table_name
        items: list[dict[str, Any]] = []

        for round_number in range(1, MAX_BATCH_GET_ROUNDS + 1):
            try:
                response = await client.batch_get_item(RequestItems={table: {"Keys": pending}})
            except (ClientError, BotoCoreError) as e:
                raise StoreError(f"Batch read failed: {e}") from e

            items.extend(deserialize_image(i) for i in response.get("Responses", {}).get(table, []))

            pending = response.get("UnprocessedKeys", {}).get(table, {}).get("Keys", [])
            if not pending:
                return items

            logger.warning(
                "Batch read left keys unprocessed",
                extra={"table": table, "unprocessed": len(pending), "round": round_number},
            )
            if round_number < MAX_BATCH_GET_ROUNDS:
                await asyncio.sleep(UNPROCESSED_BACKOFF_SECONDS * 2 ** (round_number - 1))

        raise StoreError(
            f"Batch read left {len(pending)} keys unprocessed after {MAX_BATCH_GET_ROUNDS} requests"
        )

    async def query_share_grants(self, grantee_id: str) -> list[ShareGrant]:
        """List share grants stored under the grantee's partition."""
        client = self._require_client()
        paginator = client.get_paginator("query")
        grants: list[ShareGrant] = []

        try:
            async for page in paginator.paginate(
                TableName=self.config.table_name,
                KeyConditionExpression="#PK = :pk and begins_with(#SK, :prefix)",
                ExpressionAttributeNames={"#PK": "PK", "#SK": "SK"},
                ExpressionAttributeValues={
                    ":pk": serialize_value(keys.shared_library_pk(grantee_id)),
                    ":prefix": serialize_value(keys.shared_library_sk("")),
                },
            ):
                for item in page.get("Items", []):
                    grants.append(ShareGrant.from_image(deserialize_image(item)))
        except (ClientError, BotoCoreError) as e:
            raise StoreError(f"Failed to query share grants of {grantee_id}: {e}") from e

        return grants

    async def list_library_items(
        self,
        owner_id: str,
        library_id: str,
        cursor: str | None = None,
        page_size: int = 50,
    ) -> ItemPage:
        """Read one page of a library's items, ordered by the children index."""
        if self.codec is None:
            raise StoreError("Cursor pagination requires a cursor key")

        client = self._require_client()
        query = self._children_query(owner_id, library_id, None)
        query["Limit"] = page_size
        if cursor:
            query["ExclusiveStartKey"] = serialize_image(self.codec.decode(cursor))

        try:
            response = await client.query(**query)
        except (ClientError, BotoCoreError) as e:
            raise StoreError(f"Failed to list items of library {library_id}: {e}") from e

        last_key = response.get("LastEvaluatedKey")
        return ItemPage(
            items=[deserialize_image(i) for i in response.get("Items", [])],
            next_cursor=self.codec.encode(deserialize_image(last_key)) if last_key else None,
        )

    async def scan_entities(self) -> AsyncIterator[dict[str, Any]]:
        """Yield every item of the table."""
        client = self._require_client()
        paginator = client.get_paginator("scan")
        try:
            async for page in paginator.paginate(TableName=self.config.table_name):
                for item in page.get("Items", []):
                    yield deserialize_image(item)
        except (ClientError, BotoCoreError) as e:
            raise StoreError(f"Table scan failed: {e}") from e
