"""
S3 object access for the derived artifacts.

Both the snapshot document and the full-text index live as single objects in
one bucket. This module wraps the aiobotocore S3 client with the two
operations they need and a uniform "not found" answer.

Invariants:
    - A missing object (NoSuchKey / 404) reads as None, never as an error
    - Any other failure propagates as botocore ClientError / BotoCoreError

How to change safely:
    - Callers translate errors into their own exception types
"""

from __future__ import annotations

import logging
from typing import Any

from aiobotocore.session import get_session
from botocore.exceptions import ClientError

from .config import AwsConfig

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = frozenset({"NoSuchKey", "404", "NotFound"})


def is_not_found(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") in NOT_FOUND_CODES


class S3Objects:
    """Reads and writes whole objects of one bucket.

    Example:
        >>> objects = S3Objects("alexandria-indexes", AwsConfig())
        >>> await objects.connect()
        >>> raw = await objects.get_bytes("indexes/libraries.json")
    """

    def __init__(self, bucket: str, aws: AwsConfig, client: Any = None) -> None:
        """Initialize the object store.

        Args:
            bucket: Bucket name
            aws: AWS client configuration
            client: Pre-built S3 client (skips connect)
        """
        self.bucket = bucket
        self.aws = aws
        self._client = client
        self._client_ctx = None

    async def connect(self) -> None:
        """Create the S3 client."""
        if self._client is not None:
            return

        session = get_session()
        self._client_ctx = session.create_client("s3", **self.aws.client_kwargs())
        self._client = await self._client_ctx.__aenter__()
        logger.info("Connected to S3", extra={"bucket": self.bucket})

    async def close(self) -> None:
        """Close the S3 client."""
        if self._client_ctx is not None:
            try:
                await self._client_ctx.__aexit__(None, None, None)
            except Exception as e:
                logger.warning(f"Error closing S3 client: {e}")
            self._client_ctx = None
        self._client = None

    async def _require_client(self) -> Any:
        if self._client is None:
            await self.connect()
        return self._client

    async def get_bytes(self, key: str) -> bytes | None:
        """Read an object, or None if it does not exist."""
        client = await self._require_client()
        try:
            response = await client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if is_not_found(e):
                return None
            raise

        return await response["Body"].read()

    async def put_bytes(self, key: str, body: bytes, content_type: str) -> None:
        """Write an object, replacing any previous version."""
        client = await self._require_client()
        await client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=body,
            ContentType=content_type,
        )
        logger.debug(
            "Object uploaded to S3",
            extra={"bucket": self.bucket, "key": key, "size_bytes": len(body)},
        )
