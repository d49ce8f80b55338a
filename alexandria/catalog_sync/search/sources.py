"""
Where the search executor finds the index file.

Invariants:
    - fetch() returns None when no index has been built yet
    - The returned path is a complete index file
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Protocol

from ..s3 import S3Objects

logger = logging.getLogger(__name__)


class IndexSource(Protocol):
    async def fetch(self) -> Optional[Path]:
        ...


class LocalIndexSource:
    """Index file on the local filesystem."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    async def fetch(self) -> Optional[Path]:
        if not self.path.exists():
            logger.info("Index file not built yet", extra={"path": str(self.path)})
            return None
        return self.path


class S3IndexSource:
    """Index object in S3, downloaded to a local cache file on every fetch.

    Raises botocore errors other than "not found" to the caller.
    """

    def __init__(self, objects: S3Objects, key: str, cache_dir: str | Path | None = None) -> None:
        self.objects = objects
        self.key = key
        self.cache_dir = Path(cache_dir) if cache_dir else Path(tempfile.gettempdir())

    @property
    def cache_path(self) -> Path:
        return self.cache_dir / Path(self.key).name

    async def fetch(self) -> Optional[Path]:
        raw = await self.objects.get_bytes(self.key)
        if raw is None:
            logger.info("Index object not built yet", extra={"key": self.key})
            return None

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".index.", dir=str(self.cache_dir))
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(raw)
            os.replace(tmp_name, self.cache_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.debug(
            "Index downloaded",
            extra={"key": self.key, "path": str(self.cache_path), "size_bytes": len(raw)},
        )
        return self.cache_path

    async def publish(self, path: str | Path) -> None:
        """Upload a freshly built index file."""
        body = Path(path).read_bytes()
        await self.objects.put_bytes(self.key, body, "application/vnd.sqlite3")
        logger.info("Index uploaded", extra={"key": self.key, "size_bytes": len(body)})
