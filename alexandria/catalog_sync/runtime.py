"""
Component wiring shared by the worker, the batch handlers and the tools.

Invariants:
    - One primary store and one S3 client per runtime
    - Components are built from ServiceConfig only

How to change safely:
    - New components get an enable flag in config before being wired here
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .config import ServiceConfig
from .cursor import CursorCodec
from .materialize import Materializer, S3SnapshotStore
from .propagate import ConsistencyPropagator
from .s3 import S3Objects
from .search import LocalIndexSource, S3IndexSource, SearchExecutor
from .store import DynamoPrimaryStore

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Connected service components.

    Attributes:
        config: Configuration the runtime was built from
        store: Catalog table access
        objects: Artifact bucket access
        propagator: Rename propagation consumer
        materializer: Snapshot consumer
        search: Search executor
    """

    config: ServiceConfig
    store: DynamoPrimaryStore
    objects: S3Objects
    propagator: ConsistencyPropagator
    materializer: Materializer
    search: SearchExecutor

    async def connect(self) -> None:
        await self.store.connect()
        await self.objects.connect()

    async def close(self) -> None:
        await self.store.close()
        await self.objects.close()


def build_runtime(config: ServiceConfig) -> Runtime:
    """Build (without connecting) every component from configuration."""
    codec: Optional[CursorCodec] = None
    if config.cursor.secret_key:
        codec = CursorCodec(config.cursor.secret_key)

    store = DynamoPrimaryStore(config.dynamodb, config.aws, codec=codec)
    objects = S3Objects(config.s3.bucket, config.aws)

    if config.search.index_path:
        source = LocalIndexSource(config.search.index_path)
    else:
        source = S3IndexSource(objects, config.s3.index_key, config.search.cache_dir)

    return Runtime(
        config=config,
        store=store,
        objects=objects,
        propagator=ConsistencyPropagator(
            store,
            chunk_size=config.propagator.chunk_size,
            max_concurrent_chunks=config.propagator.max_concurrent_chunks,
        ),
        materializer=Materializer(S3SnapshotStore(objects, config.s3.snapshot_key)),
        search=SearchExecutor(
            store,
            source,
            fuzziness=config.search.fuzziness,
            max_results=config.search.max_results,
        ),
    )
