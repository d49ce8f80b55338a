"""
Batch entry points for function platforms (AWS Lambda style).

Each handler receives ``event = {"Records": [...]}`` with DynamoDB Stream
records, processes the whole batch, and returns a summary. Raising from a
handler makes the platform deliver the batch again.

    consistency_handler -> ConsistencyPropagator (never raises on write failures)
    index_handler       -> Materializer (raises on snapshot read/write failure)
    search_handler      -> SearchExecutor ({"requesterId": ..., "terms": [...]})

Invariants:
    - Configuration is read once per process
    - Clients are created and closed per invocation (one event loop each)
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from functools import lru_cache
from typing import Any

from .config import ServiceConfig
from .runtime import build_runtime

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def load_config() -> ServiceConfig:
    config = ServiceConfig.from_env()
    config.log_config()
    return config


def _records(event: dict[str, Any]) -> list[dict[str, Any]]:
    return list(event.get("Records") or [])


async def _propagate(records: list[dict[str, Any]]) -> dict[str, Any]:
    runtime = build_runtime(load_config())
    await runtime.connect()
    try:
        result = await runtime.propagator.process_batch(records)
    finally:
        await runtime.close()

    return {
        "processed": result.processed,
        "propagations": len(result.reports),
        "failedStatements": result.failed_statements,
    }


async def _materialize(records: list[dict[str, Any]]) -> dict[str, Any]:
    runtime = build_runtime(load_config())
    await runtime.connect()
    try:
        result = await runtime.materializer.process_batch(records)
    finally:
        await runtime.close()

    return {"processed": result.processed, "mutated": result.mutated, "uploaded": result.uploaded}


async def _search(requester_id: str, terms: list[str]) -> dict[str, Any]:
    runtime = build_runtime(load_config())
    await runtime.connect()
    try:
        items = await runtime.search.search(requester_id, terms)
    finally:
        await runtime.close()

    return {"items": [dataclasses.asdict(item) for item in items]}


def consistency_handler(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    """Propagate parent renames found in a stream batch."""
    records = _records(event)
    logger.info("Consistency batch received", extra={"records": len(records)})
    return asyncio.run(_propagate(records))


def index_handler(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    """Apply a stream batch to the index snapshot.

    Raises:
        SnapshotReadError: The stored snapshot is unreadable (batch is redelivered)
        SnapshotWriteError: The snapshot could not be uploaded (batch is redelivered)
    """
    records = _records(event)
    logger.info("Index batch received", extra={"records": len(records)})
    return asyncio.run(_materialize(records))


def search_handler(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    """Search the items visible to a user.

    Raises:
        SearchError: If the search could not be executed
        ValueError: If requesterId is missing
    """
    requester_id = event.get("requesterId")
    if not requester_id:
        raise ValueError("requesterId is required")
    terms = [str(t) for t in event.get("terms") or []]
    return asyncio.run(_search(requester_id, terms))
