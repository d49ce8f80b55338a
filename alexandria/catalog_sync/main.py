"""
Catalog sync worker - main entry point.

This module runs the long-lived stream worker:
- Change stream poller (DynamoDB Streams)
- Consistency propagator (parent renames -> library items)
- Index materializer (stream -> S3 snapshot)

Usage:
    python -m alexandria.catalog_sync.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - A batch is committed only after both consumers handled it
    - A failed consumer gets the batch again after a delay, up to max_retries
    - Graceful shutdown lets the current batch finish

How to change safely:
    - Add new consumers with enable/disable flags
    - Consumers must stay idempotent; batches can be delivered more than once
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import json_log_formatter

from .config import ServiceConfig
from .materialize import Materializer, SnapshotReadError, SnapshotWriteError
from .propagate import ConsistencyPropagator
from .runtime import Runtime, build_runtime
from .stream import ChangeStream, DynamoDBChangeStream, StreamBatch

logger = logging.getLogger(__name__)

# Consumer failures that a later delivery can fix
RETRYABLE_ERRORS = (SnapshotReadError, SnapshotWriteError)


def setup_logging(config: ServiceConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Service configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)


@dataclass
class BatchOutcome:
    """What happened to one stream batch.

    Attributes:
        records: Records in the batch
        attempts: Deliveries per consumer name
        skipped: Consumers that gave up on the batch
    """

    records: int
    attempts: dict[str, int]
    skipped: list[str]


class Worker:
    """Catalog sync worker orchestrator.

    Manages the lifecycle of:
    - The change stream
    - The propagator and materializer consumers

    Attributes:
        config: Service configuration
        stream: Change stream source
        propagator: Consistency propagator (None when disabled)
        materializer: Index materializer (None when disabled)

    Example:
        >>> worker = Worker(config)
        >>> await worker.start()  # Runs until request_shutdown()
        >>> await worker.stop()
    """

    def __init__(
        self,
        config: ServiceConfig | None = None,
        stream: ChangeStream | None = None,
        propagator: ConsistencyPropagator | None = None,
        materializer: Materializer | None = None,
    ) -> None:
        """Initialize the worker.

        Components not passed in are built from configuration in start().

        Args:
            config: Optional configuration (loaded from env if not provided)
            stream: Change stream source
            propagator: Consistency propagator
            materializer: Index materializer
        """
        self.config = config or ServiceConfig.from_env()
        self.stream = stream
        self.propagator = propagator
        self.materializer = materializer
        self.runtime: Runtime | None = None

        self._running = False
        self._shutdown_event = asyncio.Event()
        self._batches = 0

    @property
    def batches_processed(self) -> int:
        return self._batches

    def _wire(self) -> None:
        needs_runtime = (
            (self.propagator is None and self.config.propagator.enabled)
            or (self.materializer is None and self.config.worker.materializer_enabled)
        )
        if needs_runtime:
            self.runtime = build_runtime(self.config)
            if self.propagator is None and self.config.propagator.enabled:
                self.propagator = self.runtime.propagator
            if self.materializer is None and self.config.worker.materializer_enabled:
                self.materializer = self.runtime.materializer

        if self.stream is None:
            self.stream = DynamoDBChangeStream(self.config.stream, self.config.aws)

    async def start(self) -> None:
        """Start the worker and consume until shutdown or end of stream."""
        if self._running:
            logger.warning("Worker already running")
            return

        logger.info("Starting catalog sync worker")
        self.config.log_config()

        try:
            self._wire()
            if self.runtime is not None:
                await self.runtime.connect()
            await self.stream.connect()
            self._running = True
            logger.info("Catalog sync worker started")

            consume = asyncio.create_task(self._consume())
            shutdown = asyncio.create_task(self._shutdown_event.wait())
            done, _pending = await asyncio.wait(
                {consume, shutdown}, return_when=asyncio.FIRST_COMPLETED
            )

            if consume in done:
                shutdown.cancel()
                # Surface stream errors
                consume.result()
            else:
                consume.cancel()
                await asyncio.gather(consume, return_exceptions=True)

        except Exception as e:
            logger.error(f"Worker failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def _consume(self) -> None:
        async for batch in self.stream.batches():
            await self.process_batch(batch)
            await self.stream.commit(batch)

    async def process_batch(self, batch: StreamBatch) -> BatchOutcome:
        """Run every enabled consumer on one batch."""
        outcome = BatchOutcome(records=len(batch), attempts={}, skipped=[])

        if self.propagator is not None:
            await self._deliver("propagator", self.propagator.process_batch, batch, outcome)
        if self.materializer is not None:
            await self._deliver("materializer", self.materializer.process_batch, batch, outcome)

        self._batches += 1
        logger.debug(
            "Batch processed",
            extra={"shard_id": batch.shard_id, "records": len(batch), "skipped": outcome.skipped},
        )
        return outcome

    async def _deliver(
        self,
        name: str,
        consumer: Callable[[Any], Awaitable[Any]],
        batch: StreamBatch,
        outcome: BatchOutcome,
    ) -> None:
        max_attempts = self.config.worker.max_retries + 1
        for attempt in range(1, max_attempts + 1):
            outcome.attempts[name] = attempt
            try:
                await consumer(batch.records)
                return
            except RETRYABLE_ERRORS as e:
                if attempt == max_attempts:
                    logger.error(
                        f"Giving up on batch after {attempt} attempts: {e}",
                        extra={"consumer": name, "shard_id": batch.shard_id},
                    )
                    outcome.skipped.append(name)
                    return
                logger.warning(
                    f"Batch failed, delivering again: {e}",
                    extra={"consumer": name, "attempt": attempt},
                )
                await asyncio.sleep(self.config.worker.retry_delay_ms / 1000.0)

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        if not self._running and self.runtime is None:
            return

        logger.info("Stopping catalog sync worker")

        if self.stream is not None:
            await self.stream.close()

        if self.runtime is not None:
            await self.runtime.close()
            self.runtime = None

        self._running = False
        logger.info("Catalog sync worker stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ServiceConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    worker = Worker(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        worker.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(worker.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(worker.stop())
        loop.close()


if __name__ == "__main__":
    main()
