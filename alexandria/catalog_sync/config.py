"""
Configuration management for the catalog sync service.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for the table, bucket and cursor key
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep variable names aligned with the API layer (DYNAMODB_TABLE_NAME, REGION)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

# DynamoDB BatchExecuteStatement accepts at most 25 statements
MAX_BATCH_STATEMENTS = 25


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class AwsConfig:
    """Shared AWS client configuration.

    Attributes:
        region: AWS region
        endpoint_url: Custom endpoint URL (LocalStack, DynamoDB Local, MinIO)
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    region: str = "eu-west-3"
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> AwsConfig:
        """Load configuration from environment variables."""
        return cls(
            region=os.getenv("REGION", os.getenv("AWS_REGION", "eu-west-3")),
            endpoint_url=os.getenv("AWS_ENDPOINT_URL"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )

    def client_kwargs(self) -> dict[str, str]:
        """Keyword arguments for ``session.create_client``."""
        kwargs = {"region_name": self.region}
        if self.endpoint_url:
            kwargs["endpoint_url"] = self.endpoint_url
        if self.access_key_id:
            kwargs["aws_access_key_id"] = self.access_key_id
            kwargs["aws_secret_access_key"] = self.secret_access_key or ""
        return kwargs


@dataclass(frozen=True)
class DynamoDBConfig:
    """Catalog table configuration.

    Attributes:
        table_name: DynamoDB table holding libraries, items and share grants
        children_index: Secondary index listing the content of a library
    """

    table_name: str = "alexandria"
    children_index: str = "GSI1"

    @classmethod
    def from_env(cls) -> DynamoDBConfig:
        """Load configuration from environment variables."""
        return cls(
            table_name=os.getenv("DYNAMODB_TABLE_NAME", "alexandria"),
            children_index=os.getenv("DYNAMODB_CHILDREN_INDEX", "GSI1"),
        )


@dataclass(frozen=True)
class S3Config:
    """S3 configuration for the derived artifacts.

    Attributes:
        bucket: S3 bucket holding the snapshot and the full-text index
        snapshot_key: Object key of the JSON index snapshot
        index_key: Object key of the full-text index database
    """

    bucket: str = "alexandria-indexes"
    snapshot_key: str = "indexes/libraries.json"
    index_key: str = "indexes/global-index.sqlite"

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("S3_INDEX_BUCKET", "alexandria-indexes"),
            snapshot_key=os.getenv("S3_SNAPSHOT_KEY", "indexes/libraries.json"),
            index_key=os.getenv("S3_INDEX_KEY", "indexes/global-index.sqlite"),
        )


@dataclass(frozen=True)
class CursorConfig:
    """Pagination cursor encryption.

    Attributes:
        secret_key: Symmetric key (16, 24 or 32 bytes once UTF-8 encoded)
    """

    secret_key: str = field(default="", repr=False)

    @classmethod
    def from_env(cls) -> CursorConfig:
        """Load configuration from environment variables."""
        return cls(secret_key=os.getenv("LEK_SECRET_KEY", ""))


@dataclass(frozen=True)
class PropagatorConfig:
    """Rename propagation configuration.

    Attributes:
        enabled: Whether the worker runs the propagator
        chunk_size: Statements per batch write (capped at 25)
        max_concurrent_chunks: Chunks executed at the same time
    """

    enabled: bool = True
    chunk_size: int = MAX_BATCH_STATEMENTS
    max_concurrent_chunks: int = 4

    @classmethod
    def from_env(cls) -> PropagatorConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("PROPAGATOR_ENABLED", "true"),
            chunk_size=int(os.getenv("PROPAGATOR_CHUNK_SIZE", str(MAX_BATCH_STATEMENTS))),
            max_concurrent_chunks=int(os.getenv("PROPAGATOR_MAX_CONCURRENT_CHUNKS", "4")),
        )


@dataclass(frozen=True)
class SearchConfig:
    """Search executor configuration.

    Attributes:
        fuzziness: Maximum edit distance for fuzzy term matches
        max_results: Maximum number of documents returned by one search
        index_path: Local index file; when set, S3 is not consulted
        cache_dir: Directory where the downloaded index is stored
    """

    fuzziness: int = 1
    max_results: int = 50
    index_path: str | None = None
    cache_dir: str | None = None

    @classmethod
    def from_env(cls) -> SearchConfig:
        """Load configuration from environment variables."""
        return cls(
            fuzziness=int(os.getenv("SEARCH_FUZZINESS", "1")),
            max_results=int(os.getenv("SEARCH_MAX_RESULTS", "50")),
            index_path=os.getenv("SEARCH_INDEX_PATH"),
            cache_dir=os.getenv("SEARCH_CACHE_DIR"),
        )


@dataclass(frozen=True)
class StreamConfig:
    """DynamoDB Streams source configuration.

    Attributes:
        stream_arn: ARN of the table stream
        iterator_type: Shard iterator type (TRIM_HORIZON, LATEST)
        max_records_per_get: Maximum records per GetRecords call
        poll_interval_ms: Delay between polls of idle shards
    """

    stream_arn: str = ""
    iterator_type: str = "TRIM_HORIZON"
    max_records_per_get: int = 100
    poll_interval_ms: int = 1000

    @classmethod
    def from_env(cls) -> StreamConfig:
        """Load configuration from environment variables."""
        return cls(
            stream_arn=os.getenv("DYNAMODB_STREAM_ARN", ""),
            iterator_type=os.getenv("STREAM_ITERATOR_TYPE", "TRIM_HORIZON"),
            max_records_per_get=int(os.getenv("STREAM_MAX_RECORDS", "100")),
            poll_interval_ms=int(os.getenv("STREAM_POLL_INTERVAL_MS", "1000")),
        )


@dataclass(frozen=True)
class WorkerConfig:
    """Stream worker loop configuration.

    Attributes:
        materializer_enabled: Whether the worker maintains the snapshot
        retry_delay_ms: Delay before a failed batch is delivered again
        max_retries: Deliveries of a failed batch before it is skipped
    """

    materializer_enabled: bool = True
    retry_delay_ms: int = 1000
    max_retries: int = 3

    @classmethod
    def from_env(cls) -> WorkerConfig:
        """Load configuration from environment variables."""
        return cls(
            materializer_enabled=_env_bool("MATERIALIZER_ENABLED", "true"),
            retry_delay_ms=int(os.getenv("WORKER_RETRY_DELAY_MS", "1000")),
            max_retries=int(os.getenv("WORKER_MAX_RETRIES", "3")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServiceConfig:
    """Complete service configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        aws: Shared AWS client configuration
        dynamodb: Catalog table configuration
        s3: Derived artifacts bucket configuration
        cursor: Pagination cursor key
        propagator: Rename propagation configuration
        search: Search executor configuration
        stream: CDC stream source configuration
        worker: Worker loop configuration
        observability: Logging configuration
    """

    aws: AwsConfig = field(default_factory=AwsConfig)
    dynamodb: DynamoDBConfig = field(default_factory=DynamoDBConfig)
    s3: S3Config = field(default_factory=S3Config)
    cursor: CursorConfig = field(default_factory=CursorConfig)
    propagator: PropagatorConfig = field(default_factory=PropagatorConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServiceConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServiceConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            aws=AwsConfig.from_env(),
            dynamodb=DynamoDBConfig.from_env(),
            s3=S3Config.from_env(),
            cursor=CursorConfig.from_env(),
            propagator=PropagatorConfig.from_env(),
            search=SearchConfig.from_env(),
            stream=StreamConfig.from_env(),
            worker=WorkerConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.dynamodb.table_name:
            raise ValueError("DYNAMODB_TABLE_NAME is required")

        if not self.s3.bucket and not self.search.index_path:
            raise ValueError("S3_INDEX_BUCKET is required unless SEARCH_INDEX_PATH is set")

        if not 1 <= self.propagator.chunk_size <= MAX_BATCH_STATEMENTS:
            raise ValueError(
                f"PROPAGATOR_CHUNK_SIZE must be between 1 and {MAX_BATCH_STATEMENTS}"
            )

        if self.propagator.max_concurrent_chunks < 1:
            raise ValueError("PROPAGATOR_MAX_CONCURRENT_CHUNKS must be at least 1")

        if self.search.fuzziness < 0:
            raise ValueError("SEARCH_FUZZINESS must not be negative")

        if self.cursor.secret_key and len(self.cursor.secret_key.encode("utf-8")) not in (
            16,
            24,
            32,
        ):
            raise ValueError("LEK_SECRET_KEY must be 16, 24 or 32 bytes long")

        if not self.cursor.secret_key:
            logger.warning("LEK_SECRET_KEY is not set; cursor pagination is disabled")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Service configuration loaded",
            extra={
                "region": self.aws.region,
                "endpoint_url": self.aws.endpoint_url,
                "table_name": self.dynamodb.table_name,
                "children_index": self.dynamodb.children_index,
                "s3_bucket": self.s3.bucket,
                "snapshot_key": self.s3.snapshot_key,
                "index_key": self.s3.index_key,
                "stream_arn": self.stream.stream_arn or None,
                "propagator_enabled": self.propagator.enabled,
                "materializer_enabled": self.worker.materializer_enabled,
                "cursor_key_set": bool(self.cursor.secret_key),
                "log_level": self.observability.log_level,
            },
        )
