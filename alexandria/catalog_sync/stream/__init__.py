"""
Change stream sources for the catalog table.

Implementations:
    - DynamoDBChangeStream: DynamoDB Streams poller (aiobotocore)
    - InMemoryChangeStream: queue-backed, for tests and local runs
"""

from .base import ChangeStream, StreamBatch, StreamConnectionError, StreamError
from .dynamodb import DynamoDBChangeStream
from .memory import InMemoryChangeStream

__all__ = [
    "ChangeStream",
    "StreamBatch",
    "StreamError",
    "StreamConnectionError",
    "DynamoDBChangeStream",
    "InMemoryChangeStream",
]
