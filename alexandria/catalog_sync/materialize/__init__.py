"""
Index materializer: keeps the JSON index snapshot in step with the catalog.
"""

from .handlers import ROUTES
from .materializer import MaterializeResult, Materializer
from .snapshot import IndexItem, IndexLibrary, IndexSnapshot
from .store import (
    InMemorySnapshotStore,
    S3SnapshotStore,
    SnapshotReadError,
    SnapshotStore,
    SnapshotWriteError,
)

__all__ = [
    "ROUTES",
    "Materializer",
    "MaterializeResult",
    "IndexItem",
    "IndexLibrary",
    "IndexSnapshot",
    "SnapshotStore",
    "S3SnapshotStore",
    "InMemorySnapshotStore",
    "SnapshotReadError",
    "SnapshotWriteError",
]
