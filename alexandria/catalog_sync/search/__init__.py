"""
Full-text search over library items.
"""

from .executor import SearchError, SearchExecutor
from .index import FullTextIndex, IndexBuilder, IndexDocument
from .query import AccessFilter, build_text_query, normalize_terms
from .sources import IndexSource, LocalIndexSource, S3IndexSource

__all__ = [
    "SearchExecutor",
    "SearchError",
    "FullTextIndex",
    "IndexBuilder",
    "IndexDocument",
    "AccessFilter",
    "build_text_query",
    "normalize_terms",
    "IndexSource",
    "LocalIndexSource",
    "S3IndexSource",
]
