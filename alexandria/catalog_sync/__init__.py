"""
Alexandria catalog sync - derived views over the catalog table.

This package keeps secondary, denormalized views of the DynamoDB catalog
table up to date by consuming its change stream, and serves search queries
against those views:
- Cached parent names on library items (libraries, collections)
- A JSON snapshot of indexable items and share grants (S3)
- A full-text index over item titles, authors and collections

Architecture:
    ┌─────────────┐     ┌──────────────────┐
    │  DynamoDB   │────▶│  DynamoDB Stream │
    │  (catalog)  │     │   (CDC records)  │
    └──────▲──────┘     └────────┬─────────┘
           │                     │
           │         ┌───────────┴───────────┐
           │         ▼                       ▼
           │   ┌────────────┐         ┌──────────────┐
           └───│ Propagator │         │ Materializer │
               └────────────┘         └──────┬───────┘
                                             ▼
                                      ┌──────────────┐
                                      │ S3 snapshot  │
                                      └──────────────┘

    Search: full-text index (S3) ──▶ matched keys ──▶ DynamoDB batch read

Invariants:
    - The catalog table is the source of truth
    - Derived artifacts are eventually consistent and can be rebuilt
    - Stream delivery is at-least-once; every handler is idempotent
    - Search results are always read back from the catalog table

How to change safely:
    - Key formats are shared with the API layer; change both together
    - New entity kinds need a routing entry, never a code path in the dispatcher
    - Rebuild the index with the reindex tool after changing indexed fields
"""

from ._version import __version__

__all__ = ["__version__"]
