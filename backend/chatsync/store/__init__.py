"""Document store module.

Provides the abstract store contract and the DuckDB-backed implementation
with an in-process change feed.
"""
from .base import DEFAULT_HISTORY_LIMIT, DocumentStore, StoreError
from .duckdb_store import DuckDBDocumentStore

__all__ = [
    "DEFAULT_HISTORY_LIMIT",
    "DocumentStore",
    "DuckDBDocumentStore",
    "StoreError",
]
