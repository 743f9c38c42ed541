"""
Batch storage backends.

- InMemoryBatchStore: process-local, for dry runs and tests
- PostgresBatchStore / PostgresMappingConfigStore: psycopg-backed history
"""
from .base import DatabaseStore, get_connection
from .batches import (
    BatchStore,
    InMemoryBatchStore,
    PostgresBatchStore,
    PostgresMappingConfigStore,
)

__all__ = [
    "BatchStore",
    "DatabaseStore",
    "InMemoryBatchStore",
    "PostgresBatchStore",
    "PostgresMappingConfigStore",
    "get_connection",
]
