"""
Base database utilities.

Provides connection management and schema setup for the PostgreSQL
batch store.
"""
from __future__ import annotations
import psycopg
from psycopg.rows import dict_row
from typing import Optional
from loguru import logger

from ..config import ImportEngineConfig
from ..models import get_schema_sql


def get_connection(config: Optional[ImportEngineConfig] = None):
    """
    Create a database connection.

    Returns a psycopg connection with autocommit and dict rows.
    """
    config = config or ImportEngineConfig.from_env()
    return psycopg.connect(config.db_url, autocommit=True, row_factory=dict_row)


class DatabaseStore:
    """
    Base class for PostgreSQL-backed stores.

    Provides:
    - Lazy connection management
    - Context manager support
    - Schema creation from models/schema.sql
    """

    def __init__(self, config: Optional[ImportEngineConfig] = None, conn=None):
        self.config = config or ImportEngineConfig.from_env()
        self._conn = conn

    @property
    def conn(self):
        """Get or create database connection."""
        if self._conn is None or self._conn.closed:
            self._conn = get_connection(self.config)
        return self._conn

    @property
    def schema(self) -> str:
        return self.config.db_schema

    def close(self):
        """Close database connection."""
        if self._conn and not self._conn.closed:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def initialize_schema(self):
        """Create the schema and tables if they don't exist."""
        with self.conn.cursor() as cur:
            cur.execute(get_schema_sql(self.schema))
        logger.info(f"Initialized schema {self.schema}")
