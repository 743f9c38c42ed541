"""
Batch persistence.

Batches are stored whole as JSON, with a few columns pulled out for
listing and filtering. Mapping configurations live beside them.
"""
from __future__ import annotations
import threading
from typing import Optional, Protocol
from psycopg.types.json import Jsonb

from ..errors import BatchNotFoundError
from ..mapper import MappingConfiguration
from ..models import Batch, BatchStatus
from .base import DatabaseStore


class BatchStore(Protocol):
    def save(self, batch: Batch) -> None: ...

    def get(self, batch_id: str) -> Batch: ...

    def list(self, company_id: Optional[str] = None, status: Optional[BatchStatus] = None) -> list[Batch]: ...


class InMemoryBatchStore:
    """Keeps detached copies so callers never share a live Batch with the store."""

    def __init__(self):
        self._batches: dict[str, Batch] = {}
        self._lock = threading.Lock()

    def save(self, batch: Batch) -> None:
        with self._lock:
            self._batches[batch.id] = batch.model_copy(deep=True)

    def get(self, batch_id: str) -> Batch:
        with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None:
                raise BatchNotFoundError(f"Unknown batch {batch_id}")
            return batch.model_copy(deep=True)

    def list(self, company_id: Optional[str] = None, status: Optional[BatchStatus] = None) -> list[Batch]:
        with self._lock:
            batches = [
                b.model_copy(deep=True)
                for b in self._batches.values()
                if (company_id is None or b.company_id == company_id) and (status is None or b.status == status)
            ]
        return sorted(batches, key=lambda b: b.created_at, reverse=True)


class PostgresBatchStore(DatabaseStore):
    """BatchStore backed by ``{schema}.import_batch``."""

    def save(self, batch: Batch) -> None:
        totals = batch.totals
        row = {
            "id": batch.id,
            "batch_number": batch.batch_number,
            "company_id": batch.company_id,
            "import_type": batch.import_type.value,
            "status": batch.status.value,
            "file_name": batch.source.file_name,
            "total_records": totals.total,
            "imported_records": totals.imported,
            "failed_records": totals.failed,
            "suspense_records": totals.suspense,
            "payload": Jsonb(batch.model_dump(mode="json")),
        }
        columns = list(row.keys())
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in columns if c != "id")
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {self.schema}.import_batch ({", ".join(columns)})
                VALUES ({", ".join(f"%({c})s" for c in columns)})
                ON CONFLICT (id) DO UPDATE SET {updates}, updated_at = NOW()
                """,
                row,
            )

    def get(self, batch_id: str) -> Batch:
        with self.conn.cursor() as cur:
            cur.execute(f"SELECT payload FROM {self.schema}.import_batch WHERE id = %s", (batch_id,))
            row = cur.fetchone()
        if row is None:
            raise BatchNotFoundError(f"Unknown batch {batch_id}")
        return Batch.model_validate(row["payload"])

    def list(self, company_id: Optional[str] = None, status: Optional[BatchStatus] = None) -> list[Batch]:
        clauses = []
        params: list = []
        if company_id is not None:
            clauses.append("company_id = %s")
            params.append(company_id)
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.conn.cursor() as cur:
            cur.execute(
                f"SELECT payload FROM {self.schema}.import_batch {where} ORDER BY created_at DESC",
                params,
            )
            rows = cur.fetchall()
        return [Batch.model_validate(r["payload"]) for r in rows]


class PostgresMappingConfigStore(DatabaseStore):
    """MappingConfigStore backed by ``{schema}.import_mapping_config``."""

    def get(self, batch_id: str) -> Optional[MappingConfiguration]:
        with self.conn.cursor() as cur:
            cur.execute(
                f"SELECT config FROM {self.schema}.import_mapping_config WHERE batch_id = %s",
                (batch_id,),
            )
            row = cur.fetchone()
        return MappingConfiguration.model_validate(row["config"]) if row else None

    def save(self, batch_id: str, config: MappingConfiguration) -> None:
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {self.schema}.import_mapping_config (batch_id, config)
                VALUES (%s, %s)
                ON CONFLICT (batch_id) DO UPDATE SET config = EXCLUDED.config, updated_at = NOW()
                """,
                (batch_id, Jsonb(config.model_dump(mode="json"))),
            )
