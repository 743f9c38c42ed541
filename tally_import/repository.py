"""
Collaborator interfaces the engine writes through.

The engine never persists target entities itself. It talks to:
- TargetRepository: creates, finds and deletes target records
- MappingConfigStore: holds the mapping configuration of each batch

In-memory implementations are provided for dry runs and tests.
"""
from __future__ import annotations
import itertools
import threading
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from .errors import TargetSystemError
from .mapper import MappingConfiguration
from .models import TargetKind


class TargetRepository(Protocol):
    def find_by_external_ref(
        self, kind: TargetKind, source_key: str, batch_id: Optional[str] = None
    ) -> Optional[str]: ...

    def create(self, kind: TargetKind, fields: dict[str, Any], batch_id: str) -> str: ...

    def create_journal_entry(
        self, lines: list[dict[str, Any]], header: dict[str, Any], batch_id: Optional[str]
    ) -> str: ...

    def apply_stock_movement(self, movement: dict[str, Any], batch_id: str) -> str: ...

    def delete_by_batch_tag(self, batch_id: str, kind: TargetKind) -> int: ...

    def list_by_batch_tag(self, batch_id: str, kind: TargetKind) -> list[str]: ...

    def is_referenced(self, kind: TargetKind, target_id: str) -> bool: ...

    def delete(self, kind: TargetKind, target_id: str) -> None: ...


class MappingConfigStore(Protocol):
    def get(self, batch_id: str) -> Optional[MappingConfiguration]: ...

    def save(self, batch_id: str, config: MappingConfiguration) -> None: ...


@dataclass
class TargetRecord:
    id: str
    kind: TargetKind
    fields: dict[str, Any]
    batch_id: Optional[str]
    external_ref: Optional[str] = None
    refs: set[str] = field(default_factory=set)


def _collect_refs(value: Any, key: str = "") -> set[str]:
    """Ids referenced from a field tree: values of keys ending in ``_id``."""
    refs: set[str] = set()
    if isinstance(value, dict):
        for k, v in value.items():
            refs |= _collect_refs(v, k)
    elif isinstance(value, (list, tuple)):
        for item in value:
            refs |= _collect_refs(item, key)
    elif key.endswith("_id") and key != "batch_id" and isinstance(value, str):
        refs.add(value)
    return refs


class InMemoryTargetRepository:
    """
    Dict-backed TargetRepository.

    Tracks which records reference which, so guarded deletes behave
    like a database with foreign keys.
    """

    def __init__(self):
        self.records: dict[str, TargetRecord] = {}
        self._lock = threading.RLock()
        self._ids = itertools.count(1)

    def _new_id(self, kind: TargetKind) -> str:
        return f"{kind.value}-{next(self._ids)}"

    def _store(self, kind: TargetKind, fields: dict[str, Any], batch_id: Optional[str]) -> str:
        with self._lock:
            record_id = self._new_id(kind)
            self.records[record_id] = TargetRecord(
                id=record_id,
                kind=kind,
                fields=dict(fields),
                batch_id=batch_id,
                external_ref=fields.get("external_ref"),
                refs=_collect_refs(fields),
            )
            return record_id

    def find_by_external_ref(
        self, kind: TargetKind, source_key: str, batch_id: Optional[str] = None
    ) -> Optional[str]:
        with self._lock:
            for record in self.records.values():
                if record.kind != kind or record.external_ref != source_key:
                    continue
                if batch_id is None or record.batch_id == batch_id:
                    return record.id
        return None

    def create(self, kind: TargetKind, fields: dict[str, Any], batch_id: str) -> str:
        return self._store(kind, fields, batch_id)

    def create_journal_entry(
        self, lines: list[dict[str, Any]], header: dict[str, Any], batch_id: Optional[str]
    ) -> str:
        return self._store(TargetKind.JOURNAL_ENTRY, {**header, "lines": lines}, batch_id)

    def apply_stock_movement(self, movement: dict[str, Any], batch_id: str) -> str:
        return self._store(TargetKind.STOCK_MOVEMENT, movement, batch_id)

    def list_by_batch_tag(self, batch_id: str, kind: TargetKind) -> list[str]:
        with self._lock:
            return [r.id for r in self.records.values() if r.batch_id == batch_id and r.kind == kind]

    def delete_by_batch_tag(self, batch_id: str, kind: TargetKind) -> int:
        with self._lock:
            ids = self.list_by_batch_tag(batch_id, kind)
            for record_id in ids:
                del self.records[record_id]
            return len(ids)

    def is_referenced(self, kind: TargetKind, target_id: str) -> bool:
        with self._lock:
            return any(target_id in r.refs for r in self.records.values() if r.id != target_id)

    def delete(self, kind: TargetKind, target_id: str) -> None:
        with self._lock:
            record = self.records.get(target_id)
            if record is None or record.kind != kind:
                raise TargetSystemError(f"No {kind.value} with id {target_id}")
            del self.records[target_id]

    # Inspection helpers

    def of_kind(self, kind: TargetKind) -> list[TargetRecord]:
        with self._lock:
            return [r for r in self.records.values() if r.kind == kind]

    def count(self, kind: Optional[TargetKind] = None, batch_id: Optional[str] = None) -> int:
        with self._lock:
            return sum(
                1
                for r in self.records.values()
                if (kind is None or r.kind == kind) and (batch_id is None or r.batch_id == batch_id)
            )


class InMemoryMappingConfigStore:
    def __init__(self):
        self._configs: dict[str, MappingConfiguration] = {}
        self._lock = threading.Lock()

    def get(self, batch_id: str) -> Optional[MappingConfiguration]:
        with self._lock:
            return self._configs.get(batch_id)

    def save(self, batch_id: str, config: MappingConfiguration) -> None:
        with self._lock:
            self._configs[batch_id] = config.model_copy(deep=True)
