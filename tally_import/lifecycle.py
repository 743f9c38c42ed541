"""
Batch lifecycle management.

BatchManager drives a batch through its states:

    uploaded -> parsing -> parsed -> mapping_configured -> importing
             -> completed | failed -> rolled_back

A batch whose import was interrupted (cancelled, target unavailable, or
the process running it stopped) can be resumed from ``failed``; records
it already committed are found by source key and not created twice.

Usage:
    manager = BatchManager(InMemoryBatchStore(), repository)
    batch = manager.upload("acme", data, file_name="daybook.xml")
    manager.configure_mappings(batch.id, {"ledger_mappings": [...]})
    manager.start_import(batch.id)
    manager.wait(batch.id)
    print(manager.get_result(batch.id))

Only one batch per company can be importing at a time.
"""
from __future__ import annotations
import threading
from dataclasses import dataclass
from typing import Any, Optional, Union
from loguru import logger

from .classifier import ClassifierRules, DEFAULT_RULES
from .config import ImportEngineConfig
from .errors import (
    BatchStateError,
    ConcurrentImportError,
    MappingConfigurationError,
    RollbackNotAllowedError,
)
from .importer import Importer
from .mapper import MappingConfiguration
from .models import (
    Batch,
    BatchStatus,
    ImportProgress,
    ImportRequest,
    ImportType,
    ReconciliationSummary,
    RollbackPreview,
    RollbackRequest,
    RollbackSummary,
)
from .parsers import ParseResult, decode_export, parse_export
from .progress import ProgressSink
from .repository import InMemoryMappingConfigStore, MappingConfigStore, TargetRepository
from .rollback import RollbackManager
from .storage import BatchStore

IMPORTABLE_STATUSES = frozenset({BatchStatus.PARSED, BatchStatus.MAPPING_CONFIGURED})


def detect_format(data: bytes, file_name: Optional[str] = None) -> str:
    """Guess "xml" or "json" from the file extension, then from the content."""
    if file_name:
        suffix = file_name.rsplit(".", 1)[-1].lower() if "." in file_name else ""
        if suffix in ("xml", "json"):
            return suffix
    head = decode_export(data).lstrip()[:1]
    return "json" if head in ("{", "[") else "xml"


@dataclass
class _ActiveImport:
    batch: Batch
    thread: Optional[threading.Thread]
    cancel_event: threading.Event
    company_lock: threading.Lock


class BatchManager:
    """
    Owns batches from upload to rollback.

    Parse results are kept in memory between upload and import, and
    until a failed batch is resumed or rolled back. A batch uploaded by
    another process has to be uploaded again before it can be imported,
    or given its export data to be resumed.
    """

    def __init__(
        self,
        store: BatchStore,
        repository: TargetRepository,
        mapping_store: Optional[MappingConfigStore] = None,
        config: Optional[ImportEngineConfig] = None,
        progress_sink: Optional[ProgressSink] = None,
        rules: ClassifierRules = DEFAULT_RULES,
    ):
        self.store = store
        self.repository = repository
        self.mapping_store = mapping_store or InMemoryMappingConfigStore()
        self.config = config or ImportEngineConfig.from_env()
        self.importer = Importer(
            repository, self.config, progress_sink=progress_sink, checkpoint=store.save, rules=rules
        )
        self.rollbacks = RollbackManager(repository, store)
        self._parsed: dict[str, ParseResult] = {}
        self._active: dict[str, _ActiveImport] = {}
        self._company_locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    # Upload and parse

    def upload(
        self,
        company_id: str,
        data: bytes,
        file_name: Optional[str] = None,
        fmt: Optional[str] = None,
        import_type: ImportType = ImportType.FULL,
    ) -> Batch:
        """
        Create a batch for an export file and parse it.

        The batch ends ``parsed`` when the file can be imported, or
        ``failed`` when it has structural errors. Record-level issues are
        kept on the batch either way.
        """
        fmt = (fmt or detect_format(data, file_name)).lower()
        batch = Batch(company_id=company_id, import_type=import_type)
        batch.source.file_name = file_name
        batch.source.file_size = len(data)
        batch.source.format = fmt
        batch.add_audit_event("upload", f"Uploaded {file_name or 'export'} ({len(data)} bytes)")
        self.store.save(batch)
        logger.info(f"Batch {batch.batch_number} created for company {company_id}")

        batch.transition(BatchStatus.PARSING)
        self.store.save(batch)
        result = parse_export(data, fmt, tolerance=self.config.balance_tolerance)
        batch.validation_issues = list(result.issues)

        if not result.can_proceed:
            structural = [i.message for i in result.issues if i.is_structural]
            batch.error_message = "; ".join(structural) or "Export could not be parsed"
            batch.transition(BatchStatus.FAILED)
            self.store.save(batch)
            logger.error(f"Batch {batch.batch_number} failed parsing: {batch.error_message}")
            return batch

        batch.source.company_name = result.masters.company_name
        batch.source.company_guid = result.masters.company_guid
        batch.source.from_date = result.summary.from_date
        batch.source.to_date = result.summary.to_date
        batch.transition(BatchStatus.PARSED)
        self._parsed[batch.id] = result
        self.store.save(batch)
        logger.info(
            f"Batch {batch.batch_number} parsed: {result.summary.ledger_count} ledgers, "
            f"{result.summary.voucher_count} vouchers, {result.error_count} errors, "
            f"{result.warning_count} warnings"
        )
        return batch

    def preview(self, batch_id: str) -> ParseResult:
        """Parsed model, issues and summary for a batch awaiting import."""
        result = self._parsed.get(batch_id)
        if result is None:
            batch = self.store.get(batch_id)
            raise BatchStateError(f"Batch {batch.batch_number} has no parse result in this process")
        return result

    # Mapping

    def configure_mappings(
        self, batch_id: str, mapping: Union[MappingConfiguration, dict[str, Any]]
    ) -> MappingConfiguration:
        """
        Attach a mapping configuration to a parsed batch.

        Raises:
            MappingConfigurationError: The configuration is invalid; the
                batch is marked failed
        """
        batch = self.store.get(batch_id)
        if batch.status not in IMPORTABLE_STATUSES:
            raise BatchStateError(
                f"Batch {batch.batch_number} is {batch.status.value}; mappings can only be set before import"
            )
        try:
            config = mapping if isinstance(mapping, MappingConfiguration) else MappingConfiguration.load(mapping)
            config.validate_or_raise()
        except MappingConfigurationError as e:
            batch.error_message = str(e)
            batch.transition(BatchStatus.FAILED)
            self.store.save(batch)
            self._parsed.pop(batch.id, None)
            logger.error(f"Batch {batch.batch_number}: {e}")
            raise

        self.mapping_store.save(batch.id, config)
        batch.transition(BatchStatus.MAPPING_CONFIGURED)
        batch.add_audit_event(
            "configure_mappings",
            "Mapping configuration saved",
            group_mappings=len(config.group_mappings),
            ledger_mappings=len(config.ledger_mappings),
            cost_category_mappings=len(config.cost_category_mappings),
        )
        self.store.save(batch)
        return config

    # Import

    def _company_lock(self, company_id: str) -> threading.Lock:
        with self._guard:
            return self._company_locks.setdefault(company_id, threading.Lock())

    def start_import(
        self,
        batch_id: str,
        request: Optional[ImportRequest] = None,
        background: bool = True,
    ) -> Optional[ReconciliationSummary]:
        """
        Start importing a parsed batch.

        Runs on a background thread by default; with ``background=False``
        the import runs in the caller's thread and its summary is returned.

        Raises:
            BatchStateError: The batch is not parsed, or its parse result is gone
            ConcurrentImportError: Another batch of the company is importing
        """
        request = request or ImportRequest()
        batch = self.store.get(batch_id)
        if batch.status not in IMPORTABLE_STATUSES:
            raise BatchStateError(f"Batch {batch.batch_number} is {batch.status.value} and cannot be imported")
        parsed = self._parsed.get(batch.id)
        if parsed is None:
            raise BatchStateError(f"Batch {batch.batch_number} must be uploaded again before importing")
        return self._launch(batch, parsed, request, background, resume=False)

    def resume_import(
        self,
        batch_id: str,
        data: Optional[bytes] = None,
        request: Optional[ImportRequest] = None,
        background: bool = True,
    ) -> Optional[ReconciliationSummary]:
        """
        Continue an import that did not finish.

        Accepts a batch that failed during import (cancelled, target
        unavailable) or one still stored as ``importing`` with no import
        running in this process, i.e. the process that ran it stopped.
        Records the batch committed before are counted as imported again,
        not created twice.

        The parse result is reused when this process still holds it;
        otherwise pass the export ``data`` to parse it again.

        Raises:
            BatchStateError: The batch never started importing, is running
                here, or has no parse result and no data was given
            ConcurrentImportError: Another batch of the company is importing
        """
        request = request or ImportRequest()
        batch = self.store.get(batch_id)
        if self.is_importing(batch.id):
            raise BatchStateError(f"Batch {batch.batch_number} is importing in this process")
        if batch.status not in (BatchStatus.IMPORTING, BatchStatus.FAILED) or batch.import_started_at is None:
            raise BatchStateError(f"Batch {batch.batch_number} is {batch.status.value} and has no import to resume")

        parsed = self._parsed.get(batch.id)
        if parsed is None and data is not None:
            parsed = parse_export(data, batch.source.format or detect_format(data), tolerance=self.config.balance_tolerance)
            if not parsed.can_proceed:
                raise BatchStateError(f"Export given to resume batch {batch.batch_number} cannot be parsed")
        if parsed is None:
            raise BatchStateError(f"Batch {batch.batch_number} must be given its export data to resume")
        self._parsed[batch.id] = parsed
        return self._launch(batch, parsed, request, background, resume=True)

    def mark_interrupted(self, batch_id: str) -> Batch:
        """
        Fail a batch stored as ``importing`` whose import is no longer running.

        The batch can then be resumed or rolled back. Only call this when
        no other process is importing the batch.
        """
        batch = self.store.get(batch_id)
        if batch.status != BatchStatus.IMPORTING:
            raise BatchStateError(f"Batch {batch.batch_number} is {batch.status.value}, not importing")
        if self.is_importing(batch.id):
            raise BatchStateError(f"Batch {batch.batch_number} is importing in this process; cancel it instead")
        batch.error_message = "Interrupted: the import stopped before finishing"
        batch.transition(BatchStatus.FAILED)
        batch.add_audit_event("interrupted", batch.error_message)
        self.store.save(batch)
        logger.warning(f"Batch {batch.batch_number} marked as interrupted")
        return batch

    def _launch(
        self,
        batch: Batch,
        parsed: ParseResult,
        request: ImportRequest,
        background: bool,
        resume: bool,
    ) -> Optional[ReconciliationSummary]:
        mapping = self.mapping_store.get(batch.id) or MappingConfiguration()

        company_lock = self._company_lock(batch.company_id)
        if not company_lock.acquire(blocking=False):
            raise ConcurrentImportError(f"Company {batch.company_id} already has a batch importing")

        try:
            if batch.status != BatchStatus.IMPORTING:
                batch.transition(BatchStatus.IMPORTING)
            batch.add_audit_event(
                "resume_import" if resume else "start_import",
                f"{batch.import_type.value} import {'resumed' if resume else 'started'}",
                record_types=sorted(rt.value for rt in request.record_types) if request.record_types else None,
                from_date=request.from_date.isoformat() if request.from_date else None,
                to_date=request.to_date.isoformat() if request.to_date else None,
            )
            self.store.save(batch)
            active = _ActiveImport(batch, None, threading.Event(), company_lock)
            with self._guard:
                self._active[batch.id] = active
        except Exception:
            company_lock.release()
            raise

        if not background:
            return self._run_import(active, parsed, mapping, request, resume)

        active.thread = threading.Thread(
            target=self._run_import,
            args=(active, parsed, mapping, request, resume),
            name=f"tally-import-{batch.batch_number}",
            daemon=True,
        )
        active.thread.start()
        return None

    def _run_import(
        self,
        active: _ActiveImport,
        parsed: ParseResult,
        mapping: MappingConfiguration,
        request: ImportRequest,
        resume: bool = False,
    ) -> ReconciliationSummary:
        batch = active.batch
        try:
            return self.importer.run(
                batch, parsed.masters, parsed.vouchers, mapping, request, active.cancel_event, resume=resume
            )
        finally:
            self.store.save(batch)
            if batch.status == BatchStatus.COMPLETED:
                # Failed batches keep it so they can be resumed
                self._parsed.pop(batch.id, None)
            with self._guard:
                self._active.pop(batch.id, None)
            active.company_lock.release()

    def wait(self, batch_id: str, timeout: Optional[float] = None) -> Batch:
        """Block until a background import finishes (or the timeout passes)."""
        with self._guard:
            active = self._active.get(batch_id)
        if active is not None and active.thread is not None:
            active.thread.join(timeout)
        return self.get_batch(batch_id)

    def cancel(self, batch_id: str):
        """Ask a running import to stop after the current record."""
        with self._guard:
            active = self._active.get(batch_id)
        if active is None:
            batch = self.store.get(batch_id)
            raise BatchStateError(f"Batch {batch.batch_number} is not importing")
        active.cancel_event.set()
        logger.warning(f"Cancellation requested for batch {active.batch.batch_number}")

    def is_importing(self, batch_id: str) -> bool:
        with self._guard:
            return batch_id in self._active

    # Queries

    def get_batch(self, batch_id: str) -> Batch:
        return self.store.get(batch_id)

    def list_batches(self, company_id: Optional[str] = None, status: Optional[BatchStatus] = None) -> list[Batch]:
        return self.store.list(company_id=company_id, status=status)

    def get_progress(self, batch_id: str) -> ImportProgress:
        batch = self.store.get(batch_id)
        tracker = self.importer.tracker_for(batch.id)
        if tracker is not None:
            return tracker.snapshot(batch.status)
        if batch.progress is not None:
            return batch.progress.model_copy(update={"status": batch.status})
        return ImportProgress(
            batch_id=batch.id,
            status=batch.status,
            percent_complete=100.0 if batch.status == BatchStatus.COMPLETED else 0.0,
            last_error=batch.error_message,
        )

    def get_result(self, batch_id: str) -> ReconciliationSummary:
        return self.store.get(batch_id).reconciliation()

    # Rollback

    def preview_rollback(self, batch_id: str) -> RollbackPreview:
        return self.rollbacks.preview(batch_id)

    def rollback(self, batch_id: str, request: Optional[RollbackRequest] = None) -> RollbackSummary:
        if self.is_importing(batch_id):
            raise RollbackNotAllowedError(f"Batch {batch_id} is still importing; cancel it first")
        summary = self.rollbacks.rollback(batch_id, request)
        if self.store.get(batch_id).status == BatchStatus.ROLLED_BACK:
            self._parsed.pop(batch_id, None)
        return summary
