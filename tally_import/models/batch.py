"""
Batch state: lifecycle status, counts, suspense items, errors and progress.

A Batch is the unit of import and of rollback. It owns its suspense
items, errors and audit events; target records point back to it only
through the batch id they were tagged with.
"""
from __future__ import annotations
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field, model_validator

from ..errors import BatchStateError, InvalidTransitionError
from .masters import TargetKind


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordType(str, Enum):
    CURRENCY = "currency"
    UNIT = "unit"
    STOCK_GROUP = "stock_group"
    STOCK_ITEM = "stock_item"
    GODOWN = "godown"
    COST_CATEGORY = "cost_category"
    COST_CENTRE = "cost_centre"
    LEDGER = "ledger"
    OPENING_BALANCE = "opening_balance"
    VOUCHER = "voucher"


# Fixed commit order. Never reorder: later types reference earlier ones.
IMPORT_ORDER: tuple[RecordType, ...] = (
    RecordType.CURRENCY,
    RecordType.UNIT,
    RecordType.STOCK_GROUP,
    RecordType.STOCK_ITEM,
    RecordType.GODOWN,
    RecordType.COST_CATEGORY,
    RecordType.COST_CENTRE,
    RecordType.LEDGER,
    RecordType.OPENING_BALANCE,
    RecordType.VOUCHER,
)

MASTER_TYPES: tuple[RecordType, ...] = IMPORT_ORDER[:8]


class BatchStatus(str, Enum):
    UPLOADED = "uploaded"
    PARSING = "parsing"
    PARSED = "parsed"
    MAPPING_CONFIGURED = "mapping_configured"
    IMPORTING = "importing"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


ALLOWED_TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.UPLOADED: frozenset({BatchStatus.PARSING, BatchStatus.FAILED}),
    BatchStatus.PARSING: frozenset({BatchStatus.PARSED, BatchStatus.FAILED}),
    BatchStatus.PARSED: frozenset(
        {BatchStatus.MAPPING_CONFIGURED, BatchStatus.IMPORTING, BatchStatus.FAILED}
    ),
    BatchStatus.MAPPING_CONFIGURED: frozenset(
        {BatchStatus.MAPPING_CONFIGURED, BatchStatus.IMPORTING, BatchStatus.FAILED}
    ),
    BatchStatus.IMPORTING: frozenset({BatchStatus.COMPLETED, BatchStatus.FAILED}),
    BatchStatus.COMPLETED: frozenset({BatchStatus.ROLLED_BACK}),
    # failed -> importing resumes an interrupted import
    BatchStatus.FAILED: frozenset({BatchStatus.ROLLED_BACK, BatchStatus.IMPORTING}),
    BatchStatus.ROLLED_BACK: frozenset(),
}

FROZEN_STATUSES = frozenset({BatchStatus.COMPLETED, BatchStatus.ROLLED_BACK})


class ImportType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class Outcome(str, Enum):
    IMPORTED = "imported"
    SKIPPED = "skipped"
    FAILED = "failed"
    SUSPENSE = "suspense"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ValidationIssue(BaseModel):
    """A problem found while parsing. ``record_type='file'`` marks structural errors."""

    severity: Severity
    code: str
    message: str
    record_type: str
    record_name: Optional[str] = None
    record_guid: Optional[str] = None
    field: Optional[str] = None

    @property
    def is_structural(self) -> bool:
        return self.severity == Severity.ERROR and self.record_type == "file"


class ImportCounts(BaseModel):
    total: int = 0
    imported: int = 0
    skipped: int = 0
    failed: int = 0
    suspense: int = 0

    @model_validator(mode="after")
    def _buckets_add_up(self) -> "ImportCounts":
        if self.imported + self.skipped + self.failed + self.suspense != self.total:
            raise ValueError("imported + skipped + failed + suspense must equal total")
        return self

    def add(self, outcome: Outcome):
        # Bump the bucket and the total together so the invariant always holds
        setattr(self, outcome.value, getattr(self, outcome.value) + 1)
        self.total += 1

    def merge(self, other: "ImportCounts") -> "ImportCounts":
        return ImportCounts(
            total=self.total + other.total,
            imported=self.imported + other.imported,
            skipped=self.skipped + other.skipped,
            failed=self.failed + other.failed,
            suspense=self.suspense + other.suspense,
        )


class SuspenseItem(BaseModel):
    record_type: RecordType
    source_name: str
    source_group: Optional[str] = None
    source_guid: Optional[str] = None
    amount: Decimal = Decimal("0")
    reason: str
    suspense_account_id: Optional[str] = None


class ImportErrorEntry(BaseModel):
    record_type: RecordType
    source_guid: Optional[str] = None
    source_name: Optional[str] = None
    error_code: str
    message: str
    occurred_at: datetime = Field(default_factory=utcnow)


class AuditEvent(BaseModel):
    action: str
    detail: str
    at: datetime = Field(default_factory=utcnow)
    data: dict[str, Any] = Field(default_factory=dict)


class SourceInfo(BaseModel):
    file_name: Optional[str] = None
    file_size: int = 0
    format: str = "xml"
    company_name: Optional[str] = None
    company_guid: Optional[str] = None
    from_date: Optional[date] = None
    to_date: Optional[date] = None


class PhaseProgress(BaseModel):
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0


class ImportProgress(BaseModel):
    """Point-in-time snapshot published while a batch imports."""

    batch_id: str
    status: BatchStatus
    current_phase: Optional[str] = None
    phases: dict[str, PhaseProgress] = Field(default_factory=dict)
    percent_complete: float = 0.0
    current_item: Optional[str] = None
    last_error: Optional[str] = None
    started_at: Optional[datetime] = None
    elapsed_seconds: float = 0.0
    estimated_remaining_seconds: Optional[float] = None


class ImportRequest(BaseModel):
    """Scope of one import run."""

    record_types: Optional[set[RecordType]] = None
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    create_journal_entries: bool = True
    update_stock_quantities: bool = True

    def includes(self, record_type: RecordType) -> bool:
        return self.record_types is None or record_type in self.record_types

    def in_window(self, voucher_date: date) -> bool:
        if self.from_date and voucher_date < self.from_date:
            return False
        if self.to_date and voucher_date > self.to_date:
            return False
        return True


class RollbackRequest(BaseModel):
    delete_masters: bool = True
    delete_transactions: bool = True
    reason: str = "Rolled back by operator"


class RetainedRecord(BaseModel):
    kind: TargetKind
    target_id: str
    reason: str


class RollbackSummary(BaseModel):
    batch_id: str
    deleted: dict[str, int] = Field(default_factory=dict)
    retained: list[RetainedRecord] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    @property
    def total_deleted(self) -> int:
        return sum(self.deleted.values())

    @property
    def success(self) -> bool:
        return not self.errors


class RollbackPreview(BaseModel):
    batch_id: str
    can_rollback: bool
    blocking_reason: Optional[str] = None
    records: dict[str, int] = Field(default_factory=dict)


class ReconciliationSummary(BaseModel):
    """What the operator gets back at the end of every run, failed or not."""

    batch_id: str
    batch_number: str
    status: BatchStatus
    counts: dict[str, ImportCounts]
    totals: ImportCounts
    total_debit: Decimal
    total_credit: Decimal
    imbalance: Decimal
    opening_balance_difference: Decimal
    suspense_item_count: int
    suspense_amount: Decimal
    error_count: int
    voucher_counts_by_type: dict[str, int]
    payment_type_counts: dict[str, int]
    duration_seconds: Optional[float] = None
    error_message: Optional[str] = None


def new_batch_number(today: Optional[date] = None) -> str:
    """Human-facing batch number, e.g. ``TALLY-20240401-3FA9C2``."""
    today = today or utcnow().date()
    return f"TALLY-{today:%Y%m%d}-{uuid.uuid4().hex[:6].upper()}"


class Batch(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    batch_number: str = Field(default_factory=new_batch_number)
    company_id: str
    import_type: ImportType = ImportType.FULL
    status: BatchStatus = BatchStatus.UPLOADED
    source: SourceInfo = Field(default_factory=SourceInfo)

    validation_issues: list[ValidationIssue] = Field(default_factory=list)
    counts: dict[RecordType, ImportCounts] = Field(default_factory=dict)
    suspense_items: list[SuspenseItem] = Field(default_factory=list)
    errors: list[ImportErrorEntry] = Field(default_factory=list)
    audit_events: list[AuditEvent] = Field(default_factory=list)

    total_debit: Decimal = Decimal("0")
    total_credit: Decimal = Decimal("0")
    opening_debit: Decimal = Decimal("0")
    opening_credit: Decimal = Decimal("0")
    voucher_counts_by_type: dict[str, int] = Field(default_factory=dict)
    payment_type_counts: dict[str, int] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=utcnow)
    upload_started_at: Optional[datetime] = None
    parsing_completed_at: Optional[datetime] = None
    import_started_at: Optional[datetime] = None
    import_completed_at: Optional[datetime] = None
    rolled_back_at: Optional[datetime] = None
    error_message: Optional[str] = None
    # Last published snapshot, kept after the run ends
    progress: Optional[ImportProgress] = None

    # Lifecycle

    def transition(self, new_status: BatchStatus):
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.id, self.status.value, new_status.value)
        self.status = new_status
        now = utcnow()
        if new_status == BatchStatus.PARSING:
            self.upload_started_at = self.upload_started_at or now
        elif new_status == BatchStatus.PARSED:
            self.parsing_completed_at = now
        elif new_status == BatchStatus.IMPORTING:
            self.import_started_at = now
        elif new_status in (BatchStatus.COMPLETED, BatchStatus.FAILED):
            self.import_completed_at = now
        elif new_status == BatchStatus.ROLLED_BACK:
            self.rolled_back_at = now

    def ensure_mutable(self):
        if self.status in FROZEN_STATUSES:
            raise BatchStateError(f"Batch {self.batch_number} is {self.status.value} and can no longer change")

    # Outcome recording

    def record_outcome(self, record_type: RecordType, outcome: Outcome):
        self.ensure_mutable()
        self.counts.setdefault(record_type, ImportCounts()).add(outcome)

    def add_error(
        self,
        record_type: RecordType,
        error_code: str,
        message: str,
        source_guid: Optional[str] = None,
        source_name: Optional[str] = None,
    ) -> ImportErrorEntry:
        self.ensure_mutable()
        entry = ImportErrorEntry(
            record_type=record_type,
            source_guid=source_guid or None,
            source_name=source_name,
            error_code=error_code,
            message=message,
        )
        self.errors.append(entry)
        return entry

    def add_suspense_item(self, item: SuspenseItem):
        self.ensure_mutable()
        self.suspense_items.append(item)

    def add_audit_event(self, action: str, detail: str, **data: Any) -> AuditEvent:
        # Allowed in every state, including rolled_back
        event = AuditEvent(action=action, detail=detail, data=data)
        self.audit_events.append(event)
        return event

    def reset_run_state(self):
        """Clear per-run results before an import starts."""
        self.ensure_mutable()
        self.counts = {}
        self.suspense_items = []
        self.errors = []
        self.total_debit = Decimal("0")
        self.total_credit = Decimal("0")
        self.opening_debit = Decimal("0")
        self.opening_credit = Decimal("0")
        self.voucher_counts_by_type = {}
        self.payment_type_counts = {}
        self.error_message = None

    # Derived figures

    @property
    def imbalance(self) -> Decimal:
        return abs(self.total_debit - self.total_credit)

    @property
    def totals(self) -> ImportCounts:
        combined = ImportCounts()
        for counts in self.counts.values():
            combined = combined.merge(counts)
        return combined

    @property
    def suspense_amount(self) -> Decimal:
        return sum((abs(item.amount) for item in self.suspense_items), Decimal("0"))

    @property
    def duration_seconds(self) -> Optional[float]:
        if not self.import_started_at:
            return None
        end = self.import_completed_at or utcnow()
        return (end - self.import_started_at).total_seconds()

    @property
    def can_proceed(self) -> bool:
        return not any(issue.is_structural for issue in self.validation_issues)

    def reconciliation(self) -> ReconciliationSummary:
        return ReconciliationSummary(
            batch_id=self.id,
            batch_number=self.batch_number,
            status=self.status,
            counts={rt.value: c for rt, c in self.counts.items()},
            totals=self.totals,
            total_debit=self.total_debit,
            total_credit=self.total_credit,
            imbalance=self.imbalance,
            opening_balance_difference=abs(self.opening_debit - self.opening_credit),
            suspense_item_count=len(self.suspense_items),
            suspense_amount=self.suspense_amount,
            error_count=len(self.errors),
            voucher_counts_by_type=dict(self.voucher_counts_by_type),
            payment_type_counts=dict(self.payment_type_counts),
            duration_seconds=self.duration_seconds,
            error_message=self.error_message,
        )
