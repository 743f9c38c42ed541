"""
Data model for the Tally import engine.

- masters / vouchers: the intermediate model produced by the parsers
- batch: batch lifecycle, counts, suspense items, errors and progress
- schema.sql: PostgreSQL DDL for batch history
"""
from pathlib import Path

from .masters import (
    Currency,
    Unit,
    StockGroup,
    StockItem,
    GstRate,
    Godown,
    CostCategory,
    CostCentre,
    Ledger,
    BankDetails,
    OpeningBill,
    VoucherTypeMaster,
    Group,
    GroupTable,
    MastersCollection,
    MappingResult,
    TargetKind,
    LEDGER_TARGET_KINDS,
)
from .vouchers import (
    BillAllocation,
    BillType,
    CostAllocation,
    LedgerEntry,
    GodownAllocation,
    InventoryEntry,
    PaymentType,
    ClassificationResult,
    StatutoryDetails,
    StatutoryType,
    Voucher,
)
from .batch import (
    Batch,
    BatchStatus,
    ImportType,
    ImportCounts,
    ImportErrorEntry,
    ImportProgress,
    ImportRequest,
    Outcome,
    PhaseProgress,
    ReconciliationSummary,
    RecordType,
    RollbackPreview,
    RollbackRequest,
    RollbackSummary,
    Severity,
    SourceInfo,
    SuspenseItem,
    ValidationIssue,
    IMPORT_ORDER,
    MASTER_TYPES,
)

# Path to schema file
SCHEMA_FILE = Path(__file__).parent / "schema.sql"


def get_schema_sql(schema: str = "tally_import") -> str:
    """Get the batch history DDL for the given schema name."""
    return SCHEMA_FILE.read_text(encoding="utf-8").replace("{schema}", schema)
