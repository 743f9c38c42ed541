"""
Tally Import Engine - Migrate Tally exports into the target accounting system.

This package reads a Tally XML or JSON export, validates it, maps every
ledger to a target entity and commits masters, opening balances and
vouchers in dependency order, as one auditable batch that can be rolled
back.

Key Features:
- XML and JSON exports, UTF-16/UTF-8, with structural and record-level validation
- Payment classification (statutory, contractor, vendor, salary, loan EMI, ...)
- Ledger mapping: ledger override -> group override -> built-in default -> suspense
- Per-voucher balance enforcement; unbalanced vouchers are never posted
- Idempotent full and incremental imports
- Batch lifecycle with progress, cancellation and one import per company
- Guarded rollback that keeps masters still in use

Usage:
    # Inspect an export
    python -m tally_import preview daybook.xml

    # Import into an in-memory target and print the reconciliation summary
    python -m tally_import dry-run daybook.xml --mapping mapping.json

    # Create the batch history tables
    python -m tally_import init-db
"""

__version__ = "1.0.0"
__author__ = "Intelayer"

from .config import ImportEngineConfig, configure_logging
from .importer import Importer
from .lifecycle import BatchManager
from .mapper import LedgerMapper, MappingConfiguration
from .parsers import parse_export
from .repository import InMemoryMappingConfigStore, InMemoryTargetRepository
from .rollback import RollbackManager

__all__ = [
    "ImportEngineConfig",
    "configure_logging",
    "Importer",
    "BatchManager",
    "LedgerMapper",
    "MappingConfiguration",
    "parse_export",
    "InMemoryMappingConfigStore",
    "InMemoryTargetRepository",
    "RollbackManager",
    "__version__",
]
