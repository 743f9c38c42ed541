"""
Parsers for Tally exports.

parse_export() is the single entry point: raw bytes in, intermediate
model plus validation issues out. Structural failures produce one
``file`` level error issue and no model; record-level problems produce
issues and parsing carries on.
"""
from __future__ import annotations
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Optional
from loguru import logger

from ..errors import ParseError
from ..models import MastersCollection, Severity, ValidationIssue, Voucher
from .base import (
    decode_export,
    sanitize_xml,
    parse_tally_date,
    parse_amount,
    parse_quantity,
    parse_int,
    parse_bool,
)
from .normalize import Normalizer
from .sources import read_export
from .validation import validate_masters, validate_vouchers


@dataclass
class ExportSummary:
    """Derived statistics for preview screens. Not authoritative."""

    ledger_count: int = 0
    stock_item_count: int = 0
    voucher_count: int = 0
    ledgers_by_group: dict[str, int] = field(default_factory=dict)
    vouchers_by_type: dict[str, int] = field(default_factory=dict)
    amount_by_type: dict[str, Decimal] = field(default_factory=dict)
    from_date: Optional[date] = None
    to_date: Optional[date] = None


@dataclass
class ParseResult:
    format: str
    masters: Optional[MastersCollection] = None
    vouchers: list[Voucher] = field(default_factory=list)
    issues: list[ValidationIssue] = field(default_factory=list)
    summary: ExportSummary = field(default_factory=ExportSummary)

    @property
    def can_proceed(self) -> bool:
        return self.masters is not None and not any(i.is_structural for i in self.issues)

    @property
    def error_count(self) -> int:
        return sum(1 for i in self.issues if i.severity == Severity.ERROR)

    @property
    def warning_count(self) -> int:
        return sum(1 for i in self.issues if i.severity == Severity.WARNING)


def summarize(masters: MastersCollection, vouchers: list[Voucher]) -> ExportSummary:
    summary = ExportSummary(
        ledger_count=len(masters.ledgers),
        stock_item_count=len(masters.stock_items),
        voucher_count=len(vouchers),
    )
    by_group: dict[str, int] = defaultdict(int)
    for ledger in masters.ledgers:
        by_group[ledger.parent or "(none)"] += 1
    by_type: dict[str, int] = defaultdict(int)
    amounts: dict[str, Decimal] = defaultdict(Decimal)
    for voucher in vouchers:
        by_type[voucher.voucher_type] += 1
        amounts[voucher.voucher_type] += voucher.amount
    summary.ledgers_by_group = dict(by_group)
    summary.vouchers_by_type = dict(by_type)
    summary.amount_by_type = dict(amounts)
    if vouchers:
        summary.from_date = min(v.date for v in vouchers)
        summary.to_date = max(v.date for v in vouchers)
    return summary


def parse_export(
    data: bytes,
    fmt: str = "xml",
    tolerance: Decimal = Decimal("0.01"),
    today: Optional[date] = None,
) -> ParseResult:
    """
    Parse a Tally export into the intermediate model.

    Args:
        data: Raw file bytes (any supported encoding)
        fmt: "xml" or "json"
        tolerance: Balance tolerance used for the unbalanced-voucher warning
        today: Reference date for future/old voucher checks

    Returns:
        ParseResult; never raises for malformed content
    """
    result = ParseResult(format=fmt.lower())
    try:
        document = read_export(data, fmt)
    except ParseError as e:
        logger.error(f"Export could not be parsed: {e}")
        result.issues.append(
            ValidationIssue(severity=Severity.ERROR, code="MALFORMED_FILE", message=str(e), record_type="file")
        )
        return result

    normalizer = Normalizer()
    masters, vouchers = normalizer.normalize(document)
    result.masters = masters
    result.vouchers = vouchers
    result.issues.extend(normalizer.issues)
    result.issues.extend(validate_masters(masters))
    result.issues.extend(validate_vouchers(vouchers, tolerance, today))
    result.summary = summarize(masters, vouchers)

    logger.info(
        f"Parsed {fmt} export: {result.summary.ledger_count} ledgers, "
        f"{result.summary.voucher_count} vouchers, {result.error_count} errors, "
        f"{result.warning_count} warnings"
    )
    return result


__all__ = [
    "ExportSummary",
    "ParseResult",
    "parse_export",
    "summarize",
    "decode_export",
    "sanitize_xml",
    "parse_tally_date",
    "parse_amount",
    "parse_quantity",
    "parse_int",
    "parse_bool",
]
