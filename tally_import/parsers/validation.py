"""
Record-level validation of a normalized export.

Everything here produces ValidationIssues; nothing is dropped or fixed.
Unbalanced vouchers are only a warning at this stage because the commit
engine enforces balance per voucher and records the failure there.
"""
from __future__ import annotations
import re
from collections import Counter
from datetime import date
from decimal import Decimal
from typing import Optional

from ..models import MastersCollection, Severity, ValidationIssue, Voucher

GSTIN_PATTERN = re.compile(r"^[0-9]{2}[A-Z]{5}[0-9]{4}[A-Z][1-9A-Z]Z[0-9A-Z]$")
PAN_PATTERN = re.compile(r"^[A-Z]{5}[0-9]{4}[A-Z]$")
HSN_PATTERN = re.compile(r"^[0-9]{4}([0-9]{2}){0,2}$")

PARTY_VOUCHER_TYPES = frozenset({"sales", "purchase", "credit note", "debit note"})
MAX_VOUCHER_AGE_YEARS = 10


def _issue(severity, code, message, record_type, name=None, guid=None, field=None) -> ValidationIssue:
    return ValidationIssue(
        severity=severity,
        code=code,
        message=message,
        record_type=record_type,
        record_name=name,
        record_guid=guid or None,
        field=field,
    )


def validate_masters(masters: MastersCollection) -> list[ValidationIssue]:
    """Check ledgers and stock items for format and reference problems."""
    issues: list[ValidationIssue] = []
    known_groups = {g.name.lower() for g in masters.groups}

    names = Counter(ledger.name.lower() for ledger in masters.ledgers)
    for name, count in names.items():
        if count > 1:
            issues.append(_issue(
                Severity.WARNING, "DUPLICATE_NAME",
                f"Ledger name '{name}' appears {count} times", "ledger", name,
            ))

    for ledger in masters.ledgers:
        if ledger.gstin and not GSTIN_PATTERN.match(ledger.gstin.upper()):
            issues.append(_issue(
                Severity.WARNING, "INVALID_GSTIN",
                f"Ledger '{ledger.name}' has malformed GSTIN {ledger.gstin}",
                "ledger", ledger.name, ledger.guid, "gstin",
            ))
        if ledger.pan and not PAN_PATTERN.match(ledger.pan.upper()):
            issues.append(_issue(
                Severity.WARNING, "INVALID_PAN",
                f"Ledger '{ledger.name}' has malformed PAN {ledger.pan}",
                "ledger", ledger.name, ledger.guid, "pan",
            ))
        if not ledger.parent:
            issues.append(_issue(
                Severity.WARNING, "MISSING_GROUP",
                f"Ledger '{ledger.name}' has no parent group", "ledger", ledger.name, ledger.guid, "parent",
            ))
        elif known_groups and ledger.parent.lower() not in known_groups and not _is_builtin_group(ledger.parent):
            issues.append(_issue(
                Severity.INFO, "UNKNOWN_GROUP",
                f"Ledger '{ledger.name}' belongs to group '{ledger.parent}' which is not in the export",
                "ledger", ledger.name, ledger.guid, "parent",
            ))

    known_units = {u.name.lower() for u in masters.units}
    for item in masters.stock_items:
        if item.hsn_code and not HSN_PATTERN.match(item.hsn_code.strip()):
            issues.append(_issue(
                Severity.WARNING, "INVALID_HSN",
                f"Stock item '{item.name}' has malformed HSN/SAC {item.hsn_code}",
                "stock_item", item.name, item.guid, "hsn_code",
            ))
        if item.opening_quantity < 0:
            issues.append(_issue(
                Severity.WARNING, "NEGATIVE_OPENING_QTY",
                f"Stock item '{item.name}' has negative opening quantity {item.opening_quantity}",
                "stock_item", item.name, item.guid, "opening_quantity",
            ))
        if not item.base_units:
            issues.append(_issue(
                Severity.INFO, "MISSING_UNIT",
                f"Stock item '{item.name}' has no base unit", "stock_item", item.name, item.guid, "base_units",
            ))
        elif known_units and item.base_units.lower() not in known_units:
            issues.append(_issue(
                Severity.WARNING, "UNKNOWN_UNIT",
                f"Stock item '{item.name}' uses unit '{item.base_units}' which is not in the export",
                "stock_item", item.name, item.guid, "base_units",
            ))

    return issues


# Tally's predefined groups never appear as GROUP records in partial exports
BUILTIN_GROUPS = frozenset(
    g.lower()
    for g in (
        "Bank Accounts", "Bank OCC A/c", "Bank OD A/c", "Branch / Divisions", "Capital Account",
        "Cash-in-Hand", "Current Assets", "Current Liabilities", "Deposits (Asset)", "Direct Expenses",
        "Direct Incomes", "Duties & Taxes", "Fixed Assets", "Indirect Expenses", "Indirect Incomes",
        "Investments", "Loans & Advances (Asset)", "Loans (Liability)", "Misc. Expenses (ASSET)",
        "Provisions", "Purchase Accounts", "Reserves & Surplus", "Sales Accounts", "Secured Loans",
        "Stock-in-Hand", "Sundry Creditors", "Sundry Debtors", "Suspense A/c", "Unsecured Loans",
    )
)


def _is_builtin_group(name: str) -> bool:
    return name.lower() in BUILTIN_GROUPS


def validate_vouchers(
    vouchers: list[Voucher],
    tolerance: Decimal = Decimal("0.01"),
    today: Optional[date] = None,
) -> list[ValidationIssue]:
    """Check vouchers for balance, dates and missing parties."""
    today = today or date.today()
    oldest = date(today.year - MAX_VOUCHER_AGE_YEARS, today.month, min(today.day, 28))
    issues: list[ValidationIssue] = []

    keys = Counter(v.guid for v in vouchers if v.guid)
    for guid, count in keys.items():
        if count > 1:
            issues.append(_issue(
                Severity.INFO, "DUPLICATE_VOUCHERS",
                f"Voucher GUID {guid} appears {count} times; later copies are skipped on import",
                "voucher", guid=guid,
            ))

    for voucher in vouchers:
        name = voucher.display_name
        if not voucher.ledger_entries:
            issues.append(_issue(
                Severity.WARNING, "NO_LEDGER_ENTRIES",
                f"{name} has no ledger entries", "voucher", name, voucher.guid,
            ))
        elif not voucher.is_balanced(tolerance):
            issues.append(_issue(
                Severity.WARNING, "UNBALANCED_VOUCHER",
                f"{name} does not balance (difference {voucher.balance})",
                "voucher", name, voucher.guid, "ledger_entries",
            ))
        if voucher.date > today:
            issues.append(_issue(
                Severity.WARNING, "FUTURE_DATED",
                f"{name} is dated in the future", "voucher", name, voucher.guid, "date",
            ))
        elif voucher.date < oldest:
            issues.append(_issue(
                Severity.WARNING, "VERY_OLD_VOUCHER",
                f"{name} is more than {MAX_VOUCHER_AGE_YEARS} years old", "voucher", name, voucher.guid, "date",
            ))
        if voucher.effective_type.lower() in PARTY_VOUCHER_TYPES and not voucher.party_ledger_name:
            issues.append(_issue(
                Severity.WARNING, "MISSING_PARTY",
                f"{name} has no party ledger", "voucher", name, voucher.guid, "party_ledger_name",
            ))

    return issues
