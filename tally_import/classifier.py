"""
Payment classification.

A Tally "Payment" voucher can be a vendor payment, a salary run, a TDS
deposit and so on. classify_payment() decides which, from the
counter-ledger's group lineage and name, using an ordered rule list
where the first match wins. It is a pure function: same voucher, same
group table, same rules, same answer.

Statutory payments also carry StatutoryDetails: the kind of dues paid
(EPF, ESI, TDS or professional tax), the bank and challan references in
the narration, and the month the deposit settles.
"""
from __future__ import annotations
import re
import datetime as dt
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .models import (
    ClassificationResult,
    GroupTable,
    LedgerEntry,
    PaymentType,
    StatutoryDetails,
    StatutoryType,
    Voucher,
)


def _rx(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.IGNORECASE)


@dataclass(frozen=True)
class ClassifierRules:
    """Patterns used by classify_payment. Override to fit a company's chart."""

    statutory: re.Pattern = field(
        default_factory=lambda: _rx(
            r"\b(epf|e\.p\.f\.?|provident fund|pf payable|esi|esic|employees'? state insurance"
            r"|tds|tcs|professional tax|pt payable)\b"
        )
    )
    contractor: re.Pattern = field(default_factory=lambda: _rx(r"consultant|contractor|freelancer"))
    vendor: re.Pattern = field(default_factory=lambda: _rx(r"^sundry creditors$"))
    salary: re.Pattern = field(default_factory=lambda: _rx(r"salar(y|ies)|wages|payroll"))
    loan: re.Pattern = field(default_factory=lambda: _rx(r"\bloans?\b|\bemi\b|borrowings?"))
    bank_charge: re.Pattern = field(
        default_factory=lambda: _rx(r"bank charges?|bank commission|processing fees?")
    )
    bank_cash_group: re.Pattern = field(
        default_factory=lambda: _rx(r"^(bank accounts|bank od a/c|bank occ a/c|cash-in-hand)$")
    )
    # Fallback when a ledger's group is unknown
    bank_cash_name: re.Pattern = field(
        default_factory=lambda: _rx(
            r"\b(bank|hdfc|icici|sbi|axis|kotak|yes bank|idfc|canara|pnb|indusind|petty cash|cash)\b"
        )
    )

    # Statutory details
    epf: re.Pattern = field(default_factory=lambda: _rx(r"\b(epf|e\.p\.f\.?|provident fund|pf)\b"))
    esi: re.Pattern = field(default_factory=lambda: _rx(r"\b(esic?|employees'? state insurance)\b"))
    tds: re.Pattern = field(default_factory=lambda: _rx(r"\b(tds|tcs|cbdt)\b|tin 2\.0"))
    professional_tax: re.Pattern = field(default_factory=lambda: _rx(r"\b(professional tax|pt|e-khajane)\b"))
    tds_section: re.Pattern = field(default_factory=lambda: _rx(r"\b(19[2-6][a-z]{0,2})\b"))
    bank_reference: re.Pattern = field(default_factory=lambda: _rx(r"\bINB[/\s]*(\d{9,12})\b"))
    trrn: re.Pattern = field(default_factory=lambda: _rx(r"//(\d{16,20})\b"))
    challan_number: re.Pattern = field(default_factory=lambda: _rx(r"TIN 2\.0[/\s]*(\d+)"))
    # First match wins; anything else is a regular deposit
    statutory_categories: tuple = field(
        default_factory=lambda: (
            ("annual", _rx(r"\b(annual|yearly)\b")),
            ("arrear", _rx(r"\b(arrears?|previous|prior)\b")),
            ("penalty", _rx(r"\b(penalty|fine)\b")),
            ("interest", _rx(r"\binterest\b.*\b(delay|delayed|late)\b|\b(delay|delayed|late)\b.*\binterest\b")),
            ("revision", _rx(r"\b(revision|correction|additional)\b")),
        )
    )


DEFAULT_RULES = ClassifierRules()


def is_ambiguous(voucher: Voucher, ambiguous_types: Iterable[str]) -> bool:
    """True when the voucher's base type needs classification before posting."""
    wanted = {t.lower() for t in ambiguous_types}
    return voucher.effective_type.lower() in wanted or voucher.voucher_type.lower() in wanted


def is_bank_or_cash(
    entry: LedgerEntry, groups: GroupTable, rules: ClassifierRules = DEFAULT_RULES
) -> bool:
    lineage = groups.ledger_lineage(entry.ledger_name, entry.parent)
    if lineage:
        return any(rules.bank_cash_group.search(g) for g in lineage)
    if rules.bank_charge.search(entry.ledger_name):
        return False
    return bool(rules.bank_cash_name.search(entry.ledger_name))


def _counter_ledger(
    voucher: Voucher, groups: GroupTable, rules: ClassifierRules
) -> Optional[LedgerEntry]:
    """The payee side: largest non-bank debit, else largest debit, else largest line."""
    entries = voucher.ledger_entries
    if not entries:
        return None
    debits = [e for e in entries if e.is_debit]
    payees = [e for e in debits if not is_bank_or_cash(e, groups, rules)]
    for candidates in (payees, debits, entries):
        if candidates:
            # max() keeps the first of equal amounts, so source order breaks ties
            return max(candidates, key=lambda e: abs(e.amount))
    return None


def _first_match(pattern: re.Pattern, values: list[str]) -> Optional[str]:
    for value in values:
        if pattern.search(value):
            return value
    return None


def financial_year(day: dt.date) -> str:
    """Indian financial year (April to March) holding a date, e.g. '2024-25'."""
    start = day.year if day.month >= 4 else day.year - 1
    return f"{start}-{(start + 1) % 100:02d}"


def financial_quarter(month: int) -> str:
    """Q1 is April to June, Q4 is January to March."""
    return f"Q{(month - 4) % 12 // 3 + 1}"


def _group(pattern: re.Pattern, text: str) -> Optional[str]:
    match = pattern.search(text)
    return match.group(1) if match else None


def statutory_details(
    voucher: Voucher,
    counter: LedgerEntry,
    lineage: list[str],
    rules: ClassifierRules = DEFAULT_RULES,
) -> StatutoryDetails:
    """
    Details of a payment already classified as statutory.

    The dues type is read from the counter-ledger, its groups, the other
    ledgers and the narration, in that order, and defaults to TDS. The
    deposit is taken to settle the month before the payment date.
    """
    narration = voucher.narration or ""
    others = [e.ledger_name for e in voucher.ledger_entries if e is not counter]
    texts = [counter.ledger_name, *lineage, *others, narration]

    kinds = (
        (StatutoryType.EPF, rules.epf),
        (StatutoryType.ESI, rules.esi),
        (StatutoryType.TDS, rules.tds),
        (StatutoryType.PT, rules.professional_tax),
    )
    statutory_type = next(
        (kind for text in texts for kind, pattern in kinds if pattern.search(text)), StatutoryType.TDS
    )

    section = None
    if statutory_type == StatutoryType.TDS:
        section = next((s.upper() for s in (_group(rules.tds_section, t) for t in texts) if s), None)
        if section is None and any(rules.salary.search(t) for t in texts):
            section = "192"

    category = next((name for name, pattern in rules.statutory_categories if pattern.search(narration)), "regular")

    period = voucher.date.replace(day=1) - dt.timedelta(days=1)
    return StatutoryDetails(
        statutory_type=statutory_type,
        tds_section=section,
        category=category,
        bank_reference=_group(rules.bank_reference, narration),
        trrn=_group(rules.trrn, narration),
        challan_number=_group(rules.challan_number, narration),
        period_month=period.month,
        period_year=period.year,
        period_quarter=financial_quarter(period.month),
        financial_year=financial_year(period),
    )


def classify_payment(
    voucher: Voucher,
    groups: GroupTable,
    rules: ClassifierRules = DEFAULT_RULES,
) -> ClassificationResult:
    """
    Classify a payment voucher.

    Rules, first match wins:
        1. statutory group or ledger name (EPF/ESI/TDS/PT)  -> statutory
        2. consultants/contractors group                   -> contractor
        3. Sundry Creditors group                          -> vendor
        4. salary payable group or name                    -> salary
        5. loan/EMI group or name                          -> loan_emi
        6. bank charges group or name                      -> bank_charge
        7. every leg is a bank or cash ledger              -> internal_transfer
        8. anything else                                   -> other

    Returns:
        ClassificationResult whose reason names the rule and the input that matched
    """
    counter = _counter_ledger(voucher, groups, rules)
    if counter is None:
        return ClassificationResult(
            payment_type=PaymentType.OTHER,
            reason="rule 8 (other): voucher has no ledger entries",
        )

    lineage = groups.ledger_lineage(counter.ledger_name, counter.parent)
    parent_group = lineage[0] if lineage else None
    base = dict(
        target_ledger_name=counter.ledger_name,
        parent_group=parent_group,
        amount=abs(counter.amount) if counter.is_debit else voucher.amount,
    )

    def result(payment_type: PaymentType, reason: str, **extra) -> ClassificationResult:
        return ClassificationResult(payment_type=payment_type, reason=reason, **base, **extra)

    def group_or_name(pattern: re.Pattern) -> Optional[str]:
        group = _first_match(pattern, lineage)
        if group:
            return f"group '{group}'"
        if pattern.search(counter.ledger_name):
            return f"ledger name '{counter.ledger_name}'"
        return None

    where = f"counter-ledger '{counter.ledger_name}'"

    matched = group_or_name(rules.statutory)
    if matched:
        return result(
            PaymentType.STATUTORY,
            f"rule 1 (statutory): {where} {matched} matched statutory pattern",
            statutory=statutory_details(voucher, counter, lineage, rules),
        )

    group = _first_match(rules.contractor, lineage)
    if group:
        return result(PaymentType.CONTRACTOR, f"rule 2 (contractor): {where} group '{group}' matched contractor pattern")

    group = _first_match(rules.vendor, lineage)
    if group:
        return result(PaymentType.VENDOR, f"rule 3 (vendor): {where} group '{group}' is Sundry Creditors")

    for payment_type, pattern, number in (
        (PaymentType.SALARY, rules.salary, 4),
        (PaymentType.LOAN_EMI, rules.loan, 5),
        (PaymentType.BANK_CHARGE, rules.bank_charge, 6),
    ):
        matched = group_or_name(pattern)
        if matched:
            return result(
                payment_type,
                f"rule {number} ({payment_type.value}): {where} {matched} matched {payment_type.value} pattern",
            )

    if all(is_bank_or_cash(e, groups, rules) for e in voucher.ledger_entries):
        return result(
            PaymentType.INTERNAL_TRANSFER,
            f"rule 7 (internal_transfer): all {len(voucher.ledger_entries)} legs are bank or cash ledgers",
        )

    described = f"group '{parent_group}'" if parent_group else "no known group"
    return result(PaymentType.OTHER, f"rule 8 (other): {where} with {described} matched no rule")
