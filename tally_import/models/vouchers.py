"""
Voucher records of the intermediate model.

Sign convention for every amount: negative = debit, positive = credit.
A LedgerEntry refuses to exist without a defined side.
"""
from __future__ import annotations
import hashlib
import datetime as dt
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, field_validator, model_validator

from .masters import MappingResult


class BillType(str, Enum):
    NEW_REF = "New Ref"
    AGAINST_REF = "Agst Ref"
    ADVANCE = "Advance"
    ON_ACCOUNT = "On Account"

    @classmethod
    def from_tally(cls, value: Optional[str]) -> "BillType":
        """Map Tally's bill type spellings; unknown values default to New Ref."""
        normalized = (value or "").strip().lower().replace(".", "")
        aliases = {
            "new ref": cls.NEW_REF,
            "agst ref": cls.AGAINST_REF,
            "against ref": cls.AGAINST_REF,
            "advance": cls.ADVANCE,
            "on account": cls.ON_ACCOUNT,
        }
        return aliases.get(normalized, cls.NEW_REF)


class BillAllocation(BaseModel):
    name: str
    bill_type: BillType = BillType.NEW_REF
    amount: Decimal
    credit_period: Optional[str] = None
    ledger_name: Optional[str] = None


class CostAllocation(BaseModel):
    category: Optional[str] = None
    cost_centre: str
    amount: Decimal
    ledger_name: Optional[str] = None


class LedgerEntry(BaseModel):
    ledger_name: str = Field(min_length=1)
    parent: Optional[str] = None
    amount: Decimal
    is_deemed_positive: Optional[bool] = None
    is_party_ledger: bool = False
    bill_allocations: list[BillAllocation] = Field(default_factory=list)
    cost_allocations: list[CostAllocation] = Field(default_factory=list)
    # Set when the line was lifted from an inventory entry's accounting allocation
    from_inventory: bool = False
    mapping: MappingResult = Field(default_factory=MappingResult)

    @model_validator(mode="after")
    def _defined_sign(self) -> "LedgerEntry":
        if self.amount == 0:
            raise ValueError(f"ledger entry for '{self.ledger_name}' has zero amount (no debit/credit side)")
        # Tally marks debit lines as deemed positive
        if self.is_deemed_positive is not None and self.is_deemed_positive != (self.amount < 0):
            side = "debit" if self.amount < 0 else "credit"
            raise ValueError(
                f"ledger entry for '{self.ledger_name}' is a {side} but "
                f"ISDEEMEDPOSITIVE={'Yes' if self.is_deemed_positive else 'No'}"
            )
        return self

    @property
    def is_debit(self) -> bool:
        return self.amount < 0

    @property
    def debit(self) -> Decimal:
        return -self.amount if self.amount < 0 else Decimal("0")

    @property
    def credit(self) -> Decimal:
        return self.amount if self.amount > 0 else Decimal("0")


class GodownAllocation(BaseModel):
    godown: Optional[str] = None
    batch_name: Optional[str] = None
    quantity: Decimal = Decimal("0")
    amount: Decimal = Decimal("0")


class InventoryEntry(BaseModel):
    stock_item: str = Field(min_length=1)
    amount: Decimal = Decimal("0")
    rate: Decimal = Decimal("0")
    unit: Optional[str] = None
    billed_quantity: Decimal = Decimal("0")
    actual_quantity: Decimal = Decimal("0")
    is_deemed_positive: Optional[bool] = None
    godowns: list[GodownAllocation] = Field(default_factory=list)

    @property
    def is_inward(self) -> bool:
        """True when stock comes in (purchase side)."""
        if self.is_deemed_positive is not None:
            return self.is_deemed_positive
        return self.amount < 0

    @property
    def quantity(self) -> Decimal:
        return self.actual_quantity or self.billed_quantity

    def splits(self) -> list[GodownAllocation]:
        """Godown splits, or a single unassigned split when none were exported."""
        if self.godowns:
            return self.godowns
        return [GodownAllocation(quantity=self.quantity, amount=self.amount)]


class PaymentType(str, Enum):
    STATUTORY = "statutory"
    CONTRACTOR = "contractor"
    VENDOR = "vendor"
    SALARY = "salary"
    LOAN_EMI = "loan_emi"
    BANK_CHARGE = "bank_charge"
    INTERNAL_TRANSFER = "internal_transfer"
    OTHER = "other"


class StatutoryType(str, Enum):
    EPF = "epf"
    ESI = "esi"
    TDS = "tds"
    PT = "pt"


class StatutoryDetails(BaseModel):
    """What a statutory payment settles, read from its ledgers, narration and date."""

    statutory_type: StatutoryType
    tds_section: Optional[str] = None
    category: str = "regular"
    bank_reference: Optional[str] = None
    trrn: Optional[str] = None
    challan_number: Optional[str] = None
    # Deposits settle the month before the payment date
    period_month: int = Field(ge=1, le=12)
    period_year: int
    period_quarter: str
    financial_year: str

    @property
    def reference_number(self) -> Optional[str]:
        return self.bank_reference or self.trrn or self.challan_number


class ClassificationResult(BaseModel):
    payment_type: PaymentType
    target_ledger_name: Optional[str] = None
    target_ledger_guid: Optional[str] = None
    parent_group: Optional[str] = None
    amount: Decimal = Decimal("0")
    reason: str = Field(min_length=1)
    statutory: Optional[StatutoryDetails] = None


class Voucher(BaseModel):
    guid: str = ""
    number: Optional[str] = None
    voucher_type: str = Field(min_length=1)
    base_type: Optional[str] = None
    date: dt.date
    reference: Optional[str] = None
    narration: Optional[str] = None
    party_ledger_name: Optional[str] = None
    currency: Optional[str] = None
    exchange_rate: Optional[Decimal] = None

    # GST / e-invoice metadata
    party_gstin: Optional[str] = None
    place_of_supply: Optional[str] = None
    gst_registration_type: Optional[str] = None
    irn: Optional[str] = None
    eway_bill_number: Optional[str] = None

    is_cancelled: bool = False
    is_optional: bool = False
    is_invoice: bool = False

    ledger_entries: list[LedgerEntry] = Field(default_factory=list)
    inventory_entries: list[InventoryEntry] = Field(default_factory=list)

    # Filled in while importing
    classification: Optional[ClassificationResult] = None
    journal_entry_id: Optional[str] = None

    @field_validator("voucher_type")
    @classmethod
    def _strip_type(cls, value: str) -> str:
        return value.strip()

    @property
    def effective_type(self) -> str:
        return self.base_type or self.voucher_type

    @property
    def balance(self) -> Decimal:
        """Sum of signed ledger amounts; zero for a balanced voucher."""
        return sum((e.amount for e in self.ledger_entries), Decimal("0"))

    @property
    def total_debit(self) -> Decimal:
        return sum((e.debit for e in self.ledger_entries), Decimal("0"))

    @property
    def total_credit(self) -> Decimal:
        return sum((e.credit for e in self.ledger_entries), Decimal("0"))

    @property
    def amount(self) -> Decimal:
        """Voucher amount as shown in Tally (the debit total)."""
        return self.total_debit

    def is_balanced(self, tolerance: Decimal = Decimal("0.01")) -> bool:
        return abs(self.balance) <= tolerance

    @property
    def bill_allocations(self) -> list[BillAllocation]:
        return [b for e in self.ledger_entries for b in e.bill_allocations]

    @property
    def cost_allocations(self) -> list[CostAllocation]:
        return [c for e in self.ledger_entries for c in e.cost_allocations]

    @property
    def source_key(self) -> str:
        """Stable idempotency key: the GUID, or a digest of type/number/date/lines."""
        if self.guid:
            return self.guid
        basis = "|".join(
            [self.voucher_type, self.number or "", self.date.isoformat()]
            + [f"{e.ledger_name}:{e.amount}" for e in self.ledger_entries]
        )
        return "vch:" + hashlib.sha1(basis.encode("utf-8")).hexdigest()

    @property
    def display_name(self) -> str:
        return f"{self.voucher_type} {self.number or '(no number)'} dated {self.date.isoformat()}"
