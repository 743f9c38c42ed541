"""
Master records of the intermediate model.

Each master type is a tagged pydantic model (``kind`` discriminator) so
that collections of mixed masters stay explicit. Amount fields follow
the Tally sign convention: negative = debit, positive = credit.
"""
from __future__ import annotations
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator


class TargetKind(str, Enum):
    """Kinds of records the engine creates in the target system."""

    CUSTOMER = "customer"
    VENDOR = "vendor"
    BANK_ACCOUNT = "bank_account"
    ACCOUNT = "account"
    SUSPENSE = "suspense"
    CURRENCY = "currency"
    UNIT = "unit"
    STOCK_GROUP = "stock_group"
    STOCK_ITEM = "stock_item"
    GODOWN = "godown"
    COST_CATEGORY = "cost_category"
    COST_CENTRE = "cost_centre"
    OPENING_BALANCE = "opening_balance"
    JOURNAL_ENTRY = "journal_entry"
    STOCK_MOVEMENT = "stock_movement"


# Kinds a ledger can map onto
LEDGER_TARGET_KINDS = frozenset(
    {
        TargetKind.CUSTOMER,
        TargetKind.VENDOR,
        TargetKind.BANK_ACCOUNT,
        TargetKind.ACCOUNT,
        TargetKind.SUSPENSE,
    }
)


class MappingResult(BaseModel):
    """Where a source record landed in the target system.

    Either both fields are set (resolved) or neither is (pending).
    """

    model_config = ConfigDict(frozen=True)

    target_kind: Optional[TargetKind] = None
    target_id: Optional[str] = None

    @model_validator(mode="after")
    def _both_or_none(self) -> "MappingResult":
        if (self.target_kind is None) != (self.target_id is None):
            raise ValueError("target_kind and target_id must be set together")
        return self

    @property
    def is_resolved(self) -> bool:
        return self.target_id is not None

    @classmethod
    def resolved(cls, kind: TargetKind, target_id: str) -> "MappingResult":
        return cls(target_kind=kind, target_id=target_id)


class MasterRecord(BaseModel):
    """Fields shared by every master."""

    guid: str = ""
    name: str = Field(min_length=1)
    parent: Optional[str] = None
    alter_id: Optional[int] = None
    mapping: MappingResult = Field(default_factory=MappingResult)

    @property
    def source_key(self) -> str:
        """Stable key for idempotency; falls back to the name when GUID is missing."""
        return self.guid or f"{self.kind}:{self.name.lower()}"


class Currency(MasterRecord):
    kind: Literal["currency"] = "currency"
    symbol: Optional[str] = None
    formal_name: Optional[str] = None
    decimal_places: int = 2
    is_suffix: bool = False


class Unit(MasterRecord):
    kind: Literal["unit"] = "unit"
    formal_name: Optional[str] = None
    is_simple_unit: bool = True
    base_units: Optional[str] = None
    additional_units: Optional[str] = None
    conversion: Decimal = Decimal("1")
    decimal_places: int = 0


class StockGroup(MasterRecord):
    kind: Literal["stock_group"] = "stock_group"
    base_units: Optional[str] = None


class GstRate(BaseModel):
    """One GST duty head on a stock item (IGST, CGST, SGST/UTGST, Cess)."""

    duty_head: str
    rate: Decimal


class StockItem(MasterRecord):
    kind: Literal["stock_item"] = "stock_item"
    category: Optional[str] = None
    base_units: Optional[str] = None
    hsn_code: Optional[str] = None
    gst_rates: list[GstRate] = Field(default_factory=list)
    opening_quantity: Decimal = Decimal("0")
    opening_rate: Decimal = Decimal("0")
    opening_value: Decimal = Decimal("0")
    closing_quantity: Decimal = Decimal("0")
    closing_value: Decimal = Decimal("0")
    costing_method: Optional[str] = None


class Godown(MasterRecord):
    kind: Literal["godown"] = "godown"
    address: Optional[str] = None


class CostCategory(MasterRecord):
    kind: Literal["cost_category"] = "cost_category"
    allocate_revenue: bool = True
    allocate_non_revenue: bool = False


class CostCentre(MasterRecord):
    kind: Literal["cost_centre"] = "cost_centre"
    category: Optional[str] = None


class BankDetails(BaseModel):
    account_number: Optional[str] = None
    ifsc: Optional[str] = None
    bank_name: Optional[str] = None
    branch: Optional[str] = None


class OpeningBill(BaseModel):
    """Bill-wise opening balance carried by a party ledger."""

    name: str
    bill_date: Optional[date] = None
    amount: Decimal
    credit_period: Optional[str] = None


class Ledger(MasterRecord):
    kind: Literal["ledger"] = "ledger"
    opening_balance: Decimal = Decimal("0")
    closing_balance: Decimal = Decimal("0")
    currency: Optional[str] = None
    gstin: Optional[str] = None
    gst_registration_type: Optional[str] = None
    state: Optional[str] = None
    pan: Optional[str] = None
    bank: Optional[BankDetails] = None
    is_bill_wise: bool = False
    address: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    opening_bills: list[OpeningBill] = Field(default_factory=list)


class VoucherTypeMaster(MasterRecord):
    """A (possibly custom) voucher type; ``parent`` is its base type."""

    kind: Literal["voucher_type"] = "voucher_type"
    numbering_method: Optional[str] = None
    is_active: bool = True


class Group(MasterRecord):
    """Ledger group; only used to build the group hierarchy."""

    kind: Literal["group"] = "group"
    is_revenue: bool = False
    nature: Optional[str] = None


class GroupTable:
    """
    Ledger group hierarchy and ledger-to-group lookup.

    Built from the parsed Group and Ledger masters. Names are matched
    case-insensitively, the way Tally treats them.
    """

    def __init__(self, groups: list[Group] | None = None, ledgers: list[Ledger] | None = None):
        self._parents: dict[str, Optional[str]] = {}
        self._ledger_groups: dict[str, Optional[str]] = {}
        for group in groups or []:
            self._parents[group.name.lower()] = group.parent
        for ledger in ledgers or []:
            self._ledger_groups[ledger.name.lower()] = ledger.parent

    def add_ledger(self, name: str, parent: Optional[str]):
        self._ledger_groups[name.lower()] = parent

    def group_of(self, ledger_name: str) -> Optional[str]:
        return self._ledger_groups.get(ledger_name.lower())

    def lineage(self, group_name: Optional[str]) -> list[str]:
        """Return the group followed by its ancestors, nearest first."""
        chain: list[str] = []
        seen: set[str] = set()
        current = group_name
        while current and current.lower() not in seen and current.lower() != "primary":
            chain.append(current)
            seen.add(current.lower())
            current = self._parents.get(current.lower())
        return chain

    def ledger_lineage(self, ledger_name: str, parent: Optional[str] = None) -> list[str]:
        """Lineage for a ledger, preferring an explicit parent when given."""
        return self.lineage(parent or self.group_of(ledger_name))


class MastersCollection(BaseModel):
    """All masters of one export, grouped by type."""

    company_name: Optional[str] = None
    company_guid: Optional[str] = None
    currencies: list[Currency] = Field(default_factory=list)
    units: list[Unit] = Field(default_factory=list)
    stock_groups: list[StockGroup] = Field(default_factory=list)
    stock_items: list[StockItem] = Field(default_factory=list)
    godowns: list[Godown] = Field(default_factory=list)
    cost_categories: list[CostCategory] = Field(default_factory=list)
    cost_centres: list[CostCentre] = Field(default_factory=list)
    ledgers: list[Ledger] = Field(default_factory=list)
    voucher_types: list[VoucherTypeMaster] = Field(default_factory=list)
    groups: list[Group] = Field(default_factory=list)

    def group_table(self) -> GroupTable:
        return GroupTable(self.groups, self.ledgers)

    def base_voucher_type(self, voucher_type: str) -> str:
        """Resolve a custom voucher type to its built-in base type."""
        parents = {vt.name.lower(): vt.parent for vt in self.voucher_types}
        seen: set[str] = set()
        current = voucher_type
        while current.lower() in parents and current.lower() not in seen:
            seen.add(current.lower())
            parent = parents[current.lower()]
            if not parent or parent.lower() == current.lower():
                break
            current = parent
        return current
