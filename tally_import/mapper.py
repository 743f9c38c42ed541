"""
Ledger mapping: which target entity does a Tally ledger become?

Resolution order, first hit wins:
    1. explicit ledger override
    2. explicit group override (the ledger's group, then its ancestors)
    3. built-in default for Tally's well-known groups (same walk)
    4. suspense (or skip, when the configuration says so)

The mapping configuration is always passed in; nothing here reads
global state.
"""
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from .errors import MappingConfigurationError
from .models import GroupTable, LEDGER_TARGET_KINDS, TargetKind


class GroupMapping(BaseModel):
    tally_group_name: str
    target_kind: TargetKind
    target_account_type: Optional[str] = None
    target_id: Optional[str] = None


class LedgerMapping(BaseModel):
    tally_ledger_name: str
    # When set, the override only applies to a ledger under this group
    tally_group_name: Optional[str] = None
    target_kind: TargetKind
    target_account_type: Optional[str] = None
    target_id: Optional[str] = None


class CostCategoryMapping(BaseModel):
    tally_cost_category_name: str
    target_tag_group: str = "cost_center"


class MappingConfiguration(BaseModel):
    """Operator-supplied mapping choices for one batch."""

    group_mappings: list[GroupMapping] = Field(default_factory=list)
    ledger_mappings: list[LedgerMapping] = Field(default_factory=list)
    cost_category_mappings: list[CostCategoryMapping] = Field(default_factory=list)
    create_suspense_accounts: bool = True
    skip_unmapped: bool = False

    @classmethod
    def load(cls, data: dict[str, Any]) -> "MappingConfiguration":
        """Build from plain data, raising MappingConfigurationError on any problem."""
        try:
            config = cls.model_validate(data)
        except ValidationError as e:
            raise MappingConfigurationError(
                [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            ) from e
        config.validate_or_raise()
        return config

    def problems(self) -> list[str]:
        problems = []
        seen_groups: set[str] = set()
        for m in self.group_mappings:
            name = m.tally_group_name.strip().lower()
            if not name:
                problems.append("group mapping with blank group name")
            elif name in seen_groups:
                problems.append(f"group '{m.tally_group_name}' is mapped more than once")
            seen_groups.add(name)
            if m.target_kind not in LEDGER_TARGET_KINDS:
                problems.append(f"group '{m.tally_group_name}' maps to {m.target_kind.value}, which is not a ledger target")

        seen_ledgers: set[tuple[str, str]] = set()
        for m in self.ledger_mappings:
            name = m.tally_ledger_name.strip().lower()
            key = (name, (m.tally_group_name or "").strip().lower())
            if not name:
                problems.append("ledger mapping with blank ledger name")
            elif key in seen_ledgers:
                problems.append(f"ledger '{m.tally_ledger_name}' is mapped more than once")
            seen_ledgers.add(key)
            if m.target_kind not in LEDGER_TARGET_KINDS:
                problems.append(f"ledger '{m.tally_ledger_name}' maps to {m.target_kind.value}, which is not a ledger target")

        for m in self.cost_category_mappings:
            if not m.tally_cost_category_name.strip():
                problems.append("cost category mapping with blank category name")
            if not m.target_tag_group.strip():
                problems.append(f"cost category '{m.tally_cost_category_name}' has a blank tag group")
        return problems

    def validate_or_raise(self):
        problems = self.problems()
        if problems:
            raise MappingConfigurationError(problems)


class MappingSource(str, Enum):
    LEDGER_OVERRIDE = "ledger_override"
    GROUP_OVERRIDE = "group_override"
    DEFAULT = "default"
    SUSPENSE = "suspense"
    SKIP = "skip"
    UNMAPPED = "unmapped"


@dataclass(frozen=True)
class MappingDecision:
    """Outcome of resolving one ledger. ``target_id`` is set only for pinned targets."""

    source: MappingSource
    reason: str
    kind: Optional[TargetKind] = None
    account_type: Optional[str] = None
    target_id: Optional[str] = None
    matched_group: Optional[str] = None

    @property
    def is_mapped(self) -> bool:
        return self.source in (MappingSource.LEDGER_OVERRIDE, MappingSource.GROUP_OVERRIDE, MappingSource.DEFAULT)


# Well-known Tally groups: (lowercase name, target kind, account type)
DEFAULT_GROUPS: dict[str, tuple[TargetKind, str]] = {
    "sundry debtors": (TargetKind.CUSTOMER, "asset"),
    "sundry creditors": (TargetKind.VENDOR, "liability"),
    "bank accounts": (TargetKind.BANK_ACCOUNT, "asset"),
    "bank od a/c": (TargetKind.BANK_ACCOUNT, "liability"),
    "bank occ a/c": (TargetKind.BANK_ACCOUNT, "liability"),
    "cash-in-hand": (TargetKind.ACCOUNT, "asset"),
    "fixed assets": (TargetKind.ACCOUNT, "asset"),
    "current assets": (TargetKind.ACCOUNT, "asset"),
    "investments": (TargetKind.ACCOUNT, "asset"),
    "deposits (asset)": (TargetKind.ACCOUNT, "asset"),
    "loans & advances (asset)": (TargetKind.ACCOUNT, "asset"),
    "stock-in-hand": (TargetKind.ACCOUNT, "asset"),
    "misc. expenses (asset)": (TargetKind.ACCOUNT, "asset"),
    "branch / divisions": (TargetKind.ACCOUNT, "asset"),
    "duties & taxes": (TargetKind.ACCOUNT, "liability"),
    "current liabilities": (TargetKind.ACCOUNT, "liability"),
    "provisions": (TargetKind.ACCOUNT, "liability"),
    "loans (liability)": (TargetKind.ACCOUNT, "liability"),
    "secured loans": (TargetKind.ACCOUNT, "liability"),
    "unsecured loans": (TargetKind.ACCOUNT, "liability"),
    "capital account": (TargetKind.ACCOUNT, "equity"),
    "reserves & surplus": (TargetKind.ACCOUNT, "equity"),
    "sales accounts": (TargetKind.ACCOUNT, "income"),
    "direct incomes": (TargetKind.ACCOUNT, "income"),
    "indirect incomes": (TargetKind.ACCOUNT, "income"),
    "purchase accounts": (TargetKind.ACCOUNT, "expense"),
    "direct expenses": (TargetKind.ACCOUNT, "expense"),
    "indirect expenses": (TargetKind.ACCOUNT, "expense"),
}

# Naming heuristics for custom top-level groups, checked in order
DEFAULT_KEYWORDS: list[tuple[tuple[str, ...], TargetKind, str]] = [
    (("consultant", "contractor", "freelancer"), TargetKind.VENDOR, "liability"),
    (("debtor", "receivable"), TargetKind.CUSTOMER, "asset"),
    (("creditor", "payable"), TargetKind.VENDOR, "liability"),
    (("gst", "tax", "cgst", "sgst", "igst", "tds"), TargetKind.ACCOUNT, "liability"),
    (("expense",), TargetKind.ACCOUNT, "expense"),
    (("income", "revenue", "sales"), TargetKind.ACCOUNT, "income"),
    (("purchase",), TargetKind.ACCOUNT, "expense"),
    (("liabilit", "provision", "loan"), TargetKind.ACCOUNT, "liability"),
    (("capital", "equity", "reserve", "surplus"), TargetKind.ACCOUNT, "equity"),
    (("asset", "stock", "inventor", "investment", "advance", "deposit"), TargetKind.ACCOUNT, "asset"),
]

# Never mapped by default; ledgers here are parked in suspense on purpose
SUSPENSE_GROUPS = frozenset({"suspense a/c", "suspense account"})


def default_target(group_name: str) -> Optional[tuple[TargetKind, str]]:
    """Built-in target for a group name, or None when the group is not recognised."""
    name = group_name.strip().lower()
    if name in SUSPENSE_GROUPS:
        return None
    if name in DEFAULT_GROUPS:
        return DEFAULT_GROUPS[name]
    if "bank" in name and "charge" not in name:
        return TargetKind.BANK_ACCOUNT, "asset"
    for keywords, kind, account_type in DEFAULT_KEYWORDS:
        if any(k in name for k in keywords):
            return kind, account_type
    return None


class LedgerMapper:
    """
    Resolves ledgers to target entities for one batch.

    Usage:
        mapper = LedgerMapper(config, masters.group_table())
        decision = mapper.resolve_ledger("Rahul Sharma")
    """

    def __init__(self, config: MappingConfiguration, groups: GroupTable):
        config.validate_or_raise()
        self.config = config
        self.groups = groups
        self._group_overrides = {m.tally_group_name.strip().lower(): m for m in config.group_mappings}
        self._ledger_overrides: dict[str, list[LedgerMapping]] = {}
        for m in config.ledger_mappings:
            self._ledger_overrides.setdefault(m.tally_ledger_name.strip().lower(), []).append(m)
        self._tag_groups = {
            m.tally_cost_category_name.strip().lower(): m.target_tag_group for m in config.cost_category_mappings
        }
        self._cache: dict[tuple[str, str], MappingDecision] = {}

    def resolve_ledger(self, ledger_name: str, parent: Optional[str] = None) -> MappingDecision:
        key = (ledger_name.lower(), (parent or "").lower())
        if key not in self._cache:
            self._cache[key] = self._resolve(ledger_name, parent)
        return self._cache[key]

    def _resolve(self, ledger_name: str, parent: Optional[str]) -> MappingDecision:
        lineage = self.groups.ledger_lineage(ledger_name, parent)
        direct_group = lineage[0] if lineage else None

        for override in self._ledger_overrides.get(ledger_name.strip().lower(), []):
            if override.tally_group_name and (
                not direct_group or override.tally_group_name.strip().lower() != direct_group.lower()
            ):
                continue
            return MappingDecision(
                source=MappingSource.LEDGER_OVERRIDE,
                reason=f"ledger override for '{ledger_name}'",
                kind=override.target_kind,
                account_type=override.target_account_type,
                target_id=override.target_id,
                matched_group=direct_group,
            )

        for group in lineage:
            override = self._group_overrides.get(group.lower())
            if override:
                return MappingDecision(
                    source=MappingSource.GROUP_OVERRIDE,
                    reason=f"group override for '{group}'",
                    kind=override.target_kind,
                    account_type=override.target_account_type,
                    target_id=override.target_id,
                    matched_group=group,
                )

        for group in lineage:
            target = default_target(group)
            if target:
                kind, account_type = target
                return MappingDecision(
                    source=MappingSource.DEFAULT,
                    reason=f"default mapping for group '{group}'",
                    kind=kind,
                    account_type=account_type,
                    matched_group=group,
                )

        described = f"group '{direct_group}'" if direct_group else "unknown group"
        reason = f"no mapping found for ledger '{ledger_name}' ({described})"
        if self.config.skip_unmapped:
            return MappingDecision(source=MappingSource.SKIP, reason=reason, matched_group=direct_group)
        if self.config.create_suspense_accounts:
            logger.debug(f"{reason}; routing to suspense")
            return MappingDecision(
                source=MappingSource.SUSPENSE,
                reason=reason,
                kind=TargetKind.SUSPENSE,
                matched_group=direct_group,
            )
        return MappingDecision(source=MappingSource.UNMAPPED, reason=reason, matched_group=direct_group)

    def tag_group_for(self, cost_category: Optional[str]) -> str:
        if not cost_category:
            return "cost_center"
        return self._tag_groups.get(cost_category.strip().lower(), "cost_center")
