"""
Tests for ledger mapping resolution and mapping configuration validation.
"""
import pytest

from tally_import.errors import MappingConfigurationError
from tally_import.mapper import (
    GroupMapping,
    LedgerMapper,
    LedgerMapping,
    MappingConfiguration,
    MappingSource,
    default_target,
)
from tally_import.models import Group, GroupTable, Ledger, TargetKind


@pytest.fixture
def groups():
    return GroupTable(
        [
            Group(name="Consultants", parent="Sundry Creditors"),
            Group(name="North Region", parent="Sundry Debtors"),
            Group(name="Unclassified Heads", parent="Primary"),
        ],
        [
            Ledger(name="Rahul Sharma", parent="Consultants"),
            Ledger(name="Office Supplies Co", parent="Sundry Creditors"),
            Ledger(name="Delhi Traders", parent="North Region"),
            Ledger(name="HDFC Bank", parent="Bank Accounts"),
            Ledger(name="Mystery Ledger", parent="Unclassified Heads"),
            Ledger(name="Clearing", parent="Suspense A/c"),
        ],
    )


class TestPrecedence:
    """ledger override -> group override -> default -> suspense"""

    def test_default_mapping(self, groups):
        mapper = LedgerMapper(MappingConfiguration(), groups)
        decision = mapper.resolve_ledger("Office Supplies Co")
        assert decision.source == MappingSource.DEFAULT
        assert decision.kind == TargetKind.VENDOR
        assert decision.account_type == "liability"
        assert decision.matched_group == "Sundry Creditors"
        assert decision.is_mapped

    def test_default_walks_up_the_lineage(self, groups):
        mapper = LedgerMapper(MappingConfiguration(), groups)
        decision = mapper.resolve_ledger("Delhi Traders")
        assert decision.kind == TargetKind.CUSTOMER
        assert decision.matched_group == "Sundry Debtors"

    def test_group_override_beats_default(self, groups):
        config = MappingConfiguration(
            group_mappings=[GroupMapping(tally_group_name="sundry creditors", target_kind=TargetKind.ACCOUNT, target_account_type="liability")]
        )
        mapper = LedgerMapper(config, groups)
        decision = mapper.resolve_ledger("Office Supplies Co")
        assert decision.source == MappingSource.GROUP_OVERRIDE
        assert decision.kind == TargetKind.ACCOUNT
        # Descendant groups inherit the override
        assert mapper.resolve_ledger("Rahul Sharma").source == MappingSource.GROUP_OVERRIDE

    def test_nearest_group_override_wins(self, groups):
        config = MappingConfiguration(
            group_mappings=[
                GroupMapping(tally_group_name="Sundry Creditors", target_kind=TargetKind.ACCOUNT),
                GroupMapping(tally_group_name="Consultants", target_kind=TargetKind.VENDOR, target_id="vendor-9"),
            ]
        )
        decision = LedgerMapper(config, groups).resolve_ledger("Rahul Sharma")
        assert decision.matched_group == "Consultants"
        assert decision.target_id == "vendor-9"

    def test_ledger_override_beats_group_override(self, groups):
        config = MappingConfiguration(
            group_mappings=[GroupMapping(tally_group_name="Consultants", target_kind=TargetKind.ACCOUNT)],
            ledger_mappings=[LedgerMapping(tally_ledger_name="Rahul Sharma", target_kind=TargetKind.VENDOR, target_id="vendor-1")],
        )
        decision = LedgerMapper(config, groups).resolve_ledger("rahul sharma")
        assert decision.source == MappingSource.LEDGER_OVERRIDE
        assert decision.kind == TargetKind.VENDOR
        assert decision.target_id == "vendor-1"

    def test_ledger_override_scoped_to_group(self, groups):
        config = MappingConfiguration(
            ledger_mappings=[
                LedgerMapping(tally_ledger_name="Rahul Sharma", tally_group_name="Sundry Debtors", target_kind=TargetKind.CUSTOMER)
            ]
        )
        decision = LedgerMapper(config, groups).resolve_ledger("Rahul Sharma")
        # The override names another group, so the default applies
        assert decision.source == MappingSource.DEFAULT
        assert decision.kind == TargetKind.VENDOR

    def test_unknown_group_goes_to_suspense(self, groups):
        decision = LedgerMapper(MappingConfiguration(), groups).resolve_ledger("Mystery Ledger")
        assert decision.source == MappingSource.SUSPENSE
        assert decision.kind == TargetKind.SUSPENSE
        assert "Unclassified Heads" in decision.reason
        assert not decision.is_mapped

    def test_suspense_group_is_never_mapped_by_default(self, groups):
        decision = LedgerMapper(MappingConfiguration(), groups).resolve_ledger("Clearing")
        assert decision.source == MappingSource.SUSPENSE

    def test_ledger_missing_from_masters(self, groups):
        decision = LedgerMapper(MappingConfiguration(), groups).resolve_ledger("Never Seen")
        assert decision.source == MappingSource.SUSPENSE
        assert "unknown group" in decision.reason

    def test_skip_unmapped(self, groups):
        config = MappingConfiguration(skip_unmapped=True)
        assert LedgerMapper(config, groups).resolve_ledger("Mystery Ledger").source == MappingSource.SKIP

    def test_unmapped_without_suspense(self, groups):
        config = MappingConfiguration(create_suspense_accounts=False)
        assert LedgerMapper(config, groups).resolve_ledger("Mystery Ledger").source == MappingSource.UNMAPPED

    def test_explicit_parent_is_used(self, groups):
        mapper = LedgerMapper(MappingConfiguration(), groups)
        assert mapper.resolve_ledger("Never Seen", "Bank Accounts").kind == TargetKind.BANK_ACCOUNT


class TestDefaults:
    @pytest.mark.parametrize(
        "group, kind",
        [
            ("Sundry Debtors", TargetKind.CUSTOMER),
            ("Bank OD A/c", TargetKind.BANK_ACCOUNT),
            ("Cash-in-Hand", TargetKind.ACCOUNT),
            ("Consultants", TargetKind.VENDOR),
            ("Trade Payables", TargetKind.VENDOR),
            ("Axis Bank Accounts", TargetKind.BANK_ACCOUNT),
            ("GST Liabilities", TargetKind.ACCOUNT),
        ],
    )
    def test_default_target(self, group, kind):
        assert default_target(group)[0] == kind

    def test_unrecognised_group(self):
        assert default_target("Unclassified Heads") is None
        assert default_target("Suspense A/c") is None


class TestConfiguration:
    def test_load_valid(self):
        config = MappingConfiguration.load(
            {
                "group_mappings": [{"tally_group_name": "Consultants", "target_kind": "vendor"}],
                "cost_category_mappings": [{"tally_cost_category_name": "Projects", "target_tag_group": "project"}],
                "skip_unmapped": True,
            }
        )
        assert config.group_mappings[0].target_kind == TargetKind.VENDOR
        assert config.skip_unmapped

    def test_load_rejects_unknown_kind(self):
        with pytest.raises(MappingConfigurationError) as exc:
            MappingConfiguration.load({"group_mappings": [{"tally_group_name": "X", "target_kind": "planet"}]})
        assert exc.value.problems

    @pytest.mark.parametrize(
        "data, fragment",
        [
            ({"group_mappings": [{"tally_group_name": " ", "target_kind": "vendor"}]}, "blank group name"),
            (
                {"group_mappings": [
                    {"tally_group_name": "Consultants", "target_kind": "vendor"},
                    {"tally_group_name": "consultants", "target_kind": "account"},
                ]},
                "mapped more than once",
            ),
            ({"ledger_mappings": [{"tally_ledger_name": "Rent", "target_kind": "stock_item"}]}, "not a ledger target"),
            ({"cost_category_mappings": [{"tally_cost_category_name": "Projects", "target_tag_group": ""}]}, "blank tag group"),
        ],
    )
    def test_problems(self, data, fragment):
        with pytest.raises(MappingConfigurationError) as exc:
            MappingConfiguration.load(data)
        assert any(fragment in p for p in exc.value.problems)

    def test_mapper_refuses_invalid_configuration(self, groups):
        config = MappingConfiguration(
            ledger_mappings=[
                LedgerMapping(tally_ledger_name="Rent", target_kind=TargetKind.ACCOUNT),
                LedgerMapping(tally_ledger_name="rent", target_kind=TargetKind.VENDOR),
            ]
        )
        with pytest.raises(MappingConfigurationError):
            LedgerMapper(config, groups)

    def test_tag_groups(self, groups):
        config = MappingConfiguration.load(
            {"cost_category_mappings": [{"tally_cost_category_name": "Projects", "target_tag_group": "project"}]}
        )
        mapper = LedgerMapper(config, groups)
        assert mapper.tag_group_for("projects") == "project"
        assert mapper.tag_group_for("Primary Cost Category") == "cost_center"
        assert mapper.tag_group_for(None) == "cost_center"
