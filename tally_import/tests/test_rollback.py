"""
Tests for batch rollback.
"""
import pytest

from tally_import.errors import RollbackNotAllowedError, TargetSystemError, TargetUnavailableError
from tally_import.lifecycle import BatchManager
from tally_import.models import BatchStatus, ImportType, RollbackRequest, TargetKind
from tally_import.repository import InMemoryTargetRepository
from tally_import.rollback import RollbackManager


class StuckJournalRepository(InMemoryTargetRepository):
    def delete_by_batch_tag(self, batch_id, kind):
        if kind == TargetKind.JOURNAL_ENTRY:
            raise TargetSystemError("journal table locked")
        return super().delete_by_batch_tag(batch_id, kind)


class VanishedVendorRepository(InMemoryTargetRepository):
    """Lists a vendor that was already removed from the target system."""

    def list_by_batch_tag(self, batch_id, kind):
        ids = super().list_by_batch_tag(batch_id, kind)
        if kind == TargetKind.VENDOR:
            ids.append("gone-1")
        return ids


class NoVendorsRepository(InMemoryTargetRepository):
    def create(self, kind, fields, batch_id):
        if kind == TargetKind.VENDOR:
            raise TargetUnavailableError("connection refused")
        return super().create(kind, fields, batch_id)


def imported_batch(manager, data, **kwargs):
    batch = manager.upload("acme", data, **kwargs)
    manager.start_import(batch.id, background=False)
    return manager.get_batch(batch.id)


class TestRollback:
    def test_removes_everything_the_batch_created(self, manager, repository, sample_xml):
        batch = imported_batch(manager, sample_xml)
        created = repository.count()
        assert created > 0

        summary = manager.rollback(batch.id)
        assert summary.success
        assert summary.retained == []
        assert summary.total_deleted == created
        assert repository.count() == 0
        assert summary.deleted["journal_entry"] == 4
        assert summary.deleted["stock_movement"] == 1
        assert summary.deleted["opening_balance"] == 2
        assert summary.deleted["vendor"] == 2

        stored = manager.get_batch(batch.id)
        assert stored.status == BatchStatus.ROLLED_BACK
        assert stored.rolled_back_at is not None
        event = stored.audit_events[-1]
        assert event.action == "rollback"
        assert event.data["deleted"] == summary.deleted

    def test_keeps_batch_history(self, manager, sample_xml):
        batch = imported_batch(manager, sample_xml)
        manager.rollback(batch.id)
        stored = manager.get_batch(batch.id)
        # Outcome figures survive for audit
        assert stored.totals.total == batch.totals.total
        assert len(stored.errors) == 1
        assert len(stored.suspense_items) == 1

    def test_manually_referenced_master_is_kept(self, manager, repository, sample_xml):
        batch = imported_batch(manager, sample_xml)
        customer = repository.of_kind(TargetKind.CUSTOMER)[0]
        # Entered by hand in the target system after the import
        manual = repository.create_journal_entry(
            [{"account_id": customer.id, "amount": "-500"}], {"narration": "manual receipt"}, None
        )

        summary = manager.rollback(batch.id)
        assert summary.success
        assert [(r.kind, r.target_id) for r in summary.retained] == [(TargetKind.CUSTOMER, customer.id)]
        assert any(customer.id in w for w in summary.warnings)
        assert set(repository.records) == {customer.id, manual}
        assert manager.get_batch(batch.id).status == BatchStatus.ROLLED_BACK

    def test_twice_is_refused(self, manager, sample_xml):
        batch = imported_batch(manager, sample_xml)
        manager.rollback(batch.id)
        with pytest.raises(RollbackNotAllowedError):
            manager.rollback(batch.id)

    def test_not_imported_yet(self, manager, sample_xml):
        batch = manager.upload("acme", sample_xml)
        with pytest.raises(RollbackNotAllowedError):
            manager.rollback(batch.id)

    def test_failed_batch(self, store, config, sample_xml):
        repository = NoVendorsRepository()
        manager = BatchManager(store, repository, config=config)
        batch = imported_batch(manager, sample_xml)
        assert batch.status == BatchStatus.FAILED
        assert repository.count() > 0

        manager.rollback(batch.id)
        assert repository.count() == 0
        assert manager.get_batch(batch.id).status == BatchStatus.ROLLED_BACK

    def test_transactions_only(self, manager, repository, sample_xml):
        batch = imported_batch(manager, sample_xml)
        summary = manager.rollback(batch.id, RollbackRequest(delete_masters=False))
        assert repository.count(TargetKind.JOURNAL_ENTRY) == 0
        assert repository.count(TargetKind.OPENING_BALANCE) == 0
        assert repository.count(TargetKind.VENDOR) == 2
        assert "vendor" not in summary.deleted
        assert manager.get_batch(batch.id).audit_events[-1].data["delete_masters"] is False

    def test_leaves_other_batches_alone(self, manager, repository, sample_xml):
        first = imported_batch(manager, sample_xml)
        second = imported_batch(manager, sample_xml)
        manager.rollback(second.id)
        assert repository.count(batch_id=second.id) == 0
        assert repository.count(TargetKind.JOURNAL_ENTRY, batch_id=first.id) == 4


class TestRollbackFailure:
    def test_batch_stays_put(self, store, config, sample_xml):
        repository = StuckJournalRepository()
        manager = BatchManager(store, repository, config=config)
        batch = imported_batch(manager, sample_xml)

        summary = manager.rollback(batch.id)
        assert not summary.success
        assert "journal table locked" in summary.errors[0]
        assert "Masters were kept because deleting transactions failed" in summary.warnings
        assert repository.count(TargetKind.VENDOR) == 2

        stored = manager.get_batch(batch.id)
        assert stored.status == BatchStatus.COMPLETED
        assert stored.audit_events[-1].action == "rollback_failed"

    def test_missing_master_is_recorded(self, store, config, sample_xml):
        repository = VanishedVendorRepository()
        manager = BatchManager(store, repository, config=config)
        batch = imported_batch(manager, sample_xml)

        summary = manager.rollback(batch.id)
        assert not summary.success
        assert summary.errors == ["Deleting vendor gone-1 failed: No vendor with id gone-1"]
        # The real vendors were still deleted
        assert summary.deleted["vendor"] == 2
        assert repository.count(TargetKind.VENDOR) == 0

        stored = manager.get_batch(batch.id)
        assert stored.status == BatchStatus.COMPLETED
        assert stored.audit_events[-1].action == "rollback_failed"

    def test_delete_unknown_record(self):
        repository = InMemoryTargetRepository()
        with pytest.raises(TargetSystemError, match="No vendor with id x"):
            repository.delete(TargetKind.VENDOR, "x")


class TestPreview:
    def test_counts_records(self, manager, sample_xml):
        batch = imported_batch(manager, sample_xml)
        preview = manager.preview_rollback(batch.id)
        assert preview.can_rollback
        assert preview.blocking_reason is None
        assert preview.records["journal_entry"] == 4
        assert preview.records["account"] == 4
        assert preview.records["currency"] == 1

    def test_deletes_nothing(self, manager, repository, sample_xml):
        batch = imported_batch(manager, sample_xml)
        before = repository.count()
        manager.preview_rollback(batch.id)
        assert repository.count() == before

    @pytest.mark.parametrize("rolled_back", [False, True])
    def test_blocked(self, manager, sample_xml, rolled_back):
        if rolled_back:
            batch = imported_batch(manager, sample_xml)
            manager.rollback(batch.id)
        else:
            batch = manager.upload("acme", sample_xml)
        preview = manager.preview_rollback(batch.id)
        assert not preview.can_rollback
        assert preview.blocking_reason
        assert preview.records == {}


def test_round_trip(manager, repository, sample_xml):
    """Import, roll back, import again: the second run matches the first."""
    first = imported_batch(manager, sample_xml)
    manager.rollback(first.id)

    second = imported_batch(manager, sample_xml, import_type=ImportType.INCREMENTAL)
    assert second.status == BatchStatus.COMPLETED
    assert second.counts == first.counts
    assert second.total_debit == first.total_debit
    assert repository.count(TargetKind.JOURNAL_ENTRY) == 4


def test_manager_without_lifecycle(repository, store, config, sample_xml):
    manager = BatchManager(store, repository, config=config)
    batch = imported_batch(manager, sample_xml)
    rollbacks = RollbackManager(repository, store)
    assert rollbacks.blocking_reason(batch) is None
    rollbacks.rollback(batch.id)
    assert store.get(batch.id).status == BatchStatus.ROLLED_BACK
