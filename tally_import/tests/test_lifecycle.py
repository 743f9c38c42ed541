"""
Tests for the batch lifecycle: upload, mapping, import, cancel and queries.
"""
import threading

import pytest

from tally_import.errors import (
    BatchNotFoundError,
    BatchStateError,
    ConcurrentImportError,
    MappingConfigurationError,
    RollbackNotAllowedError,
    TargetUnavailableError,
)
from tally_import.lifecycle import BatchManager, detect_format
from tally_import.mapper import MappingConfiguration
from tally_import.models import BatchStatus, ImportRequest, RecordType, TargetKind
from tally_import.repository import InMemoryMappingConfigStore, InMemoryTargetRepository
from tally_import.storage import InMemoryBatchStore


class BlockingRepository(InMemoryTargetRepository):
    """Holds the first currency create until released."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def create(self, kind, fields, batch_id):
        if kind == TargetKind.CURRENCY:
            self.entered.set()
            self.release.wait(5)
        return super().create(kind, fields, batch_id)


class OutageRepository(InMemoryTargetRepository):
    """Refuses vendor creates while the target is down."""

    def __init__(self):
        super().__init__()
        self.down = True

    def create(self, kind, fields, batch_id):
        if kind == TargetKind.VENDOR and self.down:
            raise TargetUnavailableError("connection refused")
        return super().create(kind, fields, batch_id)


@pytest.fixture
def blocking():
    repository = BlockingRepository()
    yield repository
    repository.release.set()


@pytest.fixture
def blocking_manager(store, blocking, config):
    return BatchManager(store, blocking, mapping_store=InMemoryMappingConfigStore(), config=config)


class TestDetectFormat:
    @pytest.mark.parametrize(
        "data, file_name, expected",
        [
            (b"<ENVELOPE/>", "daybook.XML", "xml"),
            (b"{}", "export.json", "json"),
            (b"  {\"ENVELOPE\": {}}", None, "json"),
            (b"[]", "export.txt", "json"),
            (b"\xef\xbb\xbf<ENVELOPE/>", None, "xml"),
        ],
    )
    def test_detect(self, data, file_name, expected):
        assert detect_format(data, file_name) == expected


class TestUpload:
    def test_parsed(self, manager, sample_xml):
        batch = manager.upload("acme", sample_xml, file_name="daybook.xml")
        assert batch.status == BatchStatus.PARSED
        assert batch.source.format == "xml"
        assert batch.source.file_size == len(sample_xml)
        assert batch.source.company_name == "Acme Traders"
        assert batch.source.from_date.isoformat() == "2024-04-05"
        assert batch.source.to_date.isoformat() == "2024-05-01"
        assert [i.code for i in batch.validation_issues] == ["UNBALANCED_VOUCHER"]
        assert batch.upload_started_at and batch.parsing_completed_at
        assert batch.audit_events[0].action == "upload"
        assert manager.get_batch(batch.id).status == BatchStatus.PARSED

    def test_json_detected_from_content(self, manager, sample_json):
        batch = manager.upload("acme", sample_json)
        assert batch.status == BatchStatus.PARSED
        assert batch.source.format == "json"
        assert manager.preview(batch.id).summary.voucher_count == 2

    def test_malformed_file_fails(self, manager):
        batch = manager.upload("acme", b"<ENVELOPE><BODY>", file_name="broken.xml")
        assert batch.status == BatchStatus.FAILED
        assert batch.error_message
        assert any(i.is_structural for i in batch.validation_issues)
        with pytest.raises(BatchStateError):
            manager.preview(batch.id)

    def test_preview(self, manager, sample_xml):
        batch = manager.upload("acme", sample_xml)
        result = manager.preview(batch.id)
        assert result.summary.ledger_count == 8
        assert result.summary.voucher_count == 5
        assert result.warning_count == 1
        assert result.error_count == 0

    def test_unknown_batch(self, manager):
        with pytest.raises(BatchNotFoundError):
            manager.get_batch("missing")


class TestConfigureMappings:
    def test_valid_dict(self, manager, sample_xml):
        batch = manager.upload("acme", sample_xml)
        config = manager.configure_mappings(
            batch.id, {"ledger_mappings": [{"tally_ledger_name": "Mystery Ledger", "target_kind": "account"}]}
        )
        assert len(config.ledger_mappings) == 1
        stored = manager.get_batch(batch.id)
        assert stored.status == BatchStatus.MAPPING_CONFIGURED
        assert stored.audit_events[-1].action == "configure_mappings"
        assert manager.mapping_store.get(batch.id) == config

    def test_reconfigure(self, manager, sample_xml):
        batch = manager.upload("acme", sample_xml)
        manager.configure_mappings(batch.id, MappingConfiguration())
        manager.configure_mappings(batch.id, MappingConfiguration(skip_unmapped=True))
        assert manager.mapping_store.get(batch.id).skip_unmapped

    def test_invalid_configuration_fails_batch(self, manager, sample_xml):
        batch = manager.upload("acme", sample_xml)
        with pytest.raises(MappingConfigurationError):
            manager.configure_mappings(
                batch.id, {"group_mappings": [{"tally_group_name": "Godowns", "target_kind": "godown"}]}
            )
        stored = manager.get_batch(batch.id)
        assert stored.status == BatchStatus.FAILED
        assert "not a ledger target" in stored.error_message

    def test_not_allowed_after_failure(self, manager):
        batch = manager.upload("acme", b"garbage", file_name="x.xml")
        with pytest.raises(BatchStateError):
            manager.configure_mappings(batch.id, MappingConfiguration())


class TestImport:
    def test_synchronous_import(self, manager, repository, sample_xml):
        batch = manager.upload("acme", sample_xml)
        summary = manager.start_import(batch.id, background=False)
        assert summary.status == BatchStatus.COMPLETED
        assert summary.suspense_item_count == 1

        stored = manager.get_batch(batch.id)
        assert stored.status == BatchStatus.COMPLETED
        assert [e.action for e in stored.audit_events] == ["upload", "start_import"]
        assert not manager.is_importing(batch.id)
        assert repository.count(batch_id=batch.id) > 0

    def test_background_import(self, manager, sample_xml):
        batch = manager.upload("acme", sample_xml)
        assert manager.start_import(batch.id) is None
        finished = manager.wait(batch.id, timeout=10)
        assert finished.status == BatchStatus.COMPLETED
        assert finished.counts[RecordType.VOUCHER].total == 5

    def test_uses_configured_mapping(self, manager, sample_xml):
        batch = manager.upload("acme", sample_xml)
        manager.configure_mappings(batch.id, {"skip_unmapped": True})
        summary = manager.start_import(batch.id, background=False)
        assert summary.suspense_item_count == 0
        assert summary.counts["ledger"].skipped == 1

    def test_request_is_applied(self, manager, sample_xml):
        batch = manager.upload("acme", sample_xml)
        request = ImportRequest(record_types={RecordType.CURRENCY, RecordType.LEDGER})
        summary = manager.start_import(batch.id, request=request, background=False)
        assert set(summary.counts) == {"currency", "ledger"}
        event = manager.get_batch(batch.id).audit_events[-1]
        assert event.data["record_types"] == ["currency", "ledger"]

    def test_cannot_import_twice(self, manager, sample_xml):
        batch = manager.upload("acme", sample_xml)
        manager.start_import(batch.id, background=False)
        with pytest.raises(BatchStateError):
            manager.start_import(batch.id)

    def test_cannot_import_failed_upload(self, manager):
        batch = manager.upload("acme", b"<ENVELOPE>", file_name="x.xml")
        with pytest.raises(BatchStateError):
            manager.start_import(batch.id)

    def test_parse_result_is_per_process(self, manager, store, repository, config, sample_xml):
        batch = manager.upload("acme", sample_xml)
        other = BatchManager(store, repository, config=config)
        with pytest.raises(BatchStateError):
            other.start_import(batch.id)


class TestConcurrency:
    def test_one_import_per_company(self, blocking_manager, blocking, sample_xml):
        first = blocking_manager.upload("acme", sample_xml)
        second = blocking_manager.upload("acme", sample_xml)
        other_company = blocking_manager.upload("globex", sample_xml)

        blocking_manager.start_import(first.id)
        assert blocking.entered.wait(5)
        assert blocking_manager.is_importing(first.id)

        with pytest.raises(ConcurrentImportError):
            blocking_manager.start_import(second.id)
        # The refused batch is untouched
        assert blocking_manager.get_batch(second.id).status == BatchStatus.PARSED

        with pytest.raises(RollbackNotAllowedError):
            blocking_manager.rollback(first.id)

        blocking.release.set()
        assert blocking_manager.wait(first.id, timeout=10).status == BatchStatus.COMPLETED
        blocking_manager.start_import(other_company.id, background=False)

        # Lock is released once the first import ends
        summary = blocking_manager.start_import(second.id, background=False)
        assert summary.status == BatchStatus.COMPLETED

    def test_cancel_running_import(self, blocking_manager, blocking, sample_xml):
        batch = blocking_manager.upload("acme", sample_xml)
        blocking_manager.start_import(batch.id)
        assert blocking.entered.wait(5)

        progress = blocking_manager.get_progress(batch.id)
        assert progress.status == BatchStatus.IMPORTING
        assert progress.percent_complete < 100.0

        blocking_manager.cancel(batch.id)
        blocking.release.set()
        finished = blocking_manager.wait(batch.id, timeout=10)
        assert finished.status == BatchStatus.FAILED
        assert finished.error_message == "Cancelled by operator"
        assert not blocking_manager.is_importing(batch.id)

    def test_cancel_requires_running_import(self, manager, sample_xml):
        batch = manager.upload("acme", sample_xml)
        with pytest.raises(BatchStateError):
            manager.cancel(batch.id)


class TestQueries:
    def test_progress_after_completion(self, manager, store, repository, config, sample_xml):
        batch = manager.upload("acme", sample_xml)
        manager.start_import(batch.id, background=False)
        progress = manager.get_progress(batch.id)
        assert progress.percent_complete == 100.0
        assert progress.status == BatchStatus.COMPLETED

        # Without a live tracker the stored status decides
        other = BatchManager(store, repository, config=config)
        assert other.get_progress(batch.id).percent_complete == 100.0

    def test_progress_before_import(self, manager, sample_xml):
        batch = manager.upload("acme", sample_xml)
        progress = manager.get_progress(batch.id)
        assert progress.percent_complete == 0.0
        assert progress.status == BatchStatus.PARSED

    def test_result(self, manager, sample_xml):
        batch = manager.upload("acme", sample_xml)
        summary = manager.start_import(batch.id, background=False)
        assert manager.get_result(batch.id) == summary

    def test_list_batches(self, manager, sample_xml):
        first = manager.upload("acme", sample_xml)
        manager.upload("acme", b"<broken", file_name="broken.xml")
        manager.upload("globex", sample_xml)

        assert len(manager.list_batches()) == 3
        assert len(manager.list_batches(company_id="acme")) == 2
        parsed = manager.list_batches(company_id="acme", status=BatchStatus.PARSED)
        assert [b.id for b in parsed] == [first.id]


def clean_import(config, sample_xml):
    """The same export imported in one go into an empty target."""
    repository = InMemoryTargetRepository()
    manager = BatchManager(InMemoryBatchStore(), repository, config=config)
    batch = manager.upload("acme", sample_xml)
    return manager.start_import(batch.id, background=False), repository


def stale_batch(store, manager, sample_xml):
    """A batch left as importing by a process that stopped."""
    batch = manager.upload("acme", sample_xml)
    stored = store.get(batch.id)
    stored.transition(BatchStatus.IMPORTING)
    store.save(stored)
    return stored


class TestResume:
    def test_after_outage(self, store, config, sample_xml):
        repository = OutageRepository()
        manager = BatchManager(store, repository, config=config)
        batch = manager.upload("acme", sample_xml)
        failed = manager.start_import(batch.id, background=False)
        assert failed.status == BatchStatus.FAILED
        assert repository.count() > 0

        repository.down = False
        summary = manager.resume_import(batch.id, background=False)
        expected, clean_repository = clean_import(config, sample_xml)
        assert summary.status == BatchStatus.COMPLETED
        assert summary.counts == expected.counts
        assert summary.total_debit == expected.total_debit
        assert summary.suspense_item_count == expected.suspense_item_count
        # Nothing committed before the outage was created twice
        assert repository.count() == clean_repository.count()
        assert repository.count(TargetKind.JOURNAL_ENTRY) == 4

        stored = manager.get_batch(batch.id)
        assert [e.action for e in stored.audit_events] == ["upload", "start_import", "resume_import"]
        assert stored.error_message is None

    def test_stale_batch_from_another_process(self, store, repository, config, sample_xml, parsed):
        first = BatchManager(store, repository, config=config)
        batch = stale_batch(store, first, sample_xml)
        currency = parsed.masters.currencies[0]
        repository.create(TargetKind.CURRENCY, {"name": currency.name, "external_ref": currency.source_key}, batch.id)

        second = BatchManager(store, repository, config=config)
        with pytest.raises(BatchStateError):
            second.start_import(batch.id)
        with pytest.raises(BatchStateError):
            second.resume_import(batch.id)

        summary = second.resume_import(batch.id, data=sample_xml, background=False)
        assert summary.status == BatchStatus.COMPLETED
        counts = summary.counts["currency"]
        assert (counts.total, counts.imported, counts.skipped) == (1, 1, 0)
        assert repository.count(TargetKind.CURRENCY) == 1

    def test_interrupted_batch_can_be_rolled_back(self, store, repository, config, sample_xml):
        manager = BatchManager(store, repository, config=config)
        batch = stale_batch(store, manager, sample_xml)
        with pytest.raises(RollbackNotAllowedError):
            manager.rollback(batch.id)

        marked = manager.mark_interrupted(batch.id)
        assert marked.status == BatchStatus.FAILED
        assert marked.error_message.startswith("Interrupted")
        assert manager.get_batch(batch.id).audit_events[-1].action == "interrupted"

        manager.rollback(batch.id)
        assert manager.get_batch(batch.id).status == BatchStatus.ROLLED_BACK

    def test_interrupted_batch_can_be_resumed(self, store, repository, config, sample_xml):
        manager = BatchManager(store, repository, config=config)
        batch = stale_batch(store, manager, sample_xml)
        manager.mark_interrupted(batch.id)
        summary = manager.resume_import(batch.id, background=False)
        assert summary.status == BatchStatus.COMPLETED

    def test_running_import_is_refused(self, blocking_manager, blocking, sample_xml):
        batch = blocking_manager.upload("acme", sample_xml)
        blocking_manager.start_import(batch.id)
        assert blocking.entered.wait(5)
        with pytest.raises(BatchStateError):
            blocking_manager.resume_import(batch.id)
        with pytest.raises(BatchStateError):
            blocking_manager.mark_interrupted(batch.id)
        blocking.release.set()
        assert blocking_manager.wait(batch.id, timeout=10).status == BatchStatus.COMPLETED

    def test_only_started_imports(self, manager, sample_xml):
        parsed_only = manager.upload("acme", sample_xml)
        with pytest.raises(BatchStateError):
            manager.resume_import(parsed_only.id)
        with pytest.raises(BatchStateError):
            manager.mark_interrupted(parsed_only.id)

        completed = manager.upload("acme", sample_xml)
        manager.start_import(completed.id, background=False)
        with pytest.raises(BatchStateError):
            manager.resume_import(completed.id, data=sample_xml)

        broken = manager.upload("acme", b"<ENVELOPE>", file_name="x.xml")
        with pytest.raises(BatchStateError):
            manager.resume_import(broken.id, data=sample_xml)


class TestParseResultLifetime:
    def test_released_after_completion(self, manager, sample_xml):
        batch = manager.upload("acme", sample_xml)
        manager.preview(batch.id)
        manager.start_import(batch.id, background=False)
        with pytest.raises(BatchStateError):
            manager.preview(batch.id)

    def test_kept_after_failure(self, store, config, sample_xml):
        manager = BatchManager(store, OutageRepository(), config=config)
        batch = manager.upload("acme", sample_xml)
        manager.start_import(batch.id, background=False)
        assert manager.preview(batch.id).can_proceed

    def test_released_after_rollback(self, store, config, sample_xml):
        manager = BatchManager(store, OutageRepository(), config=config)
        batch = manager.upload("acme", sample_xml)
        manager.start_import(batch.id, background=False)
        manager.rollback(batch.id)
        with pytest.raises(BatchStateError):
            manager.preview(batch.id)

    def test_released_when_mapping_is_rejected(self, manager, sample_xml):
        batch = manager.upload("acme", sample_xml)
        with pytest.raises(MappingConfigurationError):
            manager.configure_mappings(
                batch.id, {"group_mappings": [{"tally_group_name": "Godowns", "target_kind": "godown"}]}
            )
        with pytest.raises(BatchStateError):
            manager.preview(batch.id)

    def test_stored_progress_outlives_the_run(self, manager, store, repository, config, sample_xml):
        batch = manager.upload("acme", sample_xml)
        manager.start_import(batch.id, background=False)
        other = BatchManager(store, repository, config=config)
        progress = other.get_progress(batch.id)
        assert progress.status == BatchStatus.COMPLETED
        assert progress.percent_complete == 100.0
        assert progress.phases["vouchers"].processed == progress.phases["vouchers"].total > 0
