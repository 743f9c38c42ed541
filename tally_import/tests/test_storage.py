"""
Tests for the PostgreSQL batch and mapping stores.

Unit tests run against a mocked connection; the integration test
needs a reachable database (DB_URL).
"""
import uuid
from unittest.mock import MagicMock, patch

import pytest

from tally_import.config import ImportEngineConfig
from tally_import.errors import BatchNotFoundError
from tally_import.mapper import GroupMapping, MappingConfiguration
from tally_import.models import Batch, BatchStatus, Outcome, RecordType, TargetKind, get_schema_sql
from tally_import.storage import InMemoryBatchStore, PostgresBatchStore, PostgresMappingConfigStore


@pytest.fixture
def conn():
    """Mocked psycopg connection whose cursor context yields ``conn.cur``."""
    conn = MagicMock()
    conn.closed = False
    conn.cur = conn.cursor.return_value.__enter__.return_value
    conn.cursor.return_value.__exit__.return_value = False
    return conn


def completed_batch():
    batch = Batch(company_id="acme", status=BatchStatus.IMPORTING)
    batch.record_outcome(RecordType.VOUCHER, Outcome.IMPORTED)
    batch.record_outcome(RecordType.VOUCHER, Outcome.FAILED)
    batch.transition(BatchStatus.COMPLETED)
    return batch


class TestPostgresBatchStore:
    def test_save_upserts_summary_columns_and_payload(self, config, conn):
        store = PostgresBatchStore(config, conn=conn)
        batch = completed_batch()
        store.save(batch)

        sql, params = conn.cur.execute.call_args[0]
        assert f"INSERT INTO {config.db_schema}.import_batch" in sql
        assert "ON CONFLICT (id) DO UPDATE" in sql
        assert params["id"] == batch.id
        assert params["status"] == "completed"
        assert params["total_records"] == 2
        assert params["failed_records"] == 1
        assert params["payload"].obj["batch_number"] == batch.batch_number

    def test_get(self, config, conn):
        batch = completed_batch()
        conn.cur.fetchone.return_value = {"payload": batch.model_dump(mode="json")}
        store = PostgresBatchStore(config, conn=conn)

        loaded = store.get(batch.id)
        assert loaded.id == batch.id
        assert loaded.status == BatchStatus.COMPLETED
        assert loaded.counts[RecordType.VOUCHER].failed == 1
        assert conn.cur.execute.call_args[0][1] == (batch.id,)

    def test_get_unknown(self, config, conn):
        conn.cur.fetchone.return_value = None
        with pytest.raises(BatchNotFoundError):
            PostgresBatchStore(config, conn=conn).get("missing")

    def test_list_filters(self, config, conn):
        conn.cur.fetchall.return_value = [{"payload": completed_batch().model_dump(mode="json")}]
        store = PostgresBatchStore(config, conn=conn)

        batches = store.list(company_id="acme", status=BatchStatus.COMPLETED)
        sql, params = conn.cur.execute.call_args[0]
        assert "WHERE company_id = %s AND status = %s" in sql
        assert params == ["acme", "completed"]
        assert len(batches) == 1

    def test_list_all(self, config, conn):
        conn.cur.fetchall.return_value = []
        PostgresBatchStore(config, conn=conn).list()
        sql, params = conn.cur.execute.call_args[0]
        assert "WHERE" not in sql
        assert params == []

    def test_initialize_schema(self, config, conn):
        PostgresBatchStore(config, conn=conn).initialize_schema()
        conn.cur.execute.assert_called_once_with(get_schema_sql(config.db_schema))

    def test_close(self, config, conn):
        with PostgresBatchStore(config, conn=conn) as store:
            assert store.conn is conn
        conn.close.assert_called_once()

    @patch("tally_import.storage.base.psycopg.connect")
    def test_connects_lazily(self, mock_connect, config):
        store = PostgresBatchStore(config)
        mock_connect.assert_not_called()
        store.conn
        mock_connect.assert_called_once()
        assert mock_connect.call_args[0][0] == config.db_url
        assert mock_connect.call_args[1]["autocommit"] is True


class TestPostgresMappingConfigStore:
    def test_round_trip_through_jsonb(self, config, conn):
        store = PostgresMappingConfigStore(config, conn=conn)
        mapping = MappingConfiguration(
            group_mappings=[GroupMapping(tally_group_name="Consultants", target_kind=TargetKind.VENDOR)]
        )
        store.save("batch-1", mapping)
        sql, params = conn.cur.execute.call_args[0]
        assert "ON CONFLICT (batch_id)" in sql
        assert params[0] == "batch-1"

        conn.cur.fetchone.return_value = {"config": params[1].obj}
        assert store.get("batch-1") == mapping

    def test_missing(self, config, conn):
        conn.cur.fetchone.return_value = None
        assert PostgresMappingConfigStore(config, conn=conn).get("batch-1") is None


class TestInMemoryBatchStore:
    def test_copies_are_detached(self):
        store = InMemoryBatchStore()
        batch = Batch(company_id="acme")
        store.save(batch)
        batch.error_message = "changed after save"
        assert store.get(batch.id).error_message is None

    def test_unknown(self):
        with pytest.raises(BatchNotFoundError):
            InMemoryBatchStore().get("missing")


class TestPostgresIntegration:
    """Integration tests (require a running PostgreSQL)."""

    @pytest.fixture
    def store(self):
        config = ImportEngineConfig.from_env()
        config.db_schema = f"tally_import_test_{uuid.uuid4().hex[:8]}"
        store = PostgresBatchStore(config)
        store.initialize_schema()
        yield store
        with store.conn.cursor() as cur:
            cur.execute(f"DROP SCHEMA {config.db_schema} CASCADE")
        store.close()

    @pytest.mark.integration
    def test_save_and_get(self, store):
        batch = completed_batch()
        store.save(batch)
        store.save(batch)
        assert store.get(batch.id).reconciliation() == batch.reconciliation()
        assert [b.id for b in store.list(company_id="acme")] == [batch.id]
