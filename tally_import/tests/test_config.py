"""
Tests for configuration handling.
"""
from decimal import Decimal

from loguru import logger

from tally_import.config import ImportEngineConfig, configure_logging


class TestImportEngineConfig:
    def test_config_from_env(self, monkeypatch):
        """Settings are read from the environment."""
        monkeypatch.setenv("DB_URL", "postgresql://user@db/ledger")
        monkeypatch.setenv("TALLY_IMPORT_BALANCE_TOLERANCE", "0.5")
        monkeypatch.setenv("TALLY_IMPORT_PARALLELISM", "4")
        monkeypatch.setenv("TALLY_IMPORT_AMBIGUOUS_TYPES", "Payment, Bank Payment,")
        config = ImportEngineConfig.from_env()
        assert config.db_url == "postgresql://user@db/ledger"
        assert config.balance_tolerance == Decimal("0.5")
        assert config.parallelism == 4
        assert config.ambiguous_voucher_types == frozenset({"Payment", "Bank Payment"})

    def test_invalid_tolerance_falls_back(self, monkeypatch):
        monkeypatch.setenv("TALLY_IMPORT_BALANCE_TOLERANCE", "one paisa")
        assert ImportEngineConfig.from_env().balance_tolerance == Decimal("0.01")

    def test_defaults_are_valid(self, config):
        assert config.validate() == []

    def test_config_validation(self):
        config = ImportEngineConfig(
            db_url="",
            balance_tolerance=Decimal("-1"),
            parallelism=0,
            record_timeout=0,
            retry_attempts=0,
        )
        errors = config.validate()
        assert "DB_URL is required" in errors
        assert len(errors) == 5


def test_configure_logging_writes_file(tmp_path):
    log_file = tmp_path / "import.log"
    configure_logging(ImportEngineConfig(log_file=str(log_file)), verbose=True)
    logger.debug("batch TALLY-TEST parsed")
    # Closes the file sink
    configure_logging(ImportEngineConfig(log_file=None))
    assert "batch TALLY-TEST parsed" in log_file.read_text()
