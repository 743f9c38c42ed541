"""
Shared fixtures for the import engine tests.
"""
from decimal import Decimal
from pathlib import Path

import pytest

from tally_import.config import ImportEngineConfig
from tally_import.lifecycle import BatchManager
from tally_import.parsers import parse_export
from tally_import.repository import InMemoryMappingConfigStore, InMemoryTargetRepository
from tally_import.storage import InMemoryBatchStore

FIXTURES = Path(__file__).parent / "fixtures"


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (requires PostgreSQL)"
    )


@pytest.fixture
def config():
    """Fast, deterministic engine settings."""
    return ImportEngineConfig(
        db_url="postgresql://localhost/test",
        balance_tolerance=Decimal("0.01"),
        parallelism=1,
        record_timeout=5,
        retry_attempts=3,
        retry_delay=0,
        progress_every=1,
        suspense_account_id=None,
        log_file=None,
    )


@pytest.fixture
def sample_xml() -> bytes:
    return (FIXTURES / "sample_export.xml").read_bytes()


@pytest.fixture
def sample_json() -> bytes:
    return (FIXTURES / "sample_export.json").read_bytes()


@pytest.fixture
def parsed(sample_xml):
    return parse_export(sample_xml, "xml")


@pytest.fixture
def repository():
    return InMemoryTargetRepository()


@pytest.fixture
def store():
    return InMemoryBatchStore()


@pytest.fixture
def manager(store, repository, config):
    return BatchManager(store, repository, mapping_store=InMemoryMappingConfigStore(), config=config)
