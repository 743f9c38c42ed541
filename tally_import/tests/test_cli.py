"""
Tests for the command line entry point.
"""
import json
from pathlib import Path

import pytest

from tally_import.__main__ import build_parser, main
from tally_import.models import RecordType

SAMPLE = str(Path(__file__).parent / "fixtures" / "sample_export.xml")


def test_preview(capsys):
    assert main(["preview", SAMPLE]) == 0
    out = capsys.readouterr().out
    assert "Company: Acme Traders" in out
    assert "Vouchers: 5" in out
    assert "UNBALANCED_VOUCHER" in out
    assert "Can proceed: yes" in out


def test_preview_broken_file(tmp_path, capsys):
    broken = tmp_path / "broken.xml"
    broken.write_bytes(b"<ENVELOPE>")
    assert main(["preview", str(broken)]) == 1
    assert "Can proceed: no" in capsys.readouterr().out


def test_dry_run(capsys):
    assert main(["dry-run", SAMPLE, "--company", "acme"]) == 0
    out = capsys.readouterr().out
    assert "=== Import Results ===" in out
    assert "Suspense items: 1" in out
    assert "UNBALANCED_VOUCHER" in out


def test_dry_run_with_mapping(tmp_path, capsys):
    mapping = tmp_path / "mapping.json"
    mapping.write_text(json.dumps({
        "ledger_mappings": [{"tally_ledger_name": "Mystery Ledger", "target_kind": "account"}]
    }))
    assert main(["dry-run", SAMPLE, "--mapping", str(mapping)]) == 0
    assert "Suspense items: 0" in capsys.readouterr().out


def test_dry_run_rejects_bad_mapping(tmp_path):
    mapping = tmp_path / "mapping.json"
    mapping.write_text(json.dumps({"group_mappings": [{"tally_group_name": "", "target_kind": "vendor"}]}))
    assert main(["dry-run", SAMPLE, "--mapping", str(mapping)]) == 1


def test_dry_run_malformed_mapping_file(tmp_path):
    mapping = tmp_path / "mapping.json"
    mapping.write_text('{"ledger_mappings": [')
    assert main(["dry-run", SAMPLE, "--mapping", str(mapping)]) == 1


def test_missing_file():
    assert main(["preview", "/nonexistent/export.xml"]) == 1


def test_record_types_argument():
    args = build_parser().parse_args(["dry-run", SAMPLE, "--record-types", "ledger, voucher"])
    assert args.record_types == {RecordType.LEDGER, RecordType.VOUCHER}
    with pytest.raises(SystemExit):
        build_parser().parse_args(["dry-run", SAMPLE, "--record-types", "planets"])
