"""Tests for the management CLI's export and offline verification."""

import json
import pytest

from ayutrace.core import LedgerService
from ayutrace.db import InMemoryLedgerStore
from ayutrace.manage import (
    EXIT_OK,
    EXIT_TAMPERED,
    EXIT_UNREADABLE,
    export_entries,
    load_export,
    main,
)
from ayutrace.schemas import EventType


@pytest.fixture
def ledger():
    ledger = LedgerService(InMemoryLedgerStore())
    for lot_id in ("lot-a", "lot-b"):
        for i in range(3):
            ledger.append(EventType.PROCESSING, f"{lot_id}-{i}", lot_id, {"step": str(i)})
    return ledger


@pytest.fixture
def export_file(tmp_path, ledger):
    path = tmp_path / "ledger_export.json"
    path.write_text(json.dumps(export_entries(ledger)))
    return path


class TestExport:

    def test_export_all_lots(self, ledger):
        assert len(export_entries(ledger)) == 6

    def test_export_one_lot(self, ledger):
        exported = export_entries(ledger, "lot-b")
        assert {e["lot_id"] for e in exported} == {"lot-b"}

    def test_export_loads_back(self, export_file, ledger):
        loaded = load_export(export_file)
        assert loaded == ledger.chain_for("lot-a") + ledger.chain_for("lot-b")


class TestVerifyExport:

    def test_intact_export(self, export_file, capsys):
        assert main(["verify-export", str(export_file), "-v"]) == EXIT_OK
        assert "2/2 lot chain(s) verified" in capsys.readouterr().out

    def test_tampered_export(self, export_file, capsys):
        data = json.loads(export_file.read_text())
        data[1]["payload"]["step"] = "99"
        export_file.write_text(json.dumps(data))

        assert main(["verify-export", str(export_file)]) == EXIT_TAMPERED
        assert "[FAIL] lot-a: Hash mismatch at entry" in capsys.readouterr().out

    def test_missing_file(self, tmp_path):
        assert main(["verify-export", str(tmp_path / "nope.json")]) == EXIT_UNREADABLE

    def test_malformed_file(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text('[{"transaction_id": 1}]')
        assert main(["verify-export", str(path)]) == EXIT_UNREADABLE


class TestCommands:

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1

    def test_verify_empty_memory_store(self, monkeypatch, capsys):
        monkeypatch.setenv("LEDGERSTORE_DRIVER", "memory")
        assert main(["verify"]) == EXIT_OK
        assert "No ledger entries found" in capsys.readouterr().out
