"""
AyuTrace Management CLI

Commands for operating the ledger:
- verify: Verify one lot's chain, or every lot's
- export: Export ledger entries to JSON
- verify-export: Verify an exported JSON file offline (no database needed)
- health-check: Check store connectivity and chain integrity

The store is chosen from the environment exactly as the API does
(LEDGERSTORE_DRIVER, DATABASE_URL, ...).

Usage:
    ayutrace-manage <command> [options]

Examples:
    ayutrace-manage verify --lot-id 3f6e...
    ayutrace-manage export -o ledger_export.json
    ayutrace-manage verify-export ledger_export.json

Exit codes:
    0 - all chains verified
    1 - at least one chain failed verification
    2 - the store or the input file could not be read
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Optional

from pydantic import TypeAdapter
from pydantic import ValidationError as SchemaError

from .core import LedgerService
from .db.config import LedgerSettings
from .db.store import InMemoryLedgerStore, StorageError
from .runtime import create_ledger_store
from .schemas import LedgerEntry

EXIT_OK = 0
EXIT_TAMPERED = 1
EXIT_UNREADABLE = 2

_entries_adapter = TypeAdapter(list[LedgerEntry])


def _ledger_from_env() -> LedgerService:
    return LedgerService(create_ledger_store(LedgerSettings.from_env()))


def _verify_lots(ledger: LedgerService, lot_ids: list[str], verbose: bool = False) -> int:
    failed = 0
    for lot_id in lot_ids:
        result = ledger.verify(lot_id)
        if not result.valid:
            failed += 1
            print(f"[FAIL] {lot_id}: {result.message}")
        elif verbose:
            print(f"[OK]   {lot_id}: {result.entry_count} entries")

    print(f"\n{len(lot_ids) - failed}/{len(lot_ids)} lot chain(s) verified")
    return EXIT_TAMPERED if failed else EXIT_OK


def cmd_verify(args) -> int:
    """Verify lot chains in the configured store."""
    try:
        ledger = _ledger_from_env()
        lot_ids = [args.lot_id] if args.lot_id else ledger.store.list_lot_ids()
    except StorageError as e:
        print(f"[FAIL] Could not read ledger store: {e}")
        return EXIT_UNREADABLE

    if not lot_ids:
        print("No ledger entries found")
        return EXIT_OK
    return _verify_lots(ledger, lot_ids, verbose=args.verbose)


def export_entries(ledger: LedgerService, lot_id: Optional[str] = None) -> list[dict]:
    lot_ids = [lot_id] if lot_id else ledger.store.list_lot_ids()
    return [
        entry.model_dump(mode="json")
        for lid in lot_ids
        for entry in ledger.chain_for(lid)
    ]


def cmd_export(args) -> int:
    """Export ledger entries to a JSON file."""
    try:
        data = export_entries(_ledger_from_env(), args.lot_id)
    except StorageError as e:
        print(f"[FAIL] Could not read ledger store: {e}")
        return EXIT_UNREADABLE

    output_file = Path(args.output or "ledger_export.json")
    output_file.write_text(json.dumps(data, indent=2))
    print(f"[OK] Exported {len(data)} entries to {output_file}")
    return EXIT_OK


def load_export(path: Path) -> list[LedgerEntry]:
    """Parse an exported JSON file into entries."""
    return _entries_adapter.validate_json(path.read_bytes())


def cmd_verify_export(args) -> int:
    """Verify an exported JSON file without touching any database."""
    try:
        entries = load_export(Path(args.file))
    except (OSError, SchemaError) as e:
        print(f"[FAIL] Could not read {args.file}: {e}")
        return EXIT_UNREADABLE

    store = InMemoryLedgerStore.from_entries(entries)
    print(f"Loaded {len(entries)} entries")
    return _verify_lots(LedgerService(store), store.list_lot_ids(), verbose=args.verbose)


def cmd_health_check(args) -> int:
    """Run store and chain health checks."""
    from .observability import check_health

    settings = LedgerSettings.from_env()
    print("=== AyuTrace Health Check ===\n")
    print(f"Ledger store: {settings.driver.value}")

    try:
        ledger = LedgerService(create_ledger_store(settings))
    except StorageError as e:
        print(f"  Status: [FAIL] {e}")
        return EXIT_UNREADABLE

    status = check_health(ledger=ledger, sample_lots=args.sample)
    for name, check in status.checks.items():
        marker = "[OK]" if check.get("status") == "healthy" else "[FAIL]"
        details = ", ".join(f"{k}={v}" for k, v in check.items() if k != "status")
        print(f"  {name}: {marker} {details}")

    print("\n=== Health Check Complete ===")
    return EXIT_OK if status.healthy else EXIT_TAMPERED


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="AyuTrace Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    p_verify = subparsers.add_parser("verify", help="Verify lot chain integrity")
    p_verify.add_argument("--lot-id", help="Only verify this lot")
    p_verify.add_argument("--verbose", "-v", action="store_true")

    p_export = subparsers.add_parser("export", help="Export ledger entries to JSON")
    p_export.add_argument("--lot-id", help="Only export this lot")
    p_export.add_argument("--output", "-o", help="Output file (default: ledger_export.json)")

    p_offline = subparsers.add_parser("verify-export", help="Verify an exported JSON file")
    p_offline.add_argument("file", help="File written by the export command")
    p_offline.add_argument("--verbose", "-v", action="store_true")

    p_health = subparsers.add_parser("health-check", help="Run health checks")
    p_health.add_argument("--sample", type=int, default=5, help="Lots to verify (default 5)")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "verify": cmd_verify,
        "export": cmd_export,
        "verify-export": cmd_verify_export,
        "health-check": cmd_health_check,
    }
    return commands[args.command](args) or EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
