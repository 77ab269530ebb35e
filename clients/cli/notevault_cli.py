#!/usr/bin/env python3
# clients/cli/notevault_cli.py
# Command line for the note ledger, against the local vault in the data dir.

from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import uvicorn

from notevault.api.app import build_services, create_app
from notevault.config import Settings
from notevault.crypto_core.sealing import is_sealed, seal, unseal
from notevault.errors import BackupImportError, NotevaultError
from notevault.ledger.ledger import Ledger
from notevault.ledger.notes import format_units, parse_units
from notevault.logging_config import setup_logging, short
from notevault.prover.stages import STAGE_LABELS, ProofSession, ProofStage


# ======== Color accents (no deps) ========
class C:
    OK = "\033[92m"
    WARN = "\033[93m"
    ERR = "\033[91m"
    DIM = "\033[2m"
    BOLD = "\033[1m"
    RST = "\033[0m"


def _ok(msg: str) -> None:
    print(f"{C.OK}{msg}{C.RST}")


def _warn(msg: str) -> None:
    print(f"{C.WARN}{msg}{C.RST}")


def _err(msg: str) -> None:
    print(f"{C.ERR}{msg}{C.RST}", file=sys.stderr)


STATUS_COLOR = {"pending": C.WARN, "confirmed": C.OK, "spent": C.DIM}


# ======== Commands ========
def cmd_balance(svc: Dict[str, Any], args) -> int:
    ledger: Ledger = svc["ledger"]
    print(f"{C.BOLD}Balance:{C.RST} {ledger.total_balance_display()} ({ledger.total_balance()} minor units)")
    print(f"Available notes: {len(ledger.available_notes())}")
    print(f"{C.DIM}Last sync block: {ledger.last_sync_block}{C.RST}")
    return 0


def cmd_notes(svc: Dict[str, Any], args) -> int:
    ledger: Ledger = svc["ledger"]
    notes = ledger.notes() if args.all else ledger.available_notes()
    if not notes:
        print("No notes.")
        return 0
    for n in notes:
        color = STATUS_COLOR.get(n.status.value, "")
        leaf = n.leaf_index if n.leaf_index >= 0 else "-"
        print(f"{color}{n.status.value:<9}{C.RST} {n.amount:>14}  leaf {leaf:<6} {n.id}")
    return 0


async def _deposit(svc: Dict[str, Any], amount_minor: int, wait: bool):
    return await svc["coordinator"].deposit(amount_minor, wait=wait)


def cmd_deposit(svc: Dict[str, Any], args) -> int:
    ledger: Ledger = svc["ledger"]
    amount = parse_units(args.amount, ledger.decimals)
    note = asyncio.run(_deposit(svc, amount, not args.no_wait))
    _ok(f"Deposited {note.amount} -> note {note.id} ({note.status.value})")
    print(f"{C.DIM}commitment {short(note.commitment, 18)}{C.RST}")
    return 0


def _print_stage(session: ProofSession, stage: ProofStage) -> None:
    label = STAGE_LABELS.get(stage)
    if label:
        print(f"  {C.DIM}[{stage.value}]{C.RST} {label}...")
    elif stage is ProofStage.ERROR:
        print(f"  {C.ERR}[error]{C.RST} {session.error}")
    elif stage is ProofStage.COMPLETE:
        print(f"  {C.OK}[complete]{C.RST}")


async def _withdraw(svc: Dict[str, Any], amount_minor: int, recipient: str, note_id: Optional[str]):
    coordinator = svc["coordinator"]
    coordinator.session_listeners.append(_print_stage)
    if note_id:
        note = svc["ledger"].get(note_id)
        if note is None:
            raise NotevaultError(f"note {note_id} not found")
        return await coordinator.attempt_withdrawal(note, amount_minor, recipient)
    return await coordinator.withdraw(amount_minor, recipient)


def cmd_withdraw(svc: Dict[str, Any], args) -> int:
    ledger: Ledger = svc["ledger"]
    amount = parse_units(args.amount, ledger.decimals)
    print(f"{C.BOLD}Withdrawing {format_units(amount, ledger.decimals)} to {args.to}{C.RST}")
    result = asyncio.run(_withdraw(svc, amount, args.to, args.note))
    _ok(f"Withdrawal confirmed in block {result.block}: tx {short(result.tx_ref, 18)}")
    print(f"{C.DIM}nullifier {short(result.nullifier, 18)}{C.RST}")
    return 0


def cmd_sync(svc: Dict[str, Any], args) -> int:
    confirmed = svc["watcher"].sync()
    _ok(f"Sync done: {confirmed} note(s) confirmed, last block {svc['ledger'].last_sync_block}")
    return 0


def cmd_history(svc: Dict[str, Any], args) -> int:
    events = svc["eventlog"].history(limit=args.limit)
    if not events:
        print("No history.")
        return 0
    for e in events:
        extra = e.get("amount") or e.get("reason") or ""
        print(f"{C.DIM}{e['ts']}{C.RST} {e['kind']:<17} {e.get('note_id', '')} {extra}")
    return 0


def _passphrase(args, confirm: bool = False) -> Optional[str]:
    if not args.passphrase:
        return None
    if args.passphrase != "-":
        return args.passphrase
    p = getpass.getpass("Passphrase: ")
    if confirm and getpass.getpass("Repeat passphrase: ") != p:
        raise BackupImportError("passphrases do not match")
    return p


def cmd_export(svc: Dict[str, Any], args) -> int:
    ledger: Ledger = svc["ledger"]
    data = ledger.export_backup()
    passphrase = _passphrase(args, confirm=True)
    if passphrase:
        data = json.dumps(seal(data.encode("utf-8"), passphrase), indent=2)
    Path(args.file).write_text(data, encoding="utf-8")
    _ok(f"Exported {len(ledger)} notes to {args.file}{' (sealed)' if passphrase else ''}")
    _warn("The backup holds note secrets; keep it private.")
    return 0


def cmd_import(svc: Dict[str, Any], args) -> int:
    ledger: Ledger = svc["ledger"]
    try:
        raw = json.loads(Path(args.file).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise BackupImportError(f"cannot read {args.file}: {e}") from e
    if is_sealed(raw):
        passphrase = _passphrase(args) or getpass.getpass("Passphrase: ")
        raw = unseal(raw, passphrase)
    counts = ledger.merge(ledger.import_backup(raw))
    _ok(
        f"Imported backup: {counts['added']} new, {counts['updated']} advanced; "
        f"{len(ledger)} notes, balance {ledger.total_balance_display()}"
    )
    return 0


def cmd_secret_export(svc: Dict[str, Any], args) -> int:
    ledger: Ledger = svc["ledger"]
    blob = ledger.export_secret_backup(args.note_id)
    if args.out:
        Path(args.out).write_text(blob, encoding="utf-8")
        _ok(f"Secret backup of {args.note_id} written to {args.out}")
        _warn("Anyone holding this secret can spend the note.")
    else:
        print(blob)
    return 0


def cmd_secret_import(svc: Dict[str, Any], args) -> int:
    ledger: Ledger = svc["ledger"]
    try:
        raw = Path(args.file).read_text(encoding="utf-8")
    except OSError as e:
        raise BackupImportError(f"cannot read {args.file}: {e}") from e
    note = ledger.import_secret_backup(raw)
    _ok(f"Restored note {note.id} ({note.amount}, {note.status.value})")
    return 0


def cmd_backup(svc: Dict[str, Any], args) -> int:
    backups = svc["backups"]
    if args.action == "create":
        info = asyncio.run(backups.create_backup(description=args.description))
        _ok(f"Backup {info['name']} created ({info['size_bytes']} bytes)")
        return 0
    if args.action == "list":
        items: List[Dict[str, Any]] = asyncio.run(backups.list_backups())
        if not items:
            print("No backups.")
        for b in items:
            print(f"{b['name']}  {b['timestamp']}  {b['size_bytes']} bytes  {C.DIM}{b.get('description') or ''}{C.RST}")
        return 0
    if not args.name:
        _err("backup name required")
        return 2
    if args.action == "verify":
        valid = asyncio.run(backups.verify_backup(args.name))
        (_ok if valid else _err)(f"Backup {args.name}: {'valid' if valid else 'INVALID'}")
        return 0 if valid else 1
    restored = asyncio.run(backups.restore_backup(args.name))
    if not restored:
        _err(f"Backup {args.name} failed verification; nothing restored")
        return 1
    _ok(f"Restored {args.name}")
    return 0


def cmd_config(svc: Dict[str, Any], args) -> int:
    settings: Settings = svc["settings"]
    for k, v in vars(settings).items():
        print(f"{k:<18} {v}")
    return 0


def cmd_serve(settings: Settings, args) -> int:
    uvicorn.run(create_app(settings), host=args.host, port=args.port, log_level=settings.log_level.lower())
    return 0


# ======== Parser ========
def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="notevault", description="Private note ledger and withdrawals.")
    p.add_argument("--data-dir", default=None, help="Data directory (default: $NOTEVAULT_DATA_DIR or ~/.notevault)")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("balance", help="Confirmed balance")

    s = sub.add_parser("notes", help="List notes")
    s.add_argument("--all", action="store_true", help="Include pending and spent notes")

    s = sub.add_parser("deposit", help="Deposit AMOUNT (display units)")
    s.add_argument("amount")
    s.add_argument("--no-wait", action="store_true", help="Do not wait for the receipt")

    s = sub.add_parser("withdraw", help="Withdraw AMOUNT to an address")
    s.add_argument("amount")
    s.add_argument("--to", required=True, help="Recipient 0x address")
    s.add_argument("--note", default=None, help="Note id to spend (default: smallest covering note)")

    sub.add_parser("sync", help="Confirm pending notes from deposit events")

    s = sub.add_parser("history", help="Recent ledger events")
    s.add_argument("--limit", type=int, default=20)

    for name, help_ in (("export", "Write a ledger backup"), ("import", "Load a ledger backup")):
        s = sub.add_parser(name, help=help_)
        s.add_argument("file")
        s.add_argument("--passphrase", default=None, help="Seal/unseal with a passphrase ('-' to prompt)")

    s = sub.add_parser("secret-export", help="Print one note's secret backup")
    s.add_argument("note_id")
    s.add_argument("--out", default=None, help="Write to a file instead of stdout")

    s = sub.add_parser("secret-import", help="Restore one note from its secret backup")
    s.add_argument("file")

    s = sub.add_parser("backup", help="Rotating backups of the data dir")
    s.add_argument("action", choices=["create", "list", "verify", "restore"])
    s.add_argument("name", nargs="?", default=None)
    s.add_argument("--description", default=None)

    sub.add_parser("config", help="Show effective settings")

    s = sub.add_parser("serve", help="Run the HTTP API")
    s.add_argument("--host", default="127.0.0.1")
    s.add_argument("--port", type=int, default=8000)
    return p


COMMANDS = {
    "balance": cmd_balance,
    "notes": cmd_notes,
    "deposit": cmd_deposit,
    "withdraw": cmd_withdraw,
    "sync": cmd_sync,
    "history": cmd_history,
    "export": cmd_export,
    "import": cmd_import,
    "secret-export": cmd_secret_export,
    "secret-import": cmd_secret_import,
    "backup": cmd_backup,
    "config": cmd_config,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env(args.data_dir)
    # console stays quiet unless asked; the log file (if any) gets the configured level
    setup_logging("DEBUG" if args.verbose else "WARNING", settings.log_file)

    try:
        if args.command == "serve":
            return cmd_serve(settings, args)
        svc = build_services(settings)
        return COMMANDS[args.command](svc, args)
    except NotevaultError as e:
        _err(f"{type(e).__name__}: {e}")
        return 1
    except FileNotFoundError as e:
        _err(str(e))
        return 1
    except ValueError as e:
        _err(f"Configuration error: {e}")
        return 2
    except KeyboardInterrupt:
        _warn("Interrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
