# notevault/api/app.py
from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from notevault.api.eventlog import EventLog
from notevault.api.health_checks import comprehensive_health_check, readiness_check
from notevault.api.schemas_api import (
    BackupImportReq,
    BackupImportRes,
    BalanceRes,
    CancelRes,
    DepositReq,
    DepositRes,
    HistoryRes,
    MetricRow,
    NoteInfo,
    NotesRes,
    SecretRestoreReq,
    SessionRes,
    WithdrawReq,
    WithdrawRes,
)
from notevault.chain.client import ChainClient, LocalVault
from notevault.chain.watcher import DepositWatcher
from notevault.config import Settings
from notevault.crypto_core.sealing import is_sealed, unseal
from notevault.database.backup import BackupScheduler, LedgerBackup
from notevault.database.store import LedgerStore
from notevault.errors import (
    BackupImportError,
    InvalidTransition,
    NotevaultError,
    ProofError,
    StorageError,
    SubmissionError,
    ValidationError,
)
from notevault.ledger.ledger import Ledger
from notevault.ledger.notes import parse_units
from notevault.logging_config import get_logger
from notevault.prover.backends import HashProver, ProverBackend, make_backend
from notevault.prover.engine import ProofStagingEngine
from notevault.spend.coordinator import SpendCoordinator

logger = get_logger("api")

# =========================
# Error mapping
# =========================

ERROR_STATUS = [
    (ValidationError, 400),
    (BackupImportError, 400),
    (InvalidTransition, 409),
    (ProofError, 422),
    (SubmissionError, 502),
    (StorageError, 500),
]


def status_for(exc: NotevaultError) -> int:
    for cls, code in ERROR_STATUS:
        if isinstance(exc, cls):
            return code
    return 500


# =========================
# Wiring
# =========================


def build_services(
    settings: Settings,
    chain: Optional[ChainClient] = None,
    prover: Optional[ProverBackend] = None,
) -> Dict[str, Any]:
    """Ledger, chain, engine, coordinator, watcher, event log and backups for one data dir."""
    settings.ensure_dirs()
    prover = prover or make_backend(settings.prover, circuits_dir=settings.circuits_dir)
    if chain is None:
        chain = LocalVault(
            depth=settings.tree_depth,
            min_deposit=settings.min_deposit,
            root_history=settings.root_history,
            verifier=prover.verify_public if isinstance(prover, HashProver) else None,
            state_path=str(settings.vault_state),
        )
    ledger = Ledger.load(LedgerStore(settings.ledger_file), decimals=settings.decimals)
    eventlog = EventLog(settings.events_db)
    engine = ProofStagingEngine(prover, chain, progress_interval=settings.progress_interval)
    coordinator = SpendCoordinator(ledger, engine, chain, eventlog=eventlog)

    def _confirmed(note) -> None:
        coordinator.record_event("NoteConfirmed", note_id=note.id, leaf_index=note.leaf_index)

    watcher = DepositWatcher(ledger, chain, on_confirmed=_confirmed)
    watcher.start()
    backups = LedgerBackup(
        str(settings.ledger_file),
        str(settings.backup_dir),
        max_backups=settings.max_backups,
        events_db=str(settings.events_db),
    )
    return {
        "settings": settings,
        "prover": prover,
        "chain": chain,
        "ledger": ledger,
        "eventlog": eventlog,
        "engine": engine,
        "coordinator": coordinator,
        "watcher": watcher,
        "backups": backups,
    }


def _note_info(note) -> NoteInfo:
    return NoteInfo(**note.public_view())


def _amount_minor(req, decimals: int) -> int:
    if req.amount_minor is not None:
        return req.amount_minor
    value = parse_units(req.amount, decimals)
    if value <= 0:
        raise ValidationError("amount must be positive")
    return value


def create_app(
    settings: Optional[Settings] = None,
    chain: Optional[ChainClient] = None,
    prover: Optional[ProverBackend] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    svc = build_services(settings, chain=chain, prover=prover)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler: Optional[BackupScheduler] = None
        if settings.backup_interval > 0:
            scheduler = BackupScheduler(svc["backups"], interval_seconds=settings.backup_interval)
            await scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None:
                await scheduler.stop()
            svc["watcher"].stop()
            await svc["prover"].close()

    app = FastAPI(title="notevault API", version="0.1.0", lifespan=lifespan)
    app.state.services = svc

    ledger: Ledger = svc["ledger"]
    coordinator: SpendCoordinator = svc["coordinator"]
    eventlog: EventLog = svc["eventlog"]

    @app.exception_handler(NotevaultError)
    async def _notevault_error(request: Request, exc: NotevaultError):
        code = status_for(exc)
        if code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}", exc_info=True)
        else:
            logger.warning(f"{request.method} {request.url.path} rejected: {exc}")
        return JSONResponse(
            status_code=code,
            content={"error": type(exc).__name__, "detail": str(exc), "stage": getattr(exc, "stage", None)},
        )

    # ---------- Health ----------
    @app.get("/health")
    async def health():
        return await comprehensive_health_check(settings.data_dir, settings.events_db, settings.rpc_url)

    @app.get("/health/ready")
    async def ready():
        if not await readiness_check(settings.data_dir, settings.rpc_url):
            raise HTTPException(status_code=503, detail="not ready")
        return {"status": "ready"}

    # ---------- Notes ----------
    @app.get("/notes", response_model=NotesRes)
    def notes():
        return NotesRes(
            notes=[_note_info(n) for n in ledger.notes()],
            total_balance=ledger.total_balance_display(),
            total_balance_minor=str(ledger.total_balance()),
        )

    @app.get("/notes/available", response_model=NotesRes)
    def notes_available():
        return NotesRes(
            notes=[_note_info(n) for n in ledger.available_notes()],
            total_balance=ledger.total_balance_display(),
            total_balance_minor=str(ledger.total_balance()),
        )

    @app.get("/balance", response_model=BalanceRes)
    def balance():
        return BalanceRes(
            total_balance=ledger.total_balance_display(),
            total_balance_minor=str(ledger.total_balance()),
            available_notes=len(ledger.available_notes()),
            last_sync_block=ledger.last_sync_block,
        )

    # ---------- Deposit ----------
    @app.post("/deposit", response_model=DepositRes)
    async def deposit(req: DepositReq):
        note = await coordinator.deposit(_amount_minor(req, ledger.decimals), wait=req.wait)
        return DepositRes(note=_note_info(note))

    # ---------- Withdraw ----------
    @app.post("/withdraw", response_model=WithdrawRes)
    async def withdraw(req: WithdrawReq):
        amount = _amount_minor(req, ledger.decimals)
        if req.note_id:
            note = ledger.get(req.note_id)
            if note is None:
                raise HTTPException(status_code=404, detail="Note not found")
            result = await coordinator.attempt_withdrawal(note, amount, req.recipient)
        else:
            result = await coordinator.withdraw(amount, req.recipient)
        return WithdrawRes(**result.to_dict())

    @app.get("/withdraw/session", response_model=SessionRes)
    def withdraw_session():
        return SessionRes(session=coordinator.session_snapshot())

    @app.post("/withdraw/cancel", response_model=CancelRes)
    async def withdraw_cancel():
        return CancelRes(cancelled=await coordinator.cancel())

    # ---------- Backup ----------
    @app.get("/backup/export")
    def backup_export():
        return json.loads(ledger.export_backup())

    @app.post("/backup/import", response_model=BackupImportRes)
    async def backup_import(req: BackupImportReq):
        data: Any = req.backup
        if is_sealed(data):
            if not req.passphrase:
                raise BackupImportError("sealed backup needs a passphrase")
            data = unseal(data, req.passphrase)
        counts = ledger.merge(ledger.import_backup(data))
        return BackupImportRes(
            notes=len(ledger),
            added=counts["added"],
            updated=counts["updated"],
            total_balance_minor=str(ledger.total_balance()),
        )

    @app.get("/notes/{note_id}/secret-backup")
    def note_secret_backup(note_id: str):
        if ledger.get(note_id) is None:
            raise HTTPException(status_code=404, detail="Note not found")
        return json.loads(ledger.export_secret_backup(note_id))

    @app.post("/notes/restore", response_model=DepositRes)
    def note_restore(req: SecretRestoreReq):
        return DepositRes(note=_note_info(ledger.import_secret_backup(req.backup)))

    # ---------- History & metrics ----------
    @app.get("/history", response_model=HistoryRes)
    def history(limit: int = Query(50, ge=1, le=1000), kind: Optional[str] = None):
        return HistoryRes(events=eventlog.history(limit=limit, kind=kind))

    @app.get("/metrics", response_model=List[MetricRow])
    def metrics():
        rows = eventlog.metrics_all()
        return [
            MetricRow(epoch=r[0], deposit_count=r[1], spent_count=r[2], failed_count=r[3], updated_at=r[4])
            for r in rows
        ]

    return app


__all__ = ["create_app", "build_services", "status_for", "ERROR_STATUS"]
