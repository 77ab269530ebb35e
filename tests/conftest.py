"""
notevault test fixtures
"""

import dataclasses

import pytest

from notevault.api.eventlog import EventLog
from notevault.chain.client import LocalVault
from notevault.config import Settings
from notevault.crypto_core.commitments import compute_commitment, generate_secret
from notevault.database.store import LedgerStore
from notevault.ledger.ledger import Ledger
from notevault.prover.backends import HashProver
from notevault.prover.engine import ProofStagingEngine
from notevault.spend.coordinator import SpendCoordinator

TEST_DEPTH = 8


@pytest.fixture
def recipient() -> str:
    """A well-formed EVM address."""
    return "0x" + "ab" * 20


@pytest.fixture
def prover() -> HashProver:
    return HashProver()


@pytest.fixture
def vault(prover) -> LocalVault:
    """In-memory vault that checks proofs with the HashProver binding."""
    return LocalVault(depth=TEST_DEPTH, min_deposit=1, verifier=prover.verify_public)


@pytest.fixture
def store(tmp_path) -> LedgerStore:
    return LedgerStore(tmp_path / "private_state.json")


@pytest.fixture
def ledger(store) -> Ledger:
    return Ledger(store)


@pytest.fixture
def eventlog(tmp_path) -> EventLog:
    return EventLog(tmp_path / "events.db")


@pytest.fixture
def engine(prover, vault) -> ProofStagingEngine:
    return ProofStagingEngine(prover, vault, progress_interval=0.01)


@pytest.fixture
def coordinator(ledger, engine, vault, eventlog) -> SpendCoordinator:
    return SpendCoordinator(ledger, engine, vault, eventlog=eventlog, receipt_timeout=1.0)


@pytest.fixture
def add_pending(ledger):
    """Add a pending note with a fresh secret; returns the Note."""
    counter = {"n": 0}

    def _add(amount: int = 1_000_000, tx_ref: str = None):
        counter["n"] += 1
        secret = generate_secret()
        return ledger.add_note(secret, compute_commitment(secret, amount), amount, tx_ref or f"0xtx{counter['n']}")

    return _add


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings rooted in a temp dir with a small tree."""
    base = Settings.from_env(tmp_path / "data")
    return dataclasses.replace(
        base,
        ledger_file=tmp_path / "data" / "private_state.json",
        events_db=tmp_path / "data" / "events.db",
        vault_state=tmp_path / "data" / "vault_state.json",
        backup_dir=tmp_path / "data" / "backups",
        tree_depth=TEST_DEPTH,
        min_deposit=1,
        progress_interval=0.01,
        prover="hash",
        backup_interval=0.0,
        rpc_url=None,
    )
