# notevault/config.py
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

# =========================
# Defaults (overridable via env)
# =========================

DEFAULT_DATA_DIR = os.path.join(os.path.expanduser("~"), ".notevault")

# 18 decimals = wei-style minor units
DEFAULT_DECIMALS = 18
DEFAULT_MIN_DEPOSIT = 1_000_000
DEFAULT_TREE_DEPTH = 20
DEFAULT_ROOT_HISTORY = 30
DEFAULT_PROGRESS_INTERVAL = 0.1
DEFAULT_MAX_BACKUPS = 7
# seconds between scheduled backups of the API service; 0 disables
DEFAULT_BACKUP_INTERVAL = 0.0


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


@dataclass
class Settings:
    data_dir: Path
    ledger_file: Path
    events_db: Path
    vault_state: Path
    backup_dir: Path
    decimals: int = DEFAULT_DECIMALS
    min_deposit: int = DEFAULT_MIN_DEPOSIT
    tree_depth: int = DEFAULT_TREE_DEPTH
    root_history: int = DEFAULT_ROOT_HISTORY
    progress_interval: float = DEFAULT_PROGRESS_INTERVAL
    max_backups: int = DEFAULT_MAX_BACKUPS
    backup_interval: float = DEFAULT_BACKUP_INTERVAL
    prover: str = "hash"
    circuits_dir: Optional[Path] = None
    rpc_url: Optional[str] = None
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls, data_dir: Optional[str | Path] = None) -> "Settings":
        base = Path(data_dir or os.getenv("NOTEVAULT_DATA_DIR", DEFAULT_DATA_DIR))

        def _path(env: str, default_name: str) -> Path:
            raw = os.getenv(env)
            return Path(raw) if raw else base / default_name

        circuits = os.getenv("NOTEVAULT_CIRCUITS_DIR")
        return cls(
            data_dir=base,
            ledger_file=_path("NOTEVAULT_LEDGER_FILE", "private_state.json"),
            events_db=_path("NOTEVAULT_EVENTS_DB", "events.db"),
            vault_state=_path("NOTEVAULT_VAULT_STATE", "vault_state.json"),
            backup_dir=_path("NOTEVAULT_BACKUP_DIR", "backups"),
            decimals=_env_int("NOTEVAULT_DECIMALS", DEFAULT_DECIMALS),
            min_deposit=_env_int("NOTEVAULT_MIN_DEPOSIT", DEFAULT_MIN_DEPOSIT),
            tree_depth=_env_int("NOTEVAULT_TREE_DEPTH", DEFAULT_TREE_DEPTH),
            root_history=_env_int("NOTEVAULT_ROOT_HISTORY", DEFAULT_ROOT_HISTORY),
            progress_interval=_env_float("NOTEVAULT_PROGRESS_INTERVAL", DEFAULT_PROGRESS_INTERVAL),
            max_backups=_env_int("NOTEVAULT_MAX_BACKUPS", DEFAULT_MAX_BACKUPS),
            backup_interval=_env_float("NOTEVAULT_BACKUP_INTERVAL", DEFAULT_BACKUP_INTERVAL),
            prover=os.getenv("NOTEVAULT_PROVER", "hash").strip().lower(),
            circuits_dir=Path(circuits) if circuits else None,
            rpc_url=os.getenv("NOTEVAULT_RPC_URL") or None,
            log_level=os.getenv("NOTEVAULT_LOG_LEVEL", "INFO"),
            log_file=os.getenv("NOTEVAULT_LOG_FILE") or None,
        )

    def ensure_dirs(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.backup_dir.mkdir(parents=True, exist_ok=True)
