"""
Backup rotation for the note ledger and the event log

Each backup is a set sharing one name:
- <name>.json(.gz)  ledger record snapshot
- <name>.db(.gz)    event log snapshot (SQLite online backup API)

Metadata lives in backups.json next to the files. A snapshot is only
restored after it passes the same validation as a ledger import (and
PRAGMA integrity_check for the database).
"""
import asyncio
import gzip
import json
import os
import shutil
import sqlite3
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite

from notevault.database.store import LedgerStore
from notevault.errors import BackupImportError, StorageError
from notevault.logging_config import get_logger

logger = get_logger("database.backup")

BACKUP_PREFIX = "notevault_backup_"
METADATA_FILE = "backups.json"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LedgerBackup:
    """
    Backup manager for one ledger file and (optionally) its event log
    """

    def __init__(
        self,
        ledger_path: str,
        backup_dir: str,
        max_backups: int = 7,
        compress: bool = True,
        events_db: Optional[str] = None,
    ):
        """
        Args:
            ledger_path: Path to the ledger JSON file
            backup_dir: Directory to store backups
            max_backups: Maximum number of backups to keep (default: 7)
            compress: Whether to gzip snapshots (default: True)
            events_db: Path to the event log database, if any
        """
        self.ledger_path = Path(ledger_path)
        self.backup_dir = Path(backup_dir)
        self.max_backups = max_backups
        self.compress = compress
        self.events_db = Path(events_db) if events_db else None
        self.metadata = LedgerStore(self.backup_dir / METADATA_FILE)

        self.backup_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(
            f"LedgerBackup initialized: ledger={ledger_path}, backup_dir={backup_dir}, "
            f"max_backups={max_backups}, compress={compress}"
        )

    def _suffix(self, ext: str) -> str:
        return f"{ext}.gz" if self.compress else ext

    def _generate_backup_name(self) -> str:
        return BACKUP_PREFIX + _utc_now().strftime("%Y%m%d_%H%M%S_%f")

    # ===== file helpers =====

    @staticmethod
    def _write_snapshot(src: Path, dest: Path, compress: bool) -> None:
        if compress:
            with open(src, "rb") as f_in, gzip.open(dest, "wb") as f_out:
                shutil.copyfileobj(f_in, f_out)
        else:
            shutil.copy2(src, dest)

    @staticmethod
    def _read_snapshot(path: Path) -> bytes:
        if path.suffix == ".gz":
            with gzip.open(path, "rb") as f:
                return f.read()
        return path.read_bytes()

    def _extract(self, path: Path) -> Path:
        """Uncompressed copy of a database snapshot in a temp file."""
        fd, tmp = tempfile.mkstemp(prefix="restore_", suffix=".db", dir=self.backup_dir)
        with os.fdopen(fd, "wb") as f:
            f.write(self._read_snapshot(path))
        return Path(tmp)

    async def _backup_database(self, backup_path: Path) -> None:
        """Online copy of the event log (page by page, no long lock)."""
        try:
            async with aiosqlite.connect(str(self.events_db)) as source_conn:
                async with aiosqlite.connect(str(backup_path)) as backup_conn:
                    await source_conn.backup(backup_conn)
        except sqlite3.Error as e:
            logger.error(f"Database backup failed: {e}")
            logger.warning("Falling back to file copy method")
            shutil.copy2(self.events_db, backup_path)

    # ===== metadata =====

    def _load_metadata(self) -> Dict[str, Any]:
        try:
            data = self.metadata.read()
        except StorageError as e:
            logger.error(f"Backup metadata unreadable, starting over: {e}")
            data = None
        if not isinstance(data, dict) or not isinstance(data.get("backups"), list):
            return {"backups": []}
        return data

    # ===== public =====

    async def create_backup(self, description: Optional[str] = None) -> Dict[str, Any]:
        """
        Snapshot the ledger (and event log) now

        Returns:
            dict with backup info (name, files, size, timestamp)

        Raises:
            StorageError: the ledger file is missing or a write failed
        """
        if not self.ledger_path.exists():
            raise StorageError(f"Ledger not found: {self.ledger_path}")

        name = self._generate_backup_name()
        ledger_file = self.backup_dir / (name + self._suffix(".json"))
        events_file: Optional[Path] = None
        try:
            await asyncio.to_thread(self._write_snapshot, self.ledger_path, ledger_file, self.compress)
            if self.events_db is not None and self.events_db.exists():
                events_file = self.backup_dir / (name + self._suffix(".db"))
                raw_db = self.backup_dir / f"temp_{name}.db"
                await self._backup_database(raw_db)
                if self.compress:
                    await asyncio.to_thread(self._write_snapshot, raw_db, events_file, True)
                    raw_db.unlink()
                else:
                    raw_db.replace(events_file)
        except OSError as e:
            logger.error(f"Backup failed: {e}", exc_info=True)
            raise StorageError(f"backup failed: {e}") from e

        size = ledger_file.stat().st_size + (events_file.stat().st_size if events_file else 0)
        info = {
            "name": name,
            "ledger_file": ledger_file.name,
            "events_file": events_file.name if events_file else None,
            "size_bytes": size,
            "timestamp": _utc_now().isoformat().replace("+00:00", "Z"),
            "compressed": self.compress,
            "description": description,
        }
        metadata = self._load_metadata()
        metadata["backups"].append(info)
        self.metadata.write(metadata)
        self._rotate_backups()

        logger.info(f"Backup created: {name} ({size} bytes)")
        return info

    def _rotate_backups(self) -> None:
        metadata = self._load_metadata()
        backups = metadata["backups"]
        if len(backups) <= self.max_backups:
            return
        backups.sort(key=lambda b: b.get("timestamp", ""))
        drop, keep = backups[: -self.max_backups], backups[-self.max_backups:]
        for b in drop:
            logger.info(f"Rotating old backup: {b['name']}")
            for key in ("ledger_file", "events_file"):
                if b.get(key):
                    try:
                        (self.backup_dir / b[key]).unlink()
                    except FileNotFoundError:
                        pass
        self.metadata.write({"backups": keep})

    async def list_backups(self) -> List[Dict[str, Any]]:
        """Backups whose ledger snapshot still exists, oldest first."""
        return [
            b for b in self._load_metadata()["backups"] if (self.backup_dir / b.get("ledger_file", "")).is_file()
        ]

    def _find(self, name: str) -> Dict[str, Any]:
        for b in self._load_metadata()["backups"]:
            if b.get("name") == name:
                return b
        raise FileNotFoundError(f"Backup not found: {name}")

    def _load_ledger_snapshot(self, info: Dict[str, Any]) -> Dict[str, Any]:
        from notevault.ledger.ledger import Ledger

        try:
            raw = json.loads(self._read_snapshot(self.backup_dir / info["ledger_file"]))
        except (OSError, ValueError) as e:
            raise BackupImportError(f"ledger snapshot unreadable: {e}") from e
        # full import validation; raises BackupImportError
        Ledger.from_record(raw, autosave=False)
        return raw

    async def _verify_database(self, db_path: Path) -> bool:
        try:
            async with aiosqlite.connect(str(db_path)) as conn:
                async with conn.execute("PRAGMA integrity_check") as cursor:
                    result = await cursor.fetchone()
                    return result is not None and result[0] == "ok"
        except sqlite3.Error as e:
            logger.error(f"Database snapshot check failed: {e}")
            return False

    async def verify_backup(self, name: str) -> bool:
        """True when every snapshot in the set passes validation."""
        info = self._find(name)
        try:
            self._load_ledger_snapshot(info)
        except BackupImportError as e:
            logger.error(f"Backup {name} failed verification: {e}")
            return False
        if info.get("events_file"):
            tmp = self._extract(self.backup_dir / info["events_file"])
            try:
                if not await self._verify_database(tmp):
                    logger.error(f"Backup {name}: event log snapshot is corrupt")
                    return False
            finally:
                tmp.unlink()
        logger.info(f"Backup {name} verified")
        return True

    async def verify_latest_backup(self) -> bool:
        backups = await self.list_backups()
        if not backups:
            logger.warning("No backups found to verify")
            return False
        return await self.verify_backup(backups[-1]["name"])

    async def restore_backup(self, name: str) -> bool:
        """
        Swap a verified backup in place of the live files

        Returns:
            True if restored, False when the backup failed verification

        Raises:
            FileNotFoundError: no backup with that name
        """
        info = self._find(name)
        try:
            record = self._load_ledger_snapshot(info)
        except BackupImportError as e:
            logger.error(f"Restore of {name} refused: {e}")
            return False

        db_tmp: Optional[Path] = None
        if info.get("events_file") and self.events_db is not None:
            db_tmp = self._extract(self.backup_dir / info["events_file"])
            if not await self._verify_database(db_tmp):
                db_tmp.unlink()
                logger.error(f"Restore of {name} refused: event log snapshot is corrupt")
                return False

        LedgerStore(self.ledger_path).write(record)
        if db_tmp is not None:
            os.replace(db_tmp, self.events_db)
        logger.info(f"Restored backup {name}")
        return True

    async def get_backup_stats(self) -> Dict[str, Any]:
        backups = await self.list_backups()
        if not backups:
            return {"total_backups": 0, "total_size_bytes": 0, "oldest_backup": None, "newest_backup": None}
        timestamps = [b["timestamp"] for b in backups]
        return {
            "total_backups": len(backups),
            "total_size_bytes": sum(b["size_bytes"] for b in backups),
            "oldest_backup": min(timestamps),
            "newest_backup": max(timestamps),
        }


class BackupScheduler:
    """
    Periodic backups as an asyncio task owned by the caller
    """

    def __init__(self, backup_manager: LedgerBackup, interval_seconds: float = 24 * 3600, retry_seconds: float = 300):
        self.backup_manager = backup_manager
        self.interval_seconds = interval_seconds
        self.retry_seconds = retry_seconds
        self.running = False
        self.task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self.running:
            logger.warning("Backup scheduler already running")
            return
        self.running = True
        self.task = asyncio.create_task(self._backup_loop())
        logger.info(f"Backup scheduler started (every {self.interval_seconds}s)")

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None
        logger.info("Backup scheduler stopped")

    async def _backup_loop(self) -> None:
        while self.running:
            try:
                info = await self.backup_manager.create_backup(description="Scheduled automatic backup")
                await self.backup_manager.verify_backup(info["name"])
                await asyncio.sleep(self.interval_seconds)
            except StorageError as e:
                logger.error(f"Scheduled backup failed: {e}", exc_info=True)
                await asyncio.sleep(self.retry_seconds)


__all__ = ["LedgerBackup", "BackupScheduler"]
