from __future__ import annotations

import json
import sqlite3
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from notevault.errors import StorageError
from notevault.logging_config import get_logger

logger = get_logger("eventlog")

EVENT_KINDS = ("NoteDeposited", "NoteConfirmed", "NoteSpent", "WithdrawalFailed")

DDL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS tx_log(
  id TEXT PRIMARY KEY,
  kind TEXT NOT NULL,
  ts TEXT NOT NULL,
  payload TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS notes(
  note_id TEXT PRIMARY KEY,
  commitment TEXT NOT NULL,
  amount TEXT NOT NULL,
  status TEXT NOT NULL,
  tx_ref TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS nullifiers(
  nullifier TEXT PRIMARY KEY,
  note_id TEXT NOT NULL,
  spent_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS metrics(
  epoch INTEGER PRIMARY KEY,
  deposit_count INTEGER NOT NULL DEFAULT 0,
  spent_count INTEGER NOT NULL DEFAULT 0,
  failed_count INTEGER NOT NULL DEFAULT 0,
  updated_at TEXT NOT NULL
);
"""


def _now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def current_epoch() -> int:
    """Minute-granular epoch used to bucket metrics."""
    return int(time.time() // 60)


class EventLog:
    """
    Append-only audit log of ledger activity in SQLite.

    tx_log is the source of truth; the notes / nullifiers / metrics tables
    are projections rebuilt by replay().
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._ready = False

    # ---------- storage ----------
    def _conn(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        cx = sqlite3.connect(self.db_path)
        cx.execute("PRAGMA foreign_keys=ON;")
        return cx

    def _init(self) -> None:
        if self._ready:
            return
        cx = self._conn()
        try:
            cx.executescript(DDL)
        finally:
            cx.close()
        self._ready = True

    # ---------- projections ----------
    @staticmethod
    def _touch_metrics(cx: sqlite3.Connection, epoch: int) -> None:
        now = _now()
        cx.execute(
            "INSERT OR IGNORE INTO metrics(epoch,deposit_count,spent_count,failed_count,updated_at) "
            "VALUES(?,0,0,0,?)",
            (epoch, now),
        )
        cx.execute("UPDATE metrics SET updated_at=? WHERE epoch=?", (now, epoch))

    def apply_event_row(self, cx: sqlite3.Connection, kind: str, payload: Dict[str, Any]) -> None:
        ts = payload.get("ts") or _now()
        epoch = int(payload.get("epoch") or current_epoch())

        if kind == "NoteDeposited":
            cx.execute(
                "INSERT OR REPLACE INTO notes(note_id,commitment,amount,status,tx_ref,updated_at) VALUES(?,?,?,?,?,?)",
                (payload["note_id"], payload["commitment"], str(payload["amount"]), "pending", payload["tx_ref"], ts),
            )
            self._touch_metrics(cx, epoch)
            cx.execute("UPDATE metrics SET deposit_count = deposit_count + 1 WHERE epoch=?", (epoch,))
            return

        if kind == "NoteConfirmed":
            cx.execute(
                "UPDATE notes SET status='confirmed', updated_at=? WHERE note_id=?",
                (ts, payload["note_id"]),
            )
            return

        if kind == "NoteSpent":
            cx.execute("UPDATE notes SET status='spent', updated_at=? WHERE note_id=?", (ts, payload["note_id"]))
            cx.execute(
                "INSERT OR IGNORE INTO nullifiers(nullifier, note_id, spent_at) VALUES(?,?,?)",
                (payload["nullifier"], payload["note_id"], ts),
            )
            self._touch_metrics(cx, epoch)
            cx.execute("UPDATE metrics SET spent_count = spent_count + 1 WHERE epoch=?", (epoch,))
            return

        if kind == "WithdrawalFailed":
            self._touch_metrics(cx, epoch)
            cx.execute("UPDATE metrics SET failed_count = failed_count + 1 WHERE epoch=?", (epoch,))
            return

        raise ValueError(f"Unknown event kind: {kind}")

    # ---------- public ----------
    def append_event(self, kind: str, **payload: Any) -> str:
        """Record one event; re-appending an existing event_id is a no-op."""
        if kind not in EVENT_KINDS:
            raise ValueError(f"Unknown event kind: {kind}")
        event_id = payload.get("event_id") or str(uuid.uuid4())
        ts = payload.get("ts") or _now()
        row = {"event_id": event_id, "kind": kind, "ts": ts, "epoch": payload.get("epoch") or current_epoch(), **payload}
        blob = json.dumps(row, separators=(",", ":"))
        try:
            self._init()
            cx = self._conn()
            try:
                with cx:
                    if cx.execute("SELECT 1 FROM tx_log WHERE id=?", (event_id,)).fetchone():
                        return event_id
                    cx.execute("INSERT INTO tx_log(id,kind,ts,payload) VALUES(?,?,?,?)", (event_id, kind, ts, blob))
                    self.apply_event_row(cx, kind, row)
            finally:
                cx.close()
        except sqlite3.Error as e:
            raise StorageError(f"event log write failed: {e}") from e
        logger.debug(f"Event {kind} {event_id[:8]}")
        return event_id

    def replay(self) -> int:
        self._init()
        cx = self._conn()
        try:
            with cx:
                cx.execute("DELETE FROM notes")
                cx.execute("DELETE FROM nullifiers")
                cx.execute("DELETE FROM metrics")
                rows: Iterable[Tuple[str, str]] = cx.execute(
                    "SELECT kind, payload FROM tx_log ORDER BY ts ASC, rowid ASC"
                ).fetchall()
                n = 0
                for kind, payload in rows:
                    self.apply_event_row(cx, kind, json.loads(payload))
                    n += 1
            return n
        finally:
            cx.close()

    def history(self, limit: int = 50, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        """Most recent events first."""
        self._init()
        cx = self._conn()
        try:
            if kind:
                rows = cx.execute(
                    "SELECT payload FROM tx_log WHERE kind=? ORDER BY ts DESC, rowid DESC LIMIT ?", (kind, limit)
                ).fetchall()
            else:
                rows = cx.execute("SELECT payload FROM tx_log ORDER BY ts DESC, rowid DESC LIMIT ?", (limit,)).fetchall()
        finally:
            cx.close()
        return [json.loads(r[0]) for r in rows]

    def spent_nullifiers(self) -> List[str]:
        self._init()
        cx = self._conn()
        try:
            return [r[0] for r in cx.execute("SELECT nullifier FROM nullifiers ORDER BY spent_at").fetchall()]
        finally:
            cx.close()

    def metrics_all(self) -> List[Tuple[int, int, int, int, str]]:
        self._init()
        cx = self._conn()
        try:
            return cx.execute(
                "SELECT epoch, deposit_count, spent_count, failed_count, updated_at FROM metrics ORDER BY epoch"
            ).fetchall()
        finally:
            cx.close()


__all__ = ["EventLog", "EVENT_KINDS", "current_epoch"]
