# database/store.py
from __future__ import annotations

import json
import os
import tempfile
import time
from pathlib import Path
from typing import Optional

from notevault.errors import StorageError
from notevault.logging_config import get_logger

logger = get_logger("database.store")


class LedgerStore:
    """
    One JSON file holding the ledger record.

    Writes go to a temp file in the same directory, are fsynced, then
    os.replace()d over the target, so a crash mid-write leaves the previous
    file intact. Last writer wins; callers serialize writes per path.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> Optional[dict]:
        """
        Returns:
            Parsed record, or None when the file does not exist

        Raises:
            StorageError: unreadable file or invalid JSON
        """
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StorageError(f"Failed to read {self.path}: {e}") from e

    def write(self, record: dict) -> None:
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent))
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Failed to write {self.path}: {e}") from e
        finally:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
        logger.debug(f"Wrote record to {self.path}")

    def quarantine(self) -> Path:
        """
        Move the current file aside as `<name>.corrupt-<unix ts>` so a fresh
        record never overwrites it. Returns the new path.

        Raises:
            StorageError: the file could not be moved
        """
        target = self.path.with_name(f"{self.path.name}.corrupt-{int(time.time())}")
        n = 1
        while target.exists():
            target = self.path.with_name(f"{self.path.name}.corrupt-{int(time.time())}-{n}")
            n += 1
        try:
            os.replace(self.path, target)
        except OSError as e:
            raise StorageError(f"Failed to move corrupt {self.path} aside: {e}") from e
        logger.warning(f"Moved corrupt {self.path} to {target}")
        return target


__all__ = ["LedgerStore"]
