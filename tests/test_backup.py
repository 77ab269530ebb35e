"""
Ledger backup manager tests
"""

import asyncio
import gzip
import json

import pytest

from notevault.database.backup import BackupScheduler, LedgerBackup
from notevault.errors import StorageError
from notevault.ledger.ledger import Ledger
from notevault.ledger.notes import NoteStatus


@pytest.fixture
def manager(tmp_path, store, eventlog):
    return LedgerBackup(str(store.path), str(tmp_path / "backups"), max_backups=3, events_db=str(eventlog.db_path))


@pytest.fixture
def populated(ledger, add_pending, eventlog):
    note = add_pending(1_000, "0xa")
    ledger.mark_confirmed("0xa", 0)
    eventlog.append_event("NoteDeposited", note_id=note.id, commitment=note.commitment, amount="1000", tx_ref="0xa")
    return ledger


class TestLedgerBackup:
    async def test_create_and_verify(self, manager, populated):
        info = await manager.create_backup("before upgrade")
        assert info["ledger_file"].endswith(".json.gz")
        assert info["events_file"].endswith(".db.gz")
        assert info["description"] == "before upgrade"
        assert info["size_bytes"] > 0
        assert (manager.backup_dir / info["ledger_file"]).is_file()
        assert [b["name"] for b in await manager.list_backups()] == [info["name"]]
        assert await manager.verify_backup(info["name"])
        assert await manager.verify_latest_backup()

    async def test_uncompressed(self, tmp_path, store, populated):
        manager = LedgerBackup(str(store.path), str(tmp_path / "plain"), compress=False)
        info = await manager.create_backup()
        assert info["ledger_file"].endswith(".json")
        assert info["events_file"] is None
        raw = json.loads((manager.backup_dir / info["ledger_file"]).read_text())
        assert raw["totalBalance"] == "1000"

    async def test_missing_ledger(self, tmp_path):
        manager = LedgerBackup(str(tmp_path / "none.json"), str(tmp_path / "b"))
        with pytest.raises(StorageError):
            await manager.create_backup()

    async def test_rotation(self, manager, populated):
        names = [(await manager.create_backup())["name"] for _ in range(5)]
        kept = [b["name"] for b in await manager.list_backups()]
        assert kept == names[-3:]
        leftovers = sorted(p.name for p in manager.backup_dir.glob("notevault_backup_*"))
        assert len(leftovers) == 6  # 3 sets of ledger + event log

    async def test_restore(self, manager, populated, store, eventlog, recipient):
        info = await manager.create_backup()
        note = populated.available_notes()[0]
        populated.mark_spent(note.id)
        eventlog.append_event("WithdrawalFailed", note_id=note.id, reason="x")

        assert await manager.restore_backup(info["name"])
        restored = Ledger.load(store)
        assert restored.get(note.id).status is NoteStatus.CONFIRMED
        assert [e["kind"] for e in eventlog.history()] == ["NoteDeposited"]

    async def test_corrupt_snapshot_is_refused(self, manager, populated, store):
        info = await manager.create_backup()
        with gzip.open(manager.backup_dir / info["ledger_file"], "wb") as f:
            f.write(b'{"deposits": "oops"}')
        before = store.path.read_text()

        assert await manager.verify_backup(info["name"]) is False
        assert await manager.restore_backup(info["name"]) is False
        assert store.path.read_text() == before

    async def test_corrupt_event_log_is_refused(self, manager, populated, store):
        info = await manager.create_backup()
        with gzip.open(manager.backup_dir / info["events_file"], "wb") as f:
            f.write(b"this is not sqlite")
        assert await manager.verify_backup(info["name"]) is False
        assert await manager.restore_backup(info["name"]) is False

    async def test_unknown_backup(self, manager):
        with pytest.raises(FileNotFoundError):
            await manager.verify_backup("notevault_backup_nope")
        with pytest.raises(FileNotFoundError):
            await manager.restore_backup("notevault_backup_nope")

    async def test_stats(self, manager, populated):
        assert (await manager.get_backup_stats())["total_backups"] == 0
        assert await manager.verify_latest_backup() is False
        await manager.create_backup()
        await manager.create_backup()
        stats = await manager.get_backup_stats()
        assert stats["total_backups"] == 2
        assert stats["oldest_backup"] <= stats["newest_backup"]

    async def test_garbage_metadata(self, manager, populated):
        manager.metadata.path.write_text("not json")
        assert await manager.list_backups() == []
        await manager.create_backup()
        assert len(await manager.list_backups()) == 1


class TestBackupScheduler:
    async def test_runs_and_stops(self, manager, populated):
        scheduler = BackupScheduler(manager, interval_seconds=3600)
        await scheduler.start()
        for _ in range(200):
            if await manager.list_backups():
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()
        assert not scheduler.running and scheduler.task is None
        backups = await manager.list_backups()
        assert len(backups) == 1
        assert backups[0]["description"] == "Scheduled automatic backup"

    async def test_stop_when_idle(self, manager):
        scheduler = BackupScheduler(manager)
        await scheduler.stop()
        assert scheduler.task is None
