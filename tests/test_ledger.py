"""
Note ledger tests: lifecycle, balance invariant, persistence, backups
"""

import json
import random

import pytest

from notevault.crypto_core.commitments import compute_commitment, generate_secret
from notevault.crypto_core.splits import select_note
from notevault.database.store import LedgerStore
from notevault.errors import BackupImportError, InvalidTransition, StorageError, ValidationError
from notevault.ledger.ledger import Ledger
from notevault.ledger.notes import NoteStatus, format_units, parse_units


def _confirmed_sum(ledger):
    return sum(n.amount_minor for n in ledger.notes() if n.status is NoteStatus.CONFIRMED)


class TestAddNote:
    def test_new_note_is_pending(self, ledger, add_pending):
        note = add_pending(1_000_000, "0xabc")
        assert note.status is NoteStatus.PENDING
        assert note.leaf_index == -1
        assert note.transaction_ref == "0xabc"
        assert ledger.total_balance() == 0
        assert ledger.available_notes() == []

    def test_ids_unique_under_duplicate_tx_ref(self, ledger, add_pending):
        """Two notes from one tx ref still get distinct ids."""
        a = add_pending(5, "0xsame")
        b = add_pending(5, "0xsame")
        assert a.id != b.id

    def test_rejects_bad_input(self, ledger):
        s = generate_secret()
        c = compute_commitment(s, 5)
        for amount in (0, -1, 1.5, True):
            with pytest.raises(ValidationError):
                ledger.add_note(s, c, amount, "0xtx")
        with pytest.raises(ValidationError):
            ledger.add_note("0x12", c, 5, "0xtx")
        with pytest.raises(ValidationError):
            ledger.add_note(s, c, 5, "")
        assert len(ledger) == 0

    def test_rejects_duplicate_secret(self, ledger):
        s = generate_secret()
        ledger.add_note(s, compute_commitment(s, 5), 5, "0xtx1")
        with pytest.raises(ValidationError):
            ledger.add_note(s, compute_commitment(s, 5), 5, "0xtx2")

    def test_display_amount(self, ledger, add_pending):
        note = add_pending(1_500_000_000_000_000_000)
        assert note.amount == "1.5"


class TestTransitions:
    def test_confirm(self, ledger, add_pending):
        note = add_pending(1_000, "0xtx")
        confirmed = ledger.mark_confirmed("0xtx", 3)
        assert confirmed.status is NoteStatus.CONFIRMED
        assert confirmed.leaf_index == 3
        assert ledger.total_balance() == 1_000
        assert [n.id for n in ledger.available_notes()] == [note.id]

    def test_confirm_unknown_is_noop(self, ledger, add_pending):
        """A deposit event for an unknown tx ref changes nothing."""
        add_pending(1_000, "0xtx")
        before = ledger.to_record()
        assert ledger.mark_confirmed("0xother", 0) is None
        assert ledger.to_record() == before

    def test_confirm_twice_is_noop(self, ledger, add_pending):
        add_pending(1_000, "0xtx")
        ledger.mark_confirmed("0xtx", 0)
        assert ledger.mark_confirmed("0xtx", 0) is None
        assert ledger.total_balance() == 1_000

    def test_spend(self, ledger, add_pending):
        note = add_pending(1_000, "0xtx")
        ledger.mark_confirmed("0xtx", 0)
        spent = ledger.mark_spent(note.id)
        assert spent.status is NoteStatus.SPENT
        assert ledger.total_balance() == 0

    def test_spend_pending_fails(self, ledger, add_pending):
        """Spending a note that was never confirmed is an InvalidTransition."""
        note = add_pending(1_000, "0xtx")
        before = ledger.to_record()
        with pytest.raises(InvalidTransition) as ei:
            ledger.mark_spent(note.id)
        assert ei.value.current == "pending"
        assert ledger.to_record() == before

    def test_spend_twice_fails(self, ledger, add_pending):
        note = add_pending(1_000, "0xtx")
        ledger.mark_confirmed("0xtx", 0)
        ledger.mark_spent(note.id)
        before = ledger.to_record()
        with pytest.raises(InvalidTransition):
            ledger.mark_spent(note.id)
        assert ledger.to_record() == before

    def test_spend_unknown_fails(self, ledger):
        with pytest.raises(InvalidTransition):
            ledger.mark_spent("nope")

    def test_balance_invariant_random_sequence(self, ledger, add_pending):
        """After any mix of operations the balance is the confirmed sum."""
        rng = random.Random(1234)
        for step in range(120):
            op = rng.choice(["add", "confirm", "spend", "spend_bad"])
            notes = ledger.notes()
            if op == "add" or not notes:
                add_pending(rng.randint(1, 10 ** 20), f"0xtx{step}")
            elif op == "confirm":
                ledger.mark_confirmed(rng.choice(notes).transaction_ref, rng.randint(0, 100))
            else:
                target = rng.choice(notes)
                try:
                    ledger.mark_spent(target.id)
                except InvalidTransition:
                    assert target.status is not NoteStatus.CONFIRMED
            assert ledger.total_balance() == _confirmed_sum(ledger)

    def test_sync_block_only_moves_forward(self, ledger):
        ledger.set_last_sync_block(10)
        ledger.set_last_sync_block(4)
        assert ledger.last_sync_block == 10


class TestPersistence:
    def test_mutations_are_persisted(self, store, add_pending, ledger):
        note = add_pending(42, "0xtx")
        ledger.mark_confirmed("0xtx", 1)
        reloaded = Ledger.load(store)
        assert reloaded.get(note.id).status is NoteStatus.CONFIRMED
        assert reloaded.total_balance() == 42

    def test_record_shape(self, store, add_pending, ledger):
        add_pending(42, "0xtx")
        ledger.mark_confirmed("0xtx", 1)
        raw = json.loads(store.path.read_text())
        assert set(raw) == {"deposits", "totalBalance", "lastSyncBlock"}
        assert raw["totalBalance"] == "42"
        assert raw["deposits"][0]["amountMinorUnits"] == "42"
        assert raw["deposits"][0]["status"] == "confirmed"

    def test_load_missing_file(self, tmp_path):
        ledger = Ledger.load(LedgerStore(tmp_path / "none.json"))
        assert len(ledger) == 0 and ledger.total_balance() == 0

    @pytest.mark.parametrize("content", ["{garbage", "[]", '{"deposits": 3}', '{"deposits": [{"id": "x"}]}'])
    def test_load_corrupt_file_is_moved_aside(self, tmp_path, content):
        """A corrupt ledger loads empty and its file survives the next write."""
        path = tmp_path / "state.json"
        path.write_text(content)
        ledger = Ledger.load(LedgerStore(path))
        assert len(ledger) == 0

        kept = list(tmp_path.glob("state.json.corrupt-*"))
        assert len(kept) == 1 and kept[0].read_text() == content
        ledger.add_note(generate_secret(), "0x" + "11" * 32, 5, "0xtx")
        assert kept[0].read_text() == content
        assert json.loads(path.read_text())["deposits"][0]["amountMinorUnits"] == "5"

    def test_load_corrupt_file_that_cannot_be_moved(self, tmp_path, monkeypatch):
        path = tmp_path / "state.json"
        path.write_text("{garbage")

        def boom(src, dst):
            raise OSError("read-only filesystem")

        monkeypatch.setattr("notevault.database.store.os.replace", boom)
        with pytest.raises(StorageError):
            Ledger.load(LedgerStore(path))
        assert path.read_text() == "{garbage"

    def test_load_recomputes_total(self, store, add_pending, ledger):
        """A stale totalBalance on disk is ignored."""
        add_pending(42, "0xtx")
        ledger.mark_confirmed("0xtx", 1)
        raw = json.loads(store.path.read_text())
        raw["totalBalance"] = "999"
        store.path.write_text(json.dumps(raw))
        assert Ledger.load(store).total_balance() == 42

    def test_failed_write_leaves_previous_file(self, store, add_pending, ledger, monkeypatch):
        """os.replace failing mid-save keeps the old file and no temp files."""
        add_pending(42, "0xtx")
        before = store.path.read_text()

        def boom(*a, **k):
            raise OSError("disk full")

        monkeypatch.setattr("notevault.database.store.os.replace", boom)
        with pytest.raises(StorageError):
            ledger.mark_confirmed("0xtx", 1)
        monkeypatch.undo()

        assert store.path.read_text() == before
        assert [p.name for p in store.path.parent.iterdir() if p.name.endswith(".tmp")] == []

    def test_failed_write_leaves_memory_unchanged(self, store, add_pending, ledger, monkeypatch):
        note = add_pending(42, "0xtx")

        def boom(record):
            raise StorageError("read-only")

        monkeypatch.setattr(store, "write", boom)
        with pytest.raises(StorageError):
            ledger.mark_confirmed("0xtx", 1)
        assert ledger.get(note.id).status is NoteStatus.PENDING
        assert ledger.total_balance() == 0

    def test_save_without_store(self):
        with pytest.raises(StorageError):
            Ledger().save()


class TestBackup:
    def test_round_trip(self, ledger, add_pending):
        """import(export(ledger)) has the same notes, statuses and balance."""
        a = add_pending(10, "0xa")
        add_pending(20, "0xb")
        ledger.mark_confirmed("0xa", 0)
        ledger.mark_confirmed("0xb", 1)
        ledger.mark_spent(a.id)
        add_pending(30, "0xc")

        imported = ledger.import_backup(ledger.export_backup())
        assert imported.notes() == ledger.notes()
        assert imported.total_balance() == ledger.total_balance() == 20
        assert imported.last_sync_block == ledger.last_sync_block

    @pytest.mark.parametrize(
        "data",
        [
            "not json",
            "[]",
            "{}",
            '{"deposits": {}}',
            '{"deposits": [{"id": "x"}]}',
            {"deposits": "nope"},
        ],
    )
    def test_malformed_import_rejected(self, ledger, add_pending, data):
        """Bad input raises and leaves the live ledger alone."""
        add_pending(10, "0xa")
        before = ledger.to_record()
        with pytest.raises(BackupImportError):
            ledger.import_backup(data)
        assert ledger.to_record() == before

    def test_duplicate_ids_rejected(self, ledger, add_pending):
        add_pending(10, "0xa")
        rec = ledger.to_record()
        rec["deposits"].append(dict(rec["deposits"][0]))
        with pytest.raises(BackupImportError):
            ledger.import_backup(rec)

    def test_chain_leaf_index_key(self, ledger, add_pending):
        add_pending(10, "0xa")
        ledger.mark_confirmed("0xa", 4)
        rec = ledger.to_record()
        rec["deposits"][0]["chainLeafIndex"] = rec["deposits"][0].pop("leafIndex")
        imported = ledger.import_backup(rec)
        assert imported.notes()[0].leaf_index == 4

    def test_merge_never_moves_a_note_backward(self, ledger, add_pending, store):
        """An older backup cannot resurrect a spent note or drop a newer one."""
        a = add_pending(10, "0xa")
        ledger.mark_confirmed("0xa", 0)
        old = ledger.export_backup()
        ledger.mark_spent(a.id)
        b = add_pending(20, "0xb")

        counts = ledger.merge(ledger.import_backup(old))
        assert counts == {"added": 0, "updated": 0, "unchanged": 1}
        assert ledger.get(a.id).status is NoteStatus.SPENT
        assert ledger.get(b.id).status is NoteStatus.PENDING
        assert ledger.total_balance() == 0
        assert len(json.loads(store.path.read_text())["deposits"]) == 2

    def test_merge_adds_and_advances(self, ledger, add_pending, tmp_path):
        a = add_pending(10, "0xa")
        other = Ledger(LedgerStore(tmp_path / "other.json"))
        other.merge(ledger.import_backup(ledger.export_backup()))
        other.mark_confirmed("0xa", 2)
        c = other.add_note(generate_secret(), "0x" + "33" * 32, 30, "0xc")

        counts = ledger.merge(other)
        assert counts == {"added": 1, "updated": 1, "unchanged": 0}
        assert ledger.get(a.id).status is NoteStatus.CONFIRMED
        assert ledger.get(a.id).leaf_index == 2
        assert ledger.get(c.id).status is NoteStatus.PENDING
        assert ledger.total_balance() == 10

    def test_merge_conflicts_leave_ledger_alone(self, ledger, add_pending):
        add_pending(10, "0xa")
        before = ledger.to_record()

        rec = ledger.to_record()
        rec["deposits"][0]["commitment"] = "0x" + "44" * 32
        with pytest.raises(BackupImportError):
            ledger.merge(ledger.import_backup(rec))

        rec = ledger.to_record()
        rec["deposits"][0]["secret"] = generate_secret()
        with pytest.raises(BackupImportError):
            ledger.merge(ledger.import_backup(rec))
        assert ledger.to_record() == before


class TestSecretBackup:
    def test_restore_single_note(self, ledger, add_pending, tmp_path):
        note = add_pending(10, "0xa")
        ledger.mark_confirmed("0xa", 7)
        blob = ledger.export_secret_backup(note.id)
        assert set(json.loads(blob)) == {"secret", "amountMinorUnits", "leafIndex", "commitment", "transactionRef"}

        fresh = Ledger(LedgerStore(tmp_path / "fresh.json"))
        restored = fresh.import_secret_backup(blob)
        assert restored.status is NoteStatus.CONFIRMED
        assert (restored.secret, restored.commitment, restored.leaf_index) == (note.secret, note.commitment, 7)
        assert fresh.total_balance() == 10

    def test_restore_without_leaf_is_pending(self, ledger):
        secret = generate_secret()
        note = ledger.import_secret_backup({"secret": secret, "amount": "25"})
        assert note.status is NoteStatus.PENDING
        assert note.commitment == compute_commitment(secret, 25)
        assert note.transaction_ref == f"restored:{note.commitment}"
        assert ledger.total_balance() == 0

    @pytest.mark.parametrize(
        "data",
        [
            "not json",
            "[]",
            {"amount": "5"},
            {"secret": "0x12", "amount": "5"},
            {"secret": "0x" + "55" * 32, "amount": "0"},
            {"secret": "0x" + "55" * 32, "amount": "5", "commitment": "0x" + "66" * 32},
        ],
    )
    def test_restore_rejects_bad_blob(self, ledger, data):
        with pytest.raises(BackupImportError):
            ledger.import_secret_backup(data)
        assert len(ledger) == 0

    def test_restore_duplicate_secret(self, ledger, add_pending):
        note = add_pending(10, "0xa")
        with pytest.raises(BackupImportError):
            ledger.import_secret_backup(ledger.export_secret_backup(note.id))
        assert len(ledger) == 1

    def test_export_unknown_note(self, ledger):
        with pytest.raises(ValidationError):
            ledger.export_secret_backup("nope")


class TestUnits:
    def test_format_and_parse(self):
        assert format_units(1_500_000, 6) == "1.5"
        assert format_units(0, 18) == "0"
        assert parse_units("1.5", 6) == 1_500_000
        assert parse_units("2", 0) == 2

    @pytest.mark.parametrize("bad", ["abc", "1.0000001", "NaN", "Infinity"])
    def test_parse_rejects(self, bad):
        with pytest.raises(ValidationError):
            parse_units(bad, 6)


class TestSelection:
    def test_select_smallest_covering(self, ledger, add_pending):
        for i, amt in enumerate((50, 10, 30)):
            add_pending(amt, f"0x{i}")
            ledger.mark_confirmed(f"0x{i}", i)
        assert select_note(ledger.available_notes(), 25).amount_minor == 30
        assert select_note(ledger.available_notes(), 60) is None

    def test_select_ignores_pending(self, ledger, add_pending):
        add_pending(100, "0xp")
        assert select_note(ledger.notes(), 10) is None

