# ledger/ledger.py
"""
The note ledger: sole owner of Notes and of the cached confirmed balance.

All mutations build the next note list, persist it (when autosave is on)
and only then swap it in, so memory and disk never diverge on a failed
write and the cached balance is always recomputed together with the notes.
"""
from __future__ import annotations

import json
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from notevault.config import DEFAULT_DECIMALS
from notevault.crypto_core.commitments import compute_commitment, hex32_to_bytes
from notevault.database.records import LedgerRecord, SecretBackupRecord, empty_record
from notevault.database.store import LedgerStore
from notevault.errors import BackupImportError, InvalidTransition, StorageError, ValidationError
from notevault.ledger.notes import (
    RESTORED_PREFIX,
    Note,
    NoteStatus,
    format_units,
    is_placeholder_ref,
    make_note_id,
    now_ms,
)
from notevault.logging_config import get_logger, short

logger = get_logger("ledger")


def _confirmed_sum(notes: Iterable[Note]) -> int:
    return sum(n.amount_minor for n in notes if n.status is NoteStatus.CONFIRMED)


class Ledger:
    def __init__(
        self,
        store: Optional[LedgerStore] = None,
        notes: Iterable[Note] = (),
        last_sync_block: int = 0,
        decimals: int = DEFAULT_DECIMALS,
        autosave: bool = True,
    ):
        self.store = store
        self.decimals = decimals
        self.autosave = autosave
        self._notes: List[Note] = list(notes)
        self._last_sync_block = int(last_sync_block)
        self._balance = _confirmed_sum(self._notes)

    # ===== Loading / saving =====

    @classmethod
    def load(cls, store: LedgerStore, decimals: int = DEFAULT_DECIMALS, autosave: bool = True) -> "Ledger":
        """
        Read the ledger from `store`. A missing file yields an empty ledger.
        An unparsable or malformed file is moved aside first, so the empty
        ledger's first write cannot destroy the secrets in it.

        Raises:
            StorageError: the corrupt file could not be moved aside
        """
        try:
            raw = store.read()
        except StorageError as e:
            if not store.exists():
                raise
            logger.error(f"Ledger storage unreadable: {e}")
            moved = store.quarantine()
            logger.error(f"Starting with an empty ledger; previous file kept at {moved}")
            return cls(store, decimals=decimals, autosave=autosave)
        if raw is None:
            logger.info(f"No ledger at {store.path}, starting empty")
            return cls(store, decimals=decimals, autosave=autosave)
        try:
            return cls.from_record(raw, store=store, decimals=decimals, autosave=autosave)
        except BackupImportError as e:
            logger.error(f"Ledger at {store.path} is corrupt: {e}")
            moved = store.quarantine()
            logger.error(f"Starting with an empty ledger; previous file kept at {moved}")
            return cls(store, decimals=decimals, autosave=autosave)

    @classmethod
    def from_record(
        cls,
        raw: Any,
        store: Optional[LedgerStore] = None,
        decimals: int = DEFAULT_DECIMALS,
        autosave: bool = True,
    ) -> "Ledger":
        if not isinstance(raw, dict):
            raise BackupImportError("ledger record must be a JSON object")
        if "deposits" not in raw:
            raise BackupImportError("ledger record has no 'deposits'")
        try:
            rec = LedgerRecord.model_validate(raw)
        except PydanticValidationError as e:
            raise BackupImportError(f"malformed ledger record: {e.error_count()} error(s): {e.errors()[0]['msg']}") from e

        notes: List[Note] = []
        seen_ids, seen_secrets = set(), set()
        for r in rec.deposits:
            if r.id in seen_ids:
                raise BackupImportError(f"duplicate note id {r.id}")
            if r.secret.lower() in seen_secrets:
                raise BackupImportError(f"two notes share one secret (note {r.id})")
            seen_ids.add(r.id)
            seen_secrets.add(r.secret.lower())
            notes.append(
                Note(
                    id=r.id,
                    secret=r.secret,
                    commitment=r.commitment,
                    amount=format_units(r.amountMinorUnits, decimals),
                    amount_minor=r.amountMinorUnits,
                    leaf_index=r.leafIndex,
                    created_at=r.createdAt,
                    transaction_ref=r.transactionRef,
                    status=NoteStatus(r.status),
                )
            )

        ledger = cls(store, notes, rec.lastSyncBlock, decimals=decimals, autosave=autosave)
        if rec.totalBalance != str(ledger.total_balance()):
            logger.warning(
                f"Stored totalBalance {rec.totalBalance} disagrees with notes "
                f"({ledger.total_balance()}); using recomputed value"
            )
        return ledger

    def to_record(self) -> dict:
        rec = empty_record()
        rec["deposits"] = [n.to_record() for n in self._notes]
        rec["totalBalance"] = str(self._balance)
        rec["lastSyncBlock"] = self._last_sync_block
        return rec

    def save(self) -> None:
        if self.store is None:
            raise StorageError("ledger has no store attached")
        self.store.write(self.to_record())

    def _commit(self, notes: List[Note], last_sync_block: Optional[int] = None) -> None:
        block = self._last_sync_block if last_sync_block is None else last_sync_block
        if self.autosave and self.store is not None:
            rec = empty_record()
            rec["deposits"] = [n.to_record() for n in notes]
            rec["totalBalance"] = str(_confirmed_sum(notes))
            rec["lastSyncBlock"] = block
            self.store.write(rec)
        self._notes = notes
        self._last_sync_block = block
        self._balance = _confirmed_sum(notes)

    # ===== Queries =====

    def notes(self) -> List[Note]:
        return list(self._notes)

    def available_notes(self) -> List[Note]:
        return [n for n in self._notes if n.status is NoteStatus.CONFIRMED]

    def total_balance(self) -> int:
        return self._balance

    def total_balance_display(self) -> str:
        return format_units(self._balance, self.decimals)

    @property
    def last_sync_block(self) -> int:
        return self._last_sync_block

    def get(self, note_id: str) -> Optional[Note]:
        for n in self._notes:
            if n.id == note_id:
                return n
        return None

    def find_by_commitment(self, commitment: str) -> Optional[Note]:
        c = commitment.lower()
        for n in self._notes:
            if n.commitment.lower() == c:
                return n
        return None

    def __len__(self) -> int:
        return len(self._notes)

    # ===== Mutations =====

    def add_note(self, secret: str, commitment: str, amount_minor: int, transaction_ref: str) -> Note:
        if isinstance(amount_minor, bool) or not isinstance(amount_minor, int) or amount_minor <= 0:
            raise ValidationError("note amount must be a positive integer of minor units")
        hex32_to_bytes(secret, "secret")
        hex32_to_bytes(commitment, "commitment")
        if not transaction_ref:
            raise ValidationError("transaction_ref is required")
        if any(n.secret.lower() == secret.lower() for n in self._notes):
            raise ValidationError("a note with this secret already exists")

        created = now_ms()
        note = Note(
            id=make_note_id(transaction_ref, secret, created),
            secret=secret,
            commitment=commitment,
            amount=format_units(amount_minor, self.decimals),
            amount_minor=amount_minor,
            leaf_index=-1,
            created_at=created,
            transaction_ref=transaction_ref,
            status=NoteStatus.PENDING,
        )
        self._commit(self._notes + [note])
        logger.info(f"Note {note.id} added (pending, {note.amount} units, commitment {short(commitment)})")
        return note

    def mark_confirmed(self, transaction_ref: str, leaf_index: int) -> Optional[Note]:
        """
        Confirm the pending note created by `transaction_ref`. Returns None when
        no pending note matches (the deposit event may arrive before the note
        is recorded; the caller retries on a later event).
        """
        for i, n in enumerate(self._notes):
            if n.transaction_ref == transaction_ref and n.status is NoteStatus.PENDING:
                updated = n.with_status(NoteStatus.CONFIRMED, leaf_index=int(leaf_index))
                notes = list(self._notes)
                notes[i] = updated
                self._commit(notes)
                logger.info(f"Note {n.id} confirmed at leaf {leaf_index}")
                return updated
        logger.debug(f"No pending note for tx {short(transaction_ref)}; ignoring confirmation")
        return None

    def mark_spent(self, note_id: str) -> Note:
        for i, n in enumerate(self._notes):
            if n.id != note_id:
                continue
            if n.status is not NoteStatus.CONFIRMED:
                raise InvalidTransition(note_id, n.status.value, NoteStatus.SPENT.value)
            updated = n.with_status(NoteStatus.SPENT)
            notes = list(self._notes)
            notes[i] = updated
            self._commit(notes)
            logger.info(f"Note {note_id} spent")
            return updated
        raise InvalidTransition(note_id, None, NoteStatus.SPENT.value)

    def assign_transaction_ref(self, commitment: str, transaction_ref: str) -> Note:
        """
        Bind the chain tx ref to the pending note for `commitment` that was
        recorded under a placeholder ref. The note id is re-derived from the
        new ref. Binding the ref a note already has is a no-op.

        Raises:
            ValidationError: no note for `commitment`, or it is already bound
                to another tx ref
        """
        if not transaction_ref:
            raise ValidationError("transaction_ref is required")
        c = commitment.lower()
        for i, n in enumerate(self._notes):
            if n.commitment.lower() != c:
                continue
            if n.transaction_ref == transaction_ref:
                return n
            if n.status is not NoteStatus.PENDING or not is_placeholder_ref(n.transaction_ref):
                raise ValidationError(f"note {n.id} is already bound to tx {short(n.transaction_ref)}")
            updated = replace(
                n, transaction_ref=transaction_ref, id=make_note_id(transaction_ref, n.secret, n.created_at)
            )
            notes = list(self._notes)
            notes[i] = updated
            self._commit(notes)
            logger.info(f"Note {updated.id} bound to tx {short(transaction_ref)}")
            return updated
        raise ValidationError(f"no note with commitment {short(commitment)}")

    def set_last_sync_block(self, block: int, persist: bool = True) -> None:
        """
        Advance the last scanned block. With persist=False only memory moves;
        the next write carries it to disk.
        """
        if block <= self._last_sync_block:
            return
        if persist:
            self._commit(list(self._notes), last_sync_block=block)
        else:
            self._last_sync_block = block

    # ===== Backup =====

    def export_backup(self) -> str:
        return json.dumps(self.to_record(), indent=2)

    def import_backup(self, data: str | bytes | dict) -> "Ledger":
        """
        Validate a backup and build a ledger from it. The current ledger is
        not modified; use merge() to fold the imported notes in.

        Raises:
            BackupImportError: not JSON, no array-typed 'deposits', or a
                malformed note
        """
        if isinstance(data, (str, bytes, bytearray)):
            try:
                raw = json.loads(data)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise BackupImportError(f"backup is not valid JSON: {e}") from e
        else:
            raw = data
        return Ledger.from_record(raw, store=self.store, decimals=self.decimals, autosave=self.autosave)

    def merge(self, other: "Ledger") -> Dict[str, int]:
        """
        Fold an imported ledger into this one (persisted first).

        Notes are matched by secret. A match keeps whichever copy is further
        along pending -> confirmed -> spent, so no note moves backward; notes
        only present here are kept. Returns added/updated/unchanged counts.

        Raises:
            BackupImportError: an imported note reuses a live note's id with
                a different secret, or a live secret with a different commitment
        """
        notes = list(self._notes)
        by_secret = {n.secret.lower(): i for i, n in enumerate(notes)}
        ids = {n.id for n in notes}
        added = updated = unchanged = 0
        for incoming in other.notes():
            i = by_secret.get(incoming.secret.lower())
            if i is None:
                if incoming.id in ids:
                    raise BackupImportError(f"note id {incoming.id} already belongs to a different secret")
                notes.append(incoming)
                by_secret[incoming.secret.lower()] = len(notes) - 1
                ids.add(incoming.id)
                added += 1
                continue
            current = notes[i]
            if current.commitment.lower() != incoming.commitment.lower():
                raise BackupImportError(f"note {incoming.id} shares a secret with note {current.id} but not its commitment")
            if incoming.status.rank > current.status.rank:
                notes[i] = current.with_status(
                    incoming.status, leaf_index=incoming.leaf_index, transaction_ref=incoming.transaction_ref
                )
                updated += 1
            else:
                unchanged += 1
        self._commit(notes, last_sync_block=max(self._last_sync_block, other.last_sync_block))
        logger.info(
            f"Backup merged: {added} added, {updated} advanced, {unchanged} unchanged; "
            f"{len(self._notes)} notes, balance {self._balance}"
        )
        return {"added": added, "updated": updated, "unchanged": unchanged}


    # ===== Single-note secret backups =====

    def export_secret_backup(self, note_id: str) -> str:
        """Recovery blob for one note: secret, amount, leaf index, commitment."""
        note = self.get(note_id)
        if note is None:
            raise ValidationError(f"note {note_id} is not in the ledger")
        return json.dumps(
            {
                "secret": note.secret,
                "amountMinorUnits": str(note.amount_minor),
                "leafIndex": note.leaf_index,
                "commitment": note.commitment,
                "transactionRef": note.transaction_ref,
            },
            indent=2,
        )

    def import_secret_backup(self, data: str | bytes | dict) -> Note:
        """
        Rebuild one note from its secret backup and add it to the ledger.

        The commitment is recomputed from secret and amount; a blob carrying a
        different one is refused. A known leaf index makes the note confirmed,
        otherwise it is pending until its deposit event is seen.

        Raises:
            BackupImportError: not JSON, malformed, commitment mismatch, or a
                note with this secret already exists
        """
        if isinstance(data, (str, bytes, bytearray)):
            try:
                raw = json.loads(data)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise BackupImportError(f"secret backup is not valid JSON: {e}") from e
        else:
            raw = data
        if not isinstance(raw, dict):
            raise BackupImportError("secret backup must be a JSON object")
        try:
            rec = SecretBackupRecord.model_validate(raw)
        except PydanticValidationError as e:
            raise BackupImportError(f"malformed secret backup: {e.errors()[0]['msg']}") from e
        try:
            commitment = compute_commitment(rec.secret, rec.amountMinorUnits)
        except ValidationError as e:
            raise BackupImportError(f"malformed secret backup: {e}") from e
        if rec.commitment is not None and rec.commitment.lower() != commitment.lower():
            raise BackupImportError("commitment does not match secret and amount")
        if any(n.secret.lower() == rec.secret.lower() for n in self._notes):
            raise BackupImportError("a note with this secret already exists")

        created = now_ms()
        tx_ref = rec.transactionRef or f"{RESTORED_PREFIX}{commitment}"
        confirmed = rec.leafIndex >= 0
        note = Note(
            id=make_note_id(tx_ref, rec.secret, created),
            secret=rec.secret,
            commitment=commitment,
            amount=format_units(rec.amountMinorUnits, self.decimals),
            amount_minor=rec.amountMinorUnits,
            leaf_index=rec.leafIndex,
            created_at=created,
            transaction_ref=tx_ref,
            status=NoteStatus.CONFIRMED if confirmed else NoteStatus.PENDING,
        )
        self._commit(self._notes + [note])
        logger.info(f"Note {note.id} restored from secret backup ({note.status.value}, {note.amount} units)")
        return note


__all__ = ["Ledger"]
