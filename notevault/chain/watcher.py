# chain/watcher.py
"""
Keeps the ledger in step with deposit events.

Replaces periodic balance polling: the watcher subscribes once and confirms
the matching pending note on every deposit event. Events are matched by
commitment, so a note recorded under a placeholder ref (deposit not yet
acknowledged, or restored from a secret backup) is bound to the event's tx
ref first. Events for commitments this ledger does not hold are skipped.
A confirmation that fails to persist is held and retried on the next event
(or on sync()).
"""
from __future__ import annotations

from typing import Callable, Dict, Optional

from notevault.chain.client import ChainClient, DepositEvent, LocalVault
from notevault.errors import StorageError, ValidationError
from notevault.ledger.ledger import Ledger
from notevault.ledger.notes import Note, NoteStatus
from notevault.logging_config import get_logger, short

logger = get_logger("chain.watcher")


class DepositWatcher:
    def __init__(self, ledger: Ledger, chain: ChainClient, on_confirmed: Optional[Callable] = None):
        self.ledger = ledger
        self.chain = chain
        self.on_confirmed = on_confirmed
        # commitment -> event, only for this ledger's pending notes
        self.backlog: Dict[str, DepositEvent] = {}
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def running(self) -> bool:
        return self._unsubscribe is not None

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.chain.on_deposit_event(self.handle)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _pending_note(self, event: DepositEvent) -> Optional[Note]:
        note = self.ledger.find_by_commitment(event.commitment)
        if note is None or note.status is not NoteStatus.PENDING:
            return None
        return note

    def handle(self, event: DepositEvent) -> None:
        # memory only; written out with the next ledger mutation
        self.ledger.set_last_sync_block(event.block, persist=False)
        if self._pending_note(event) is None:
            logger.debug(f"Deposit event {short(event.tx_ref)} is not ours or already settled")
            return
        self.backlog[event.commitment.lower()] = event
        self.retry_backlog()

    def _confirm(self, event: DepositEvent) -> Optional[Note]:
        note = self._pending_note(event)
        if note is None:
            return None
        if note.transaction_ref != event.tx_ref:
            try:
                note = self.ledger.assign_transaction_ref(event.commitment, event.tx_ref)
            except ValidationError as e:
                logger.warning(f"Deposit event {short(event.tx_ref)} does not match note {note.id}: {e}")
                return None
        return self.ledger.mark_confirmed(event.tx_ref, event.leaf_index)

    def retry_backlog(self) -> int:
        """Confirm every held event whose note is still pending. Returns count."""
        confirmed = 0
        for key, event in list(self.backlog.items()):
            try:
                note = self._confirm(event)
            except StorageError as e:
                logger.error(f"Confirmation of {short(event.tx_ref)} not persisted, will retry: {e}")
                continue
            self.backlog.pop(key, None)
            if note is None:
                continue
            confirmed += 1
            if self.on_confirmed is not None:
                self.on_confirmed(note)
        return confirmed

    def sync(self) -> int:
        """
        Replay deposit events newer than the ledger's last sync block
        (LocalVault keeps the full log). Returns notes confirmed.
        """
        if not isinstance(self.chain, LocalVault):
            return self.retry_backlog()
        start = self.ledger.last_sync_block
        events = self.chain.deposit_events(start)
        for event in events:
            if self._pending_note(event) is not None:
                self.backlog.setdefault(event.commitment.lower(), event)
        confirmed = self.retry_backlog()
        if events:
            self.ledger.set_last_sync_block(max(e.block for e in events))
        logger.info(f"Synced {len(events)} deposit events from block {start}, {confirmed} notes confirmed")
        return confirmed


__all__ = ["DepositWatcher"]
