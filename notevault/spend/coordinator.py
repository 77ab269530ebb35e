# spend/coordinator.py
"""
Spend coordinator: the only caller that moves notes to `spent`.

    attempt_withdrawal(note, amount, recipient)
        validate -> fresh ProofSession -> engine.run (idle..verifying)
        -> begin_submission -> chain.submit_withdrawal -> wait_for_receipt
        -> confirmed: ledger.mark_spent, session complete
        -> anything else: session error, ledger untouched

Nothing here retries on its own; a retry is a new call with a new session.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from notevault.chain.client import ChainClient
from notevault.crypto_core.commitments import compute_commitment, generate_secret
from notevault.crypto_core.splits import select_note
from notevault.errors import ProofError, StorageError, SubmissionError, ValidationError
from notevault.ledger.ledger import Ledger
from notevault.ledger.notes import Note, unsubmitted_ref
from notevault.logging_config import get_logger, short
from notevault.prover.engine import ProofStagingEngine, validate_request
from notevault.prover.stages import ProofSession, StageListener

logger = get_logger("spend")


@dataclass(frozen=True)
class SpendResult:
    note_id: str
    amount_minor: int
    recipient: str
    nullifier: str
    state_root: str
    tx_ref: str
    block: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "noteId": self.note_id,
            "amountMinorUnits": str(self.amount_minor),
            "recipient": self.recipient,
            "nullifier": self.nullifier,
            "stateRoot": self.state_root,
            "transactionRef": self.tx_ref,
            "block": self.block,
        }


class SpendCoordinator:
    def __init__(
        self,
        ledger: Ledger,
        engine: ProofStagingEngine,
        chain: ChainClient,
        eventlog=None,
        receipt_timeout: float = 60.0,
    ):
        self.ledger = ledger
        self.engine = engine
        self.chain = chain
        self.eventlog = eventlog
        self.receipt_timeout = receipt_timeout
        self.current_session: Optional[ProofSession] = None
        # attached to every new proof session (progress display, API polling)
        self.session_listeners: List[StageListener] = []

    def record_event(self, kind: str, **payload: Any) -> None:
        if self.eventlog is None:
            return
        try:
            self.eventlog.append_event(kind, **payload)
        except (StorageError, ValueError) as e:
            # audit trail only; ledger state is already authoritative
            logger.error(f"Event {kind} not recorded: {e}")

    # ===== Deposits =====

    async def deposit(self, amount_minor: int, wait: bool = True) -> Note:
        """
        New secret + commitment, persisted as a pending note before anything
        is sent, then submitted to the chain; the note is re-keyed under the
        returned tx ref. With `wait`, the note is confirmed from the receipt;
        otherwise the deposit event confirms it later.

        Raises:
            ValidationError: amount not a positive integer
            StorageError: the note could not be persisted (nothing was sent),
                or its tx ref could not be (the note stays on disk under its
                placeholder ref and the deposit event binds it)
            SubmissionError: deposit failed to submit, reverted or never confirmed
        """
        if isinstance(amount_minor, bool) or not isinstance(amount_minor, int) or amount_minor <= 0:
            raise ValidationError("deposit amount must be a positive integer of minor units")
        secret = generate_secret()
        commitment = compute_commitment(secret, amount_minor)
        self.ledger.add_note(secret, commitment, amount_minor, unsubmitted_ref(commitment))
        try:
            tx_ref = await self.chain.submit_deposit(commitment, amount_minor)
        except SubmissionError as e:
            # the note stays pending under its placeholder ref; a late deposit event still binds it
            logger.warning(f"Deposit of {short(commitment)} not submitted: {e}")
            raise
        except Exception as e:
            logger.warning(f"Deposit of {short(commitment)} not submitted: {e}")
            raise SubmissionError(f"deposit submission failed: {type(e).__name__}: {e}") from e
        try:
            note = self.ledger.assign_transaction_ref(commitment, tx_ref)
        except StorageError as e:
            logger.error(f"Deposit {short(tx_ref)} submitted but its tx ref was not persisted: {e}")
            raise
        self.record_event("NoteDeposited", note_id=note.id, commitment=commitment, amount=str(amount_minor), tx_ref=tx_ref)
        if not wait:
            return note

        receipt = await self.chain.wait_for_receipt(tx_ref, timeout=self.receipt_timeout)
        if not receipt.ok:
            # the note stays pending; it can never be confirmed and is excluded from the balance
            raise SubmissionError(f"deposit reverted: {receipt.reason or 'unknown reason'}", tx_ref=tx_ref)
        confirmed = self.ledger.mark_confirmed(tx_ref, receipt.leaf_index)
        if confirmed is not None:
            self.record_event("NoteConfirmed", note_id=confirmed.id, leaf_index=confirmed.leaf_index, block=receipt.block)
            return confirmed
        return self.ledger.get(note.id) or note

    # ===== Withdrawals =====

    async def attempt_withdrawal(self, note: Note, amount_minor: int, recipient: str) -> SpendResult:
        """
        Prove and submit a withdrawal of `amount_minor` from `note`.

        Raises:
            ValidationError: bad input; no session is started
            ProofError: a proof stage failed or the session was cancelled
            SubmissionError: the chain rejected or did not confirm the spend
        """
        # always check against the ledger's current view of the note
        current = self.ledger.get(note.id) if note is not None else None
        if note is not None and current is None:
            raise ValidationError(f"note {note.id} is not in the ledger")
        validate_request(current, amount_minor, recipient)

        session = self.engine.new_session(current, amount_minor, recipient)
        for listener in self.session_listeners:
            session.subscribe(listener)
        self.current_session = session
        try:
            output = await self.engine.run(session)
        except ProofError as e:
            self.record_event("WithdrawalFailed", note_id=current.id, reason=str(e), stage=e.stage or "")
            raise

        payload = session.begin_submission()
        logger.info(
            f"Submitting withdrawal: note {current.id}, amount {amount_minor}, "
            f"nullifier {short(payload.nullifier)}"
        )
        try:
            tx_ref = await self.chain.submit_withdrawal(
                payload.nullifier, recipient, amount_minor, payload.state_root, payload.proof_bytes
            )
            receipt = await self.chain.wait_for_receipt(tx_ref, timeout=self.receipt_timeout)
            if not receipt.ok:
                raise SubmissionError(f"withdrawal reverted: {receipt.reason or 'unknown reason'}", tx_ref=tx_ref)
        except SubmissionError as e:
            self._fail_submission(session, current, e)
            raise
        except Exception as e:
            # RPC/transport errors from a real client end the session the same way
            err = SubmissionError(f"{type(e).__name__}: {e}")
            self._fail_submission(session, current, err)
            raise err from e

        try:
            spent = self.ledger.mark_spent(current.id)
        except Exception as e:
            session.fail(e)
            logger.error(f"Withdrawal {short(tx_ref)} confirmed on chain but note {current.id} not marked spent: {e}")
            self.record_event("WithdrawalFailed", note_id=current.id, reason=str(e), tx_ref=tx_ref)
            raise
        session.complete()
        self.record_event("NoteSpent", note_id=spent.id, nullifier=output.nullifier, tx_ref=tx_ref, amount=str(amount_minor))
        logger.info(f"Withdrawal confirmed in block {receipt.block}: note {spent.id} spent")
        return SpendResult(
            note_id=spent.id,
            amount_minor=amount_minor,
            recipient=recipient,
            nullifier=output.nullifier,
            state_root=output.state_root,
            tx_ref=tx_ref,
            block=receipt.block,
        )

    def _fail_submission(self, session: ProofSession, note: Note, error: SubmissionError) -> None:
        session.fail(error)
        logger.warning(f"Withdrawal for note {note.id} failed, note stays {note.status.value}: {error}")
        self.record_event("WithdrawalFailed", note_id=note.id, reason=str(error), tx_ref=error.tx_ref or "")

    async def withdraw(self, amount_minor: int, recipient: str) -> SpendResult:
        """Pick the smallest confirmed note covering `amount_minor` and spend it."""
        if isinstance(amount_minor, bool) or not isinstance(amount_minor, int) or amount_minor <= 0:
            raise ValidationError("amount must be a positive integer of minor units")
        note = select_note(self.ledger.available_notes(), amount_minor)
        if note is None:
            raise ValidationError(f"no single confirmed note covers {amount_minor}")
        return await self.attempt_withdrawal(note, amount_minor, recipient)

    async def cancel(self) -> bool:
        session = self.current_session
        if session is None:
            return False
        return await session.cancel()

    def session_snapshot(self) -> Optional[Dict[str, Any]]:
        return self.current_session.snapshot() if self.current_session is not None else None


__all__ = ["SpendCoordinator", "SpendResult"]
