# prover/engine.py
"""
Proof-staging engine.

Runs one ProofSession through nullifier -> merkle -> state_root -> witness
-> proving -> verifying. Every stage validates its output before the next
one starts; an exception in any stage moves the session to `error` and is
re-raised as a ProofError. The engine stops after `verifying`: submission
belongs to the spend coordinator (see ProofSession.begin_submission).
"""
from __future__ import annotations

import asyncio
from typing import Optional

from notevault.chain.client import ChainClient
from notevault.config import DEFAULT_PROGRESS_INTERVAL
from notevault.crypto_core.commitments import compute_nullifier, is_address
from notevault.crypto_core.merkle import verify_merkle
from notevault.errors import ProofCancelled, ProofError, ValidationError
from notevault.ledger.notes import Note, NoteStatus
from notevault.logging_config import get_logger, short
from notevault.prover.backends import ProofArtifact, ProverBackend, Witness, WitnessInputs
from notevault.prover.stages import (
    STAGE_LABELS,
    WORK_STAGES,
    ProofOutput,
    ProofRequest,
    ProofSession,
    ProofStage,
)

logger = get_logger("prover.engine")

# the progress ticker never claims more than this before the prover reports
TICKER_CEILING = 0.95


def validate_request(note: Note, amount_minor: int, recipient: str) -> None:
    """
    Entry condition of a proof session.

    Raises:
        ValidationError: note not confirmed, amount not in (0, note amount],
            or recipient not a 0x-prefixed 20-byte address
    """
    if note is None:
        raise ValidationError("no note selected")
    if note.status is not NoteStatus.CONFIRMED:
        raise ValidationError(f"note {note.id} is {note.status.value}, not confirmed")
    if isinstance(amount_minor, bool) or not isinstance(amount_minor, int):
        raise ValidationError("amount must be an integer of minor units")
    if amount_minor <= 0:
        raise ValidationError("amount must be positive")
    if amount_minor > note.amount_minor:
        raise ValidationError(f"amount {amount_minor} exceeds note amount {note.amount_minor}")
    if not is_address(recipient):
        raise ValidationError("recipient must be a 0x-prefixed 20-byte address")


class ProofStagingEngine:
    def __init__(
        self,
        prover: ProverBackend,
        chain: ChainClient,
        progress_interval: float = DEFAULT_PROGRESS_INTERVAL,
        nullifier_salt: Optional[str] = None,
    ):
        self.prover = prover
        self.chain = chain
        self.progress_interval = progress_interval
        self.nullifier_salt = nullifier_salt
        # witness built in the witness stage, consumed by proving
        self._witness: dict = {}
        self._artifact: dict = {}

    def new_session(self, note: Note, amount_minor: int, recipient: str) -> ProofSession:
        validate_request(note, amount_minor, recipient)
        return ProofSession(ProofRequest(note=note, amount_minor=amount_minor, recipient=recipient))

    async def run(self, session: ProofSession) -> ProofOutput:
        """
        Drive `session` from idle through verifying.

        Returns the submission payload once local verification passed; the
        session is left in `verifying` for the coordinator to submit.

        Raises:
            ProofCancelled: the session was cancelled (at a stage boundary)
            ProofError: any stage failed; the session is in `error`
        """
        if session.cancelled:
            raise ProofCancelled("session was cancelled before it started", session.stage.value)
        if session.stage is not ProofStage.IDLE:
            raise ProofError(f"session must start from idle, is {session.stage.value}", session.stage.value)
        logger.info(
            f"Proof session {session.id[:8]} for note {session.note_id} "
            f"({session.request.amount_minor} -> {short(session.request.recipient)})"
        )
        try:
            for stage in WORK_STAGES:
                if session.cancelled:
                    raise ProofCancelled(f"cancelled before {stage.value}", stage.value)
                session.enter(stage)
                logger.debug(f"{STAGE_LABELS[stage]}...")
                await getattr(self, f"_stage_{stage.value}")(session)
                # stage boundary: let queued work (a cancel) run
                await asyncio.sleep(0)
            if session.cancelled:
                raise ProofCancelled("cancelled after verification", ProofStage.VERIFYING.value)
            a = session.artifacts
            return ProofOutput(nullifier=a.nullifier, state_root=a.state_root, proof_bytes=a.proof_bytes)
        except asyncio.CancelledError:
            err = ProofCancelled("proof task cancelled", session.stage.value)
            session.cancelled = True
            await self._abort(session, err)
            raise err
        except ProofError as e:
            await self._abort(session, e)
            raise
        except Exception as e:
            err = ProofError(f"{type(e).__name__}: {e}", session.stage.value)
            await self._abort(session, err)
            raise err from e
        finally:
            self._witness.pop(session.id, None)
            self._artifact.pop(session.id, None)

    async def _abort(self, session: ProofSession, error: ProofError) -> None:
        await session.stop_background()
        session.fail(error)

    # ===== stages =====

    async def _stage_nullifier(self, session: ProofSession) -> None:
        note = session.request.note
        session.artifacts.nullifier = compute_nullifier(note.secret, note.amount_minor, self.nullifier_salt)

    async def _stage_merkle(self, session: ProofSession) -> None:
        note = session.request.note
        if note.leaf_index < 0:
            raise ProofError("note has no leaf index", ProofStage.MERKLE.value)
        path = await self.chain.read_merkle_path(note.leaf_index)
        if not verify_merkle(note.commitment, path, path.root):
            raise ProofError("merkle path does not lead to the reported root", ProofStage.MERKLE.value)
        session.artifacts.merkle_path = path
        session.artifacts.merkle_root = path.root

    async def _stage_state_root(self, session: ProofSession) -> None:
        root = await self.chain.read_state_root()
        path_root = session.artifacts.merkle_root or ""
        if root.lower() != path_root.lower():
            # later deposits moved the head; prove against the path's root while the vault still accepts it
            if not await self.chain.is_accepted_root(path_root):
                raise ProofError("state root moved and the merkle path's root is no longer accepted", ProofStage.STATE_ROOT.value)
            logger.info(f"State root moved to {short(root)}; proving against recent root {short(path_root)}")
            root = path_root
        session.artifacts.state_root = root

    async def _stage_witness(self, session: ProofSession) -> None:
        req, a = session.request, session.artifacts
        witness: Witness = await self.prover.build_witness(
            WitnessInputs(
                secret=req.note.secret,
                note_amount_minor=req.note.amount_minor,
                amount_minor=req.amount_minor,
                leaf_index=req.note.leaf_index,
                merkle_path=a.merkle_path,
                state_root=a.state_root,
                nullifier=a.nullifier,
                recipient=req.recipient,
            )
        )
        self._witness[session.id] = witness
        a.witness_size = witness.size

    async def _tick(self, session: ProofSession) -> None:
        while True:
            await asyncio.sleep(self.progress_interval)
            session.report_progress(session.progress + (TICKER_CEILING - session.progress) * 0.1)

    async def _stage_proving(self, session: ProofSession) -> None:
        ticker = session.spawn(self._tick(session))
        try:
            artifact = await self.prover.prove(self._witness[session.id], session.report_progress)
        finally:
            ticker.cancel()
            await session.stop_background()
        if not artifact.proof_bytes:
            raise ProofError("prover returned an empty proof", ProofStage.PROVING.value)
        session.report_progress(1.0)
        self._artifact[session.id] = artifact
        session.artifacts.proof_bytes = artifact.proof_bytes
        session.artifacts.verification_key = artifact.verification_key

    async def _stage_verifying(self, session: ProofSession) -> None:
        artifact: ProofArtifact = self._artifact[session.id]
        if not await self.prover.verify(artifact):
            raise ProofError("local proof verification failed", ProofStage.VERIFYING.value)
        session.artifacts.verified = True
        logger.info(f"Proof verified for session {session.id[:8]} ({len(artifact.proof_bytes)} bytes)")


__all__ = ["ProofStagingEngine", "validate_request", "TICKER_CEILING"]
