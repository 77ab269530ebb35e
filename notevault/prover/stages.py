# prover/stages.py
"""
Proof session state: one withdrawal attempt's stage, progress and artifacts.

Stages only move forward:

    idle -> nullifier -> merkle -> state_root -> witness -> proving
         -> verifying -> submitting -> complete
    (any non-terminal stage) -> error

Sessions are never persisted; reset() is the only way back to idle.
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Set

from notevault.crypto_core.merkle import MerklePath
from notevault.errors import ProofCancelled, ProofError
from notevault.ledger.notes import Note
from notevault.logging_config import get_logger

logger = get_logger("prover.session")


class ProofStage(str, Enum):
    IDLE = "idle"
    NULLIFIER = "nullifier"
    MERKLE = "merkle"
    STATE_ROOT = "state_root"
    WITNESS = "witness"
    PROVING = "proving"
    VERIFYING = "verifying"
    SUBMITTING = "submitting"
    COMPLETE = "complete"
    ERROR = "error"


# Stages the engine itself runs, in order.
WORK_STAGES: List[ProofStage] = [
    ProofStage.NULLIFIER,
    ProofStage.MERKLE,
    ProofStage.STATE_ROOT,
    ProofStage.WITNESS,
    ProofStage.PROVING,
    ProofStage.VERIFYING,
]
TERMINAL_STAGES = frozenset({ProofStage.COMPLETE, ProofStage.ERROR})

STAGE_LABELS = {
    ProofStage.NULLIFIER: "Computing nullifier",
    ProofStage.MERKLE: "Merkle proof",
    ProofStage.STATE_ROOT: "State root",
    ProofStage.WITNESS: "Circuit witness",
    ProofStage.PROVING: "Generating proof",
    ProofStage.VERIFYING: "Local verification",
    ProofStage.SUBMITTING: "Submitting",
}


@dataclass(frozen=True)
class ProofRequest:
    note: Note
    amount_minor: int
    recipient: str


@dataclass
class ProofArtifacts:
    nullifier: Optional[str] = None
    merkle_path: Optional[MerklePath] = None
    merkle_root: Optional[str] = None
    state_root: Optional[str] = None
    witness_size: Optional[int] = None
    proof_bytes: Optional[bytes] = None
    verification_key: Optional[str] = None
    verified: bool = False

    def complete_for_submission(self) -> bool:
        return (
            self.nullifier is not None
            and self.merkle_root is not None
            and self.state_root is not None
            and self.witness_size is not None
            and bool(self.proof_bytes)
            and self.verification_key is not None
            and self.verified
        )

    def to_dict(self) -> dict:
        return {
            "nullifier": self.nullifier,
            "merkleRoot": self.merkle_root,
            "stateRoot": self.state_root,
            "witnessSize": self.witness_size,
            "proofBytes": ("0x" + self.proof_bytes.hex()) if self.proof_bytes else None,
            "verificationKey": self.verification_key,
            "verified": self.verified,
        }


@dataclass(frozen=True)
class ProofOutput:
    """What the chain contract consumes. Opaque to the engine."""
    nullifier: str
    state_root: str
    proof_bytes: bytes

    @property
    def proof_hex(self) -> str:
        return "0x" + self.proof_bytes.hex()


StageListener = Callable[["ProofSession", ProofStage], None]


class ProofSession:
    def __init__(self, request: ProofRequest, session_id: Optional[str] = None):
        self.id = session_id or uuid.uuid4().hex
        self.request = request
        self.stage = ProofStage.IDLE
        self.artifacts = ProofArtifacts()
        self.error: Optional[ProofError | Exception] = None
        self.progress = 0.0
        self.cancelled = False
        self._listeners: List[StageListener] = []
        self._background: Set[asyncio.Task] = set()

    @property
    def note_id(self) -> str:
        return self.request.note.id

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    @property
    def has_background_work(self) -> bool:
        return any(not t.done() for t in self._background)

    # ===== Observers =====

    def subscribe(self, listener: StageListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self) -> None:
        for cb in list(self._listeners):
            try:
                cb(self, self.stage)
            except Exception as e:
                # a broken observer must not break the session
                logger.error(f"Stage listener failed: {e}", exc_info=True)

    # ===== Transitions =====

    def enter(self, stage: ProofStage) -> None:
        """Advance to the next work stage. Skipping or going back is a ProofError."""
        if stage not in WORK_STAGES:
            raise ProofError(f"{stage.value} is not a work stage", self.stage.value)
        expected = ProofStage.NULLIFIER if self.stage is ProofStage.IDLE else None
        if self.stage in WORK_STAGES:
            i = WORK_STAGES.index(self.stage)
            expected = WORK_STAGES[i + 1] if i + 1 < len(WORK_STAGES) else None
        if stage is not expected:
            raise ProofError(f"cannot enter {stage.value} from {self.stage.value}", self.stage.value)
        self.stage = stage
        logger.debug(f"Session {self.id[:8]} -> {stage.value}")
        self._emit()

    def report_progress(self, ratio: float) -> None:
        """Progress only ever moves up, capped at 1.0."""
        r = max(0.0, min(1.0, float(ratio)))
        if r > self.progress:
            self.progress = r

    def fail(self, error: Exception) -> None:
        if self.is_terminal:
            return
        self.error = error
        self.stage = ProofStage.ERROR
        logger.warning(f"Session {self.id[:8]} failed: {error}")
        self._emit()

    def begin_submission(self) -> ProofOutput:
        """
        Hand the verified artifacts to the submitter. Only legal right after a
        successful `verifying` stage with every artifact present.
        """
        if self.cancelled:
            raise ProofCancelled("session was cancelled", self.stage.value)
        if self.stage is not ProofStage.VERIFYING or not self.artifacts.complete_for_submission():
            raise ProofError("artifacts incomplete or unverified; refusing to submit", self.stage.value)
        self.stage = ProofStage.SUBMITTING
        self._emit()
        a = self.artifacts
        return ProofOutput(nullifier=a.nullifier, state_root=a.state_root, proof_bytes=a.proof_bytes)

    def complete(self) -> None:
        if self.stage is not ProofStage.SUBMITTING:
            raise ProofError(f"cannot complete from {self.stage.value}", self.stage.value)
        self.stage = ProofStage.COMPLETE
        self._emit()

    def reset(self) -> None:
        """Back to idle for a brand new attempt. Artifacts are not reused."""
        if self._background:
            raise ProofError("background work still running; cancel first", self.stage.value)
        if not self.is_terminal and self.stage is not ProofStage.IDLE:
            raise ProofError(f"cannot reset from {self.stage.value}", self.stage.value)
        self.stage = ProofStage.IDLE
        self.artifacts = ProofArtifacts()
        self.error = None
        self.progress = 0.0
        self.cancelled = False
        self._emit()

    # ===== Background work & cancellation =====

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def stop_background(self) -> None:
        tasks = list(self._background)
        for t in tasks:
            t.cancel()
        for t in tasks:
            try:
                await t
            except asyncio.CancelledError:
                pass
        self._background.clear()

    async def cancel(self) -> bool:
        """
        Stop the session at the next stage boundary. The in-flight stage may
        finish its unit of work but nothing after it runs. Periodic background
        tasks are gone when this returns. Returns False when there was nothing
        to cancel (terminal) or the spend is already with the chain.
        """
        if self.is_terminal or self.stage is ProofStage.SUBMITTING:
            return False
        self.cancelled = True
        await self.stop_background()
        if self.stage is ProofStage.IDLE:
            self.fail(ProofCancelled("cancelled before start", ProofStage.IDLE.value))
        logger.info(f"Session {self.id[:8]} cancelled at {self.stage.value}")
        return True

    def snapshot(self) -> dict:
        return {
            "session_id": self.id,
            "note_id": self.note_id,
            "stage": self.stage.value,
            "progress": round(self.progress, 4),
            "cancelled": self.cancelled,
            "artifacts": self.artifacts.to_dict(),
            "error": str(self.error) if self.error else None,
        }


__all__ = [
    "ProofStage",
    "WORK_STAGES",
    "TERMINAL_STAGES",
    "STAGE_LABELS",
    "ProofRequest",
    "ProofArtifacts",
    "ProofOutput",
    "ProofSession",
    "StageListener",
]
