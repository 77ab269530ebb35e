# notevault/errors.py
from __future__ import annotations


class NotevaultError(Exception):
    """Base class for every error raised by the note ledger and spend pipeline."""


class ValidationError(NotevaultError, ValueError):
    """Bad amount / recipient / note input. Raised before any side effect."""


class StorageError(NotevaultError):
    """Durable read or write failed."""


class InvalidTransition(NotevaultError):
    """Illegal note status change (data-integrity bug, never expected in correct usage)."""

    def __init__(self, note_id: str, current: str | None, target: str):
        self.note_id = note_id
        self.current = current
        self.target = target
        super().__init__(f"Note {note_id}: cannot move from {current or 'missing'} to {target}")


class ProofError(NotevaultError):
    """A proof stage failed, including local verification."""

    def __init__(self, message: str, stage: str | None = None):
        self.stage = stage
        super().__init__(message if stage is None else f"[{stage}] {message}")


class ProofCancelled(ProofError):
    """The proof session was cancelled by its owner."""


class SubmissionError(NotevaultError):
    """The chain rejected the withdrawal or it failed to confirm."""

    def __init__(self, message: str, tx_ref: str | None = None):
        self.tx_ref = tx_ref
        super().__init__(message)


class BackupImportError(NotevaultError):
    """A backup could not be imported. Existing state was not touched."""


__all__ = [
    "NotevaultError",
    "ValidationError",
    "StorageError",
    "InvalidTransition",
    "ProofError",
    "ProofCancelled",
    "SubmissionError",
    "BackupImportError",
]
