# crypto_core/splits.py
from __future__ import annotations

from typing import Optional, Sequence

from notevault.ledger.notes import Note, NoteStatus


def select_note(notes: Sequence[Note], target_minor: int) -> Optional[Note]:
    """
    Smallest confirmed note whose amount covers `target_minor`.
    Ties keep ledger order. Returns None when no single note is large enough.
    """
    cand = [n for n in notes if n.status is NoteStatus.CONFIRMED and n.amount_minor >= target_minor]
    if not cand:
        return None
    return min(cand, key=lambda n: n.amount_minor)

