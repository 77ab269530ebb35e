# ledger/notes.py
from __future__ import annotations

import time
from dataclasses import dataclass, replace
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from enum import Enum
from typing import Any, Dict

from notevault.errors import ValidationError


class NoteStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SPENT = "spent"

    @property
    def rank(self) -> int:
        return _RANK[self]


_RANK = {NoteStatus.PENDING: 0, NoteStatus.CONFIRMED: 1, NoteStatus.SPENT: 2}


# ===== Amount formatting (integer minor units <-> display string) =====

def format_units(amount_minor: int, decimals: int) -> str:
    """Exact display string in major units, trailing zeros trimmed."""
    d = Decimal(amount_minor).scaleb(-decimals)
    s = format(d, "f")
    if "." in s:
        s = s.rstrip("0").rstrip(".")
    return s or "0"


def parse_units(amount: str | int | Decimal, decimals: int) -> int:
    """Major-unit string -> minor units. Rejects precision finer than `decimals`."""
    try:
        d = Decimal(str(amount))
    except InvalidOperation:
        raise ValidationError(f"invalid amount: {amount!r}")
    if not d.is_finite():
        raise ValidationError(f"invalid amount: {amount!r}")
    scaled = d.scaleb(decimals)
    if scaled != scaled.to_integral_value(rounding=ROUND_DOWN):
        raise ValidationError(f"amount {amount} has more than {decimals} decimals")
    return int(scaled)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Note:
    """
    A client-held claim on one deposit.

    Frozen: the ledger swaps whole notes on transitions, so any Note a
    caller holds is an immutable view.
    """
    id: str
    secret: str
    commitment: str
    amount: str
    amount_minor: int
    leaf_index: int
    created_at: int
    transaction_ref: str
    status: NoteStatus = NoteStatus.PENDING

    @property
    def is_available(self) -> bool:
        return self.status is NoteStatus.CONFIRMED

    def with_status(self, status: NoteStatus, **changes: Any) -> "Note":
        return replace(self, status=status, **changes)

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "secret": self.secret,
            "commitment": self.commitment,
            "amount": self.amount,
            "amountMinorUnits": str(self.amount_minor),
            "leafIndex": self.leaf_index,
            "createdAt": self.created_at,
            "transactionRef": self.transaction_ref,
            "status": self.status.value,
        }

    def public_view(self) -> Dict[str, Any]:
        """Everything except the secret."""
        d = self.to_record()
        d.pop("secret")
        return d


def make_note_id(transaction_ref: str, secret: str, created_at: int) -> str:
    # secret prefix + timestamp keeps ids unique under duplicate tx refs
    return f"{transaction_ref}-{created_at}-{secret[2:10]}"


# Placeholder refs for notes whose chain tx is not known yet: recorded before
# submission, or restored from a secret backup without one.
UNSUBMITTED_PREFIX = "unsubmitted:"
RESTORED_PREFIX = "restored:"


def unsubmitted_ref(commitment: str) -> str:
    return f"{UNSUBMITTED_PREFIX}{commitment.lower()}"


def is_placeholder_ref(transaction_ref: str) -> bool:
    return transaction_ref.startswith((UNSUBMITTED_PREFIX, RESTORED_PREFIX))


__all__ = [
    "NoteStatus",
    "Note",
    "format_units",
    "parse_units",
    "now_ms",
    "make_note_id",
    "UNSUBMITTED_PREFIX",
    "RESTORED_PREFIX",
    "unsubmitted_ref",
    "is_placeholder_ref",
]
