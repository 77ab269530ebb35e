from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, conint, constr, model_validator

ADDRESS_PATTERN = r"^0x[0-9a-fA-F]{40}$"


class _Base(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, from_attributes=True, extra="ignore")


class Ok(_Base):
    status: str = Field("ok", description="Fixed OK status for successful responses.")


class _AmountReq(_Base):
    amount: Optional[constr(pattern=r"^\d+(\.\d+)?$")] = Field(
        None, description="Amount in display units, e.g. '0.5'."
    )
    amount_minor: Optional[conint(gt=0)] = Field(None, description="Amount in minor units.")

    @model_validator(mode="after")
    def _exactly_one_amount(self):
        if (self.amount is None) == (self.amount_minor is None):
            raise ValueError("give exactly one of amount / amount_minor")
        return self


class NoteInfo(_Base):
    """A note as shown to clients. The secret never leaves the service."""
    id: str
    commitment: str
    amount: str = Field(..., description="Amount in display units.")
    amountMinorUnits: str = Field(..., description="Amount in minor units (decimal string).")
    leafIndex: int = Field(..., description="Position in the commitment tree, -1 while pending.")
    createdAt: int
    transactionRef: str
    status: Literal["pending", "confirmed", "spent"]


class NotesRes(Ok):
    notes: List[NoteInfo]
    total_balance: str = Field(..., description="Confirmed balance in display units.")
    total_balance_minor: str = Field(..., description="Confirmed balance in minor units.")


class BalanceRes(Ok):
    total_balance: str
    total_balance_minor: str
    available_notes: conint(ge=0)
    last_sync_block: conint(ge=0)


class DepositReq(_AmountReq):
    wait: bool = Field(True, description="Wait for the deposit receipt before answering.")


class DepositRes(Ok):
    note: NoteInfo


class WithdrawReq(_AmountReq):
    recipient: constr(pattern=ADDRESS_PATTERN) = Field(..., description="0x-prefixed 20-byte address.")
    note_id: Optional[str] = Field(None, description="Spend this note; otherwise the smallest covering note.")


class WithdrawRes(Ok):
    noteId: str
    amountMinorUnits: str
    recipient: str
    nullifier: str
    stateRoot: str
    transactionRef: str
    block: int


class SessionRes(Ok):
    session: Optional[Dict[str, Any]] = Field(None, description="Snapshot of the current proof session.")


class CancelRes(Ok):
    cancelled: bool


class BackupImportReq(_Base):
    backup: Dict[str, Any] = Field(..., description="Exported ledger record, or a sealed backup.")
    passphrase: Optional[str] = Field(None, description="Required for sealed backups.")


class BackupImportRes(Ok):
    notes: conint(ge=0)
    added: conint(ge=0) = Field(0, description="Notes new to this ledger.")
    updated: conint(ge=0) = Field(0, description="Notes moved forward by the backup.")
    total_balance_minor: str


class SecretRestoreReq(_Base):
    backup: Dict[str, Any] = Field(..., description="One note's secret backup: secret, amount, optional leafIndex.")


class HistoryRes(Ok):
    events: List[Dict[str, Any]]


class MetricRow(_Base):
    epoch: conint(ge=0) = Field(..., description="Minute-bucket epoch.")
    deposit_count: conint(ge=0)
    spent_count: conint(ge=0)
    failed_count: conint(ge=0)
    updated_at: str = Field(..., description="ISO-8601 timestamp (UTC).")


class ErrorRes(_Base):
    error: str
    detail: str
    stage: Optional[str] = None
