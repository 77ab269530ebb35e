# database/records.py
"""
Shape of the durable ledger record (the persisted state and the backup file):

    {"deposits": [Note...], "totalBalance": "<minor units>", "lastSyncBlock": int}

Validation happens here, before anything touches a live ledger.
"""
from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, conint, constr, field_validator

HEX32 = r"^0x[0-9a-fA-F]{64}$"


def _minor_units(cls, v):
    # stored as a decimal string so large values survive JSON readers
    if isinstance(v, str) and v.strip().isdigit():
        return int(v)
    if isinstance(v, bool) or not isinstance(v, int):
        raise ValueError("amountMinorUnits must be an integer or digit string")
    return v


class NoteRecord(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    id: constr(min_length=1)
    secret: constr(pattern=HEX32)
    commitment: constr(pattern=HEX32)
    amount: str = Field("", description="Display amount in major units.")
    amountMinorUnits: conint(gt=0)
    leafIndex: conint(ge=-1) = Field(-1, validation_alias=AliasChoices("leafIndex", "chainLeafIndex"))
    createdAt: conint(ge=0) = 0
    transactionRef: constr(min_length=1)
    status: Literal["pending", "confirmed", "spent"]

    _amount = field_validator("amountMinorUnits", mode="before")(_minor_units)


class LedgerRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    deposits: List[NoteRecord]
    totalBalance: str = "0"
    lastSyncBlock: conint(ge=0) = 0

    @field_validator("deposits", mode="before")
    @classmethod
    def _must_be_list(cls, v):
        if not isinstance(v, list):
            raise ValueError("deposits must be an array")
        return v

    @field_validator("totalBalance", mode="before")
    @classmethod
    def _balance_as_str(cls, v):
        if isinstance(v, bool):
            raise ValueError("totalBalance must be a string")
        return str(v) if isinstance(v, int) else v


class SecretBackupRecord(BaseModel):
    """One note's recovery blob: enough to rebuild the note from its secret."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    secret: constr(pattern=HEX32)
    amountMinorUnits: conint(gt=0) = Field(..., validation_alias=AliasChoices("amountMinorUnits", "amount"))
    leafIndex: conint(ge=-1) = Field(-1, validation_alias=AliasChoices("leafIndex", "chainLeafIndex"))
    commitment: Optional[constr(pattern=HEX32)] = None
    transactionRef: Optional[constr(min_length=1)] = None

    _amount = field_validator("amountMinorUnits", mode="before")(_minor_units)


def empty_record() -> dict:
    return {"deposits": [], "totalBalance": "0", "lastSyncBlock": 0}


__all__ = ["NoteRecord", "LedgerRecord", "SecretBackupRecord", "empty_record"]
