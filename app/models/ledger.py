"""Storage-agnostic ledger records shared by services and storage backends."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class TransactionType(str, Enum):
    EARN = "earn"
    SPEND = "spend"
    PURCHASE = "purchase"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


class LedgerTransaction(BaseModel):
    """A committed ledger entry. Immutable once written."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    sequence: int  # 1-based, unique per user; also the optimistic version
    amount: int  # positive = credit, negative = debit
    transaction_type: TransactionType
    description: str
    created_at: datetime
    balance_after: int
    refunded_transaction_ids: list[str] = Field(default_factory=list)
    authorized_by: str | None = None
    idempotency_key: str | None = None  # caller-supplied, replayed instead of re-applied
    refund_set_key: str | None = None  # derived from refunded_transaction_ids


class NewTransaction(BaseModel):
    """Entry fields computed by the ledger before the insert."""

    user_id: str
    sequence: int
    amount: int
    transaction_type: TransactionType
    description: str
    created_at: datetime
    balance_after: int
    refunded_transaction_ids: list[str] = Field(default_factory=list)
    authorized_by: str | None = None
    idempotency_key: str | None = None  # caller-supplied, replayed instead of re-applied
    refund_set_key: str | None = None  # derived from refunded_transaction_ids


class CachedBalance(BaseModel):
    user_id: str
    balance: int = 0
    sequence: int = 0  # last transaction folded into the cache


class UserAccount(BaseModel):
    id: str
    email: str
    name: str = ""
    role: str = "user"  # "user" | "admin"
    session_version: int = 0
