from datetime import datetime

from beanie import Document, PydanticObjectId
from pydantic import Field
from pymongo import ASCENDING, DESCENDING, IndexModel

from app.models.ledger import LedgerTransaction, TransactionType


class CreditLedgerEntry(Document):
    user_id: PydanticObjectId
    sequence: int  # per-user version; the unique index below serializes appends
    amount: int  # positive = credit, negative = debit
    balance_after: int
    transaction_type: TransactionType
    description: str
    refunded_transaction_ids: list[str] = Field(default_factory=list)
    authorized_by: str | None = None
    idempotency_key: str | None = None
    refund_set_key: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "credit_ledger"
        indexes = [
            IndexModel([("user_id", ASCENDING), ("sequence", ASCENDING)], unique=True),
            IndexModel([("user_id", ASCENDING), ("transaction_type", ASCENDING), ("created_at", DESCENDING)]),
            IndexModel([("user_id", ASCENDING), ("refunded_transaction_ids", ASCENDING)]),
            # Keys are stored as null when absent, so uniqueness applies to strings only
            IndexModel(
                [("user_id", ASCENDING), ("idempotency_key", ASCENDING)],
                unique=True,
                partialFilterExpression={"idempotency_key": {"$type": "string"}},
            ),
            IndexModel(
                [("user_id", ASCENDING), ("refund_set_key", ASCENDING)],
                unique=True,
                partialFilterExpression={"refund_set_key": {"$type": "string"}},
            ),
        ]

    def to_transaction(self) -> LedgerTransaction:
        return LedgerTransaction(
            id=str(self.id),
            user_id=str(self.user_id),
            sequence=self.sequence,
            amount=self.amount,
            transaction_type=self.transaction_type,
            description=self.description,
            created_at=self.created_at,
            balance_after=self.balance_after,
            refunded_transaction_ids=list(self.refunded_transaction_ids),
            authorized_by=self.authorized_by,
            idempotency_key=self.idempotency_key,
            refund_set_key=self.refund_set_key,
        )
