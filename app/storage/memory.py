import asyncio
from datetime import datetime
from typing import Any, Iterable

from bson import ObjectId

from app.models.ledger import (
    CachedBalance,
    LedgerTransaction,
    NewTransaction,
    TransactionType,
    UserAccount,
)
from app.storage.base import LedgerStorage, SequenceConflict


class MemoryStorage(LedgerStorage):
    """Process-local backend for development and tests.

    Every call yields to the event loop once, the way a network round-trip would,
    so concurrent coroutines interleave between reads and writes.
    """

    def __init__(self) -> None:
        self.users: dict[str, UserAccount] = {}
        self.transactions: dict[str, list[LedgerTransaction]] = {}
        self.balances: dict[str, CachedBalance] = {}
        self.events: list[dict[str, Any]] = []

    async def get_user(self, user_id: str) -> UserAccount | None:
        await asyncio.sleep(0)
        return self.users.get(user_id)

    async def create_user(self, email: str, name: str = "", role: str = "user") -> UserAccount:
        await asyncio.sleep(0)
        user = UserAccount(id=str(ObjectId()), email=email, name=name, role=role)
        self.users[user.id] = user
        self.transactions[user.id] = []
        self.balances[user.id] = CachedBalance(user_id=user.id)
        return user

    async def head(self, user_id: str) -> LedgerTransaction | None:
        await asyncio.sleep(0)
        log = self.transactions.get(user_id) or []
        return log[-1] if log else None

    async def insert_transaction(self, entry: NewTransaction) -> LedgerTransaction:
        await asyncio.sleep(0)
        log = self.transactions.setdefault(entry.user_id, [])
        for t in log:
            # Mirrors the unique indexes of credit_ledger
            if (
                t.sequence == entry.sequence
                or (entry.idempotency_key and t.idempotency_key == entry.idempotency_key)
                or (entry.refund_set_key and t.refund_set_key == entry.refund_set_key)
            ):
                raise SequenceConflict(entry.user_id, entry.sequence)
        txn = LedgerTransaction(id=str(ObjectId()), **entry.model_dump())
        log.append(txn)
        log.sort(key=lambda t: t.sequence)
        return txn

    async def find_transactions(
        self,
        user_id: str,
        *,
        ids: Iterable[str] | None = None,
        transaction_type: TransactionType | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> list[LedgerTransaction]:
        await asyncio.sleep(0)
        wanted = set(ids) if ids is not None else None
        out = []
        for t in self.transactions.get(user_id) or []:
            if wanted is not None and t.id not in wanted:
                continue
            if transaction_type is not None and t.transaction_type != transaction_type:
                continue
            if start_time is not None and t.created_at < start_time:
                continue
            if end_time is not None and t.created_at > end_time:
                continue
            out.append(t)
        return sorted(out, key=lambda t: (t.created_at, t.sequence))

    async def list_transactions(self, user_id: str, limit: int, offset: int) -> list[LedgerTransaction]:
        await asyncio.sleep(0)
        newest_first = list(reversed(self.transactions.get(user_id) or []))
        return newest_first[offset:offset + limit]

    async def find_by_idempotency_key(self, user_id: str, key: str) -> LedgerTransaction | None:
        await asyncio.sleep(0)
        for t in self.transactions.get(user_id) or []:
            if t.idempotency_key == key:
                return t
        return None

    async def refunded_ids(self, user_id: str, candidate_ids: Iterable[str] | None = None) -> set[str]:
        await asyncio.sleep(0)
        consumed: set[str] = set()
        for t in self.transactions.get(user_id) or []:
            if t.transaction_type == TransactionType.REFUND:
                consumed.update(t.refunded_transaction_ids)
        if candidate_ids is not None:
            consumed &= set(candidate_ids)
        return consumed

    async def get_cached_balance(self, user_id: str) -> CachedBalance | None:
        await asyncio.sleep(0)
        return self.balances.get(user_id)

    async def roll_balance_forward(self, user_id: str, balance: int, sequence: int) -> bool:
        await asyncio.sleep(0)
        current = self.balances.get(user_id)
        if current is not None and current.sequence >= sequence:
            return False
        self.balances[user_id] = CachedBalance(user_id=user_id, balance=balance, sequence=sequence)
        return True

    async def record_event(
        self,
        user_id: str | None,
        actor_id: str | None,
        event_type: str,
        entity_type: str,
        entity_id: str | None,
        metadata: dict[str, Any],
    ) -> None:
        await asyncio.sleep(0)
        self.events.append(
            {
                "user_id": user_id,
                "actor_id": actor_id,
                "event_type": event_type,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "metadata": metadata,
                "created_at": datetime.utcnow(),
            }
        )
