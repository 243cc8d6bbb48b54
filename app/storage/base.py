from abc import ABC, abstractmethod
from datetime import datetime
from functools import lru_cache
from typing import Any, Iterable

from app.core.config import get_settings
from app.models.ledger import (
    CachedBalance,
    LedgerTransaction,
    NewTransaction,
    TransactionType,
    UserAccount,
)


class SequenceConflict(Exception):
    """Another writer already committed this (user_id, sequence)."""

    def __init__(self, user_id: str, sequence: int):
        self.user_id = user_id
        self.sequence = sequence
        super().__init__(f"sequence {sequence} already taken for user {user_id}")


class LedgerStorage(ABC):
    """Persistence for users, the per-user transaction log and the cached balance.

    Backends must reject a second entry with the same (user_id, sequence), or the same
    non-null idempotency_key or refund_set_key for a user, by raising SequenceConflict;
    the ledger relies on that to serialize concurrent appends.
    """

    @abstractmethod
    async def get_user(self, user_id: str) -> UserAccount | None:
        ...

    @abstractmethod
    async def create_user(self, email: str, name: str = "", role: str = "user") -> UserAccount:
        """Insert an account together with its zero balance record."""
        ...

    @abstractmethod
    async def head(self, user_id: str) -> LedgerTransaction | None:
        """Most recent transaction (highest sequence) for the user."""
        ...

    @abstractmethod
    async def insert_transaction(self, entry: NewTransaction) -> LedgerTransaction:
        """Commit one entry; raise SequenceConflict if the sequence or a key is taken."""
        ...

    @abstractmethod
    async def find_transactions(
        self,
        user_id: str,
        *,
        ids: Iterable[str] | None = None,
        transaction_type: TransactionType | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> list[LedgerTransaction]:
        """Matching transactions ordered by (created_at, sequence); time bounds inclusive."""
        ...

    @abstractmethod
    async def list_transactions(self, user_id: str, limit: int, offset: int) -> list[LedgerTransaction]:
        """Newest first."""
        ...

    @abstractmethod
    async def find_by_idempotency_key(self, user_id: str, key: str) -> LedgerTransaction | None:
        ...

    @abstractmethod
    async def refunded_ids(self, user_id: str, candidate_ids: Iterable[str] | None = None) -> set[str]:
        """Ids referenced by refund entries, optionally restricted to candidate_ids."""
        ...

    @abstractmethod
    async def get_cached_balance(self, user_id: str) -> CachedBalance | None:
        ...

    @abstractmethod
    async def roll_balance_forward(self, user_id: str, balance: int, sequence: int) -> bool:
        """Store balance if the cache holds an older sequence; return True if updated."""
        ...

    @abstractmethod
    async def record_event(
        self,
        user_id: str | None,
        actor_id: str | None,
        event_type: str,
        entity_type: str,
        entity_id: str | None,
        metadata: dict[str, Any],
    ) -> None:
        ...


@lru_cache
def get_storage() -> LedgerStorage:
    settings = get_settings()
    if settings.storage_backend == "memory":
        from app.storage.memory import MemoryStorage
        return MemoryStorage()
    from app.storage.mongo import MongoStorage
    return MongoStorage()
