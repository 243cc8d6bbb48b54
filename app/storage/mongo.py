from datetime import datetime
from typing import Any, Iterable

from beanie import PydanticObjectId
from beanie.operators import In, Set
from pymongo.errors import DuplicateKeyError

from app.models.audit_log import AuditLog
from app.models.credit_balance import CreditBalance
from app.models.credit_ledger import CreditLedgerEntry
from app.models.ledger import (
    CachedBalance,
    LedgerTransaction,
    NewTransaction,
    TransactionType,
    UserAccount,
)
from app.models.user import User
from app.storage.base import LedgerStorage, SequenceConflict


def _oid(value: str) -> PydanticObjectId | None:
    return PydanticObjectId(value) if PydanticObjectId.is_valid(value) else None


class MongoStorage(LedgerStorage):
    """Beanie-backed storage. Requires init_db() to have run."""

    async def get_user(self, user_id: str) -> UserAccount | None:
        oid = _oid(user_id)
        if oid is None:
            return None
        user = await User.get(oid)
        return user.to_account() if user else None

    async def create_user(self, email: str, name: str = "", role: str = "user") -> UserAccount:
        user = User(email=email, name=name, role=role)
        await user.insert()
        await self._ensure_balance_doc(user.id)
        return user.to_account()

    async def head(self, user_id: str) -> LedgerTransaction | None:
        oid = _oid(user_id)
        if oid is None:
            return None
        entry = (
            await CreditLedgerEntry.find(CreditLedgerEntry.user_id == oid)
            .sort(-CreditLedgerEntry.sequence)
            .first_or_none()
        )
        return entry.to_transaction() if entry else None

    async def insert_transaction(self, entry: NewTransaction) -> LedgerTransaction:
        doc = CreditLedgerEntry(
            user_id=PydanticObjectId(entry.user_id),
            sequence=entry.sequence,
            amount=entry.amount,
            balance_after=entry.balance_after,
            transaction_type=entry.transaction_type,
            description=entry.description,
            refunded_transaction_ids=entry.refunded_transaction_ids,
            authorized_by=entry.authorized_by,
            idempotency_key=entry.idempotency_key,
            refund_set_key=entry.refund_set_key,
            created_at=entry.created_at,
        )
        try:
            await doc.insert()
        except DuplicateKeyError as e:
            # Taken sequence or reused key; either way a retry re-reads the head
            raise SequenceConflict(entry.user_id, entry.sequence) from e
        return doc.to_transaction()

    async def find_transactions(
        self,
        user_id: str,
        *,
        ids: Iterable[str] | None = None,
        transaction_type: TransactionType | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> list[LedgerTransaction]:
        oid = _oid(user_id)
        if oid is None:
            return []
        conditions = [CreditLedgerEntry.user_id == oid]
        if ids is not None:
            oids = [o for o in (_oid(i) for i in ids) if o is not None]
            if not oids:
                return []
            conditions.append(In(CreditLedgerEntry.id, oids))
        if transaction_type is not None:
            conditions.append(CreditLedgerEntry.transaction_type == transaction_type)
        if start_time is not None:
            conditions.append(CreditLedgerEntry.created_at >= start_time)
        if end_time is not None:
            conditions.append(CreditLedgerEntry.created_at <= end_time)
        entries = await CreditLedgerEntry.find(*conditions).sort("+created_at", "+sequence").to_list()
        return [e.to_transaction() for e in entries]

    async def list_transactions(self, user_id: str, limit: int, offset: int) -> list[LedgerTransaction]:
        oid = _oid(user_id)
        if oid is None:
            return []
        entries = (
            await CreditLedgerEntry.find(CreditLedgerEntry.user_id == oid)
            .sort(-CreditLedgerEntry.sequence)
            .skip(offset)
            .limit(limit)
            .to_list()
        )
        return [e.to_transaction() for e in entries]

    async def find_by_idempotency_key(self, user_id: str, key: str) -> LedgerTransaction | None:
        oid = _oid(user_id)
        if oid is None:
            return None
        entry = await CreditLedgerEntry.find_one(
            CreditLedgerEntry.user_id == oid,
            CreditLedgerEntry.idempotency_key == key,
        )
        return entry.to_transaction() if entry else None

    async def refunded_ids(self, user_id: str, candidate_ids: Iterable[str] | None = None) -> set[str]:
        oid = _oid(user_id)
        if oid is None:
            return set()
        conditions = [
            CreditLedgerEntry.user_id == oid,
            CreditLedgerEntry.transaction_type == TransactionType.REFUND,
        ]
        candidates = set(candidate_ids) if candidate_ids is not None else None
        if candidates is not None:
            if not candidates:
                return set()
            conditions.append(In(CreditLedgerEntry.refunded_transaction_ids, list(candidates)))
        refunds = await CreditLedgerEntry.find(*conditions).to_list()
        consumed = {i for r in refunds for i in r.refunded_transaction_ids}
        return consumed & candidates if candidates is not None else consumed

    async def get_cached_balance(self, user_id: str) -> CachedBalance | None:
        oid = _oid(user_id)
        if oid is None:
            return None
        doc = await CreditBalance.find_one(CreditBalance.user_id == oid)
        if not doc:
            return None
        return CachedBalance(user_id=user_id, balance=doc.balance, sequence=doc.sequence)

    async def roll_balance_forward(self, user_id: str, balance: int, sequence: int) -> bool:
        oid = PydanticObjectId(user_id)
        await self._ensure_balance_doc(oid)
        # Conditional on sequence so a slower writer never overwrites a newer value
        result = await CreditBalance.find_one(
            CreditBalance.user_id == oid,
            CreditBalance.sequence < sequence,
        ).update(Set({CreditBalance.balance: balance, CreditBalance.sequence: sequence}))
        return bool(result and result.modified_count)

    async def record_event(
        self,
        user_id: str | None,
        actor_id: str | None,
        event_type: str,
        entity_type: str,
        entity_id: str | None,
        metadata: dict[str, Any],
    ) -> None:
        await AuditLog(
            user_id=user_id,
            actor_id=actor_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata,
        ).insert()

    async def _ensure_balance_doc(self, user_id: PydanticObjectId) -> None:
        if await CreditBalance.find_one(CreditBalance.user_id == user_id):
            return
        try:
            await CreditBalance(user_id=user_id, balance=0, sequence=0).insert()
        except DuplicateKeyError:
            pass  # created concurrently
