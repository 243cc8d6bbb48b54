"""Coin ledger: append-only transactions and the cached per-user balance.

Every balance-affecting write goes through commit(). It reads the head of the
user's log, computes the next entry from it and inserts it under the next
sequence number. The storage backend rejects a second entry for the same
(user_id, sequence), so two writers that read the same head cannot both
commit: the loser re-reads and tries again. The cached balance is rolled
forward only after the insert and is never used to compute a new balance.
"""

from datetime import datetime
from typing import Awaitable, Callable

from pydantic import BaseModel, Field

from app.core.config import get_settings
from app.core.exceptions import (
    BadRequestError,
    ConcurrentModification,
    InsufficientBalance,
    InvalidAmount,
    InvalidTransactionType,
    UserNotFound,
)
from app.core.logging import get_logger
from app.models.ledger import LedgerTransaction, NewTransaction, TransactionType, UserAccount
from app.storage.base import LedgerStorage, SequenceConflict

log = get_logger(__name__)

REFUND_DESCRIPTION_PREFIX = "Refund: "


def utcnow() -> datetime:
    return datetime.utcnow()


class EntryDraft(BaseModel):
    """What a writer wants to append, decided against the current balance."""

    amount: int
    transaction_type: TransactionType
    description: str
    refunded_transaction_ids: list[str] = Field(default_factory=list)
    refund_set_key: str | None = None


EntryBuilder = Callable[[int], Awaitable[EntryDraft]]


class ReconcileReport(BaseModel):
    user_id: str
    transaction_count: int
    log_balance: int
    head_balance_after: int
    cached_balance: int | None
    cached_sequence: int | None
    head_sequence: int
    consistent: bool
    repaired: bool = False


def parse_transaction_type(value: str | TransactionType) -> TransactionType:
    try:
        return TransactionType(value)
    except ValueError:
        raise InvalidTransactionType(str(value)) from None


def _validate_draft(draft: EntryDraft, balance: int) -> None:
    if draft.amount == 0:
        raise InvalidAmount("Amount must be non-zero", amount=draft.amount)
    if draft.transaction_type == TransactionType.REFUND:
        if draft.amount < 0:
            raise InvalidAmount("Refund amount must be positive", amount=draft.amount)
        if not draft.refunded_transaction_ids and not draft.description.startswith(REFUND_DESCRIPTION_PREFIX):
            raise BadRequestError("Refund must reference the transactions it compensates")
    if draft.transaction_type == TransactionType.SPEND:
        if draft.amount > 0:
            raise InvalidAmount("Spend amount must be negative", amount=draft.amount)
        if balance + draft.amount < 0:
            raise InsufficientBalance(balance=balance, amount=draft.amount)


async def _roll_cache(storage: LedgerStorage, user_id: str, balance: int, sequence: int) -> bool:
    """
    Move the cached balance up to sequence. Runs after the entry is committed, so a
    failure is logged rather than raised; the next get_balance or reconcile repairs it.
    """
    try:
        return await storage.roll_balance_forward(user_id, balance, sequence)
    except Exception:
        log.exception("balance_cache_update_failed", user_id=user_id, balance=balance, sequence=sequence)
        return False


async def require_user(storage: LedgerStorage, user_id: str) -> UserAccount:
    user = await storage.get_user(user_id)
    if not user:
        raise UserNotFound(user_id)
    return user


async def commit(
    storage: LedgerStorage,
    user_id: str,
    build: EntryBuilder,
    *,
    authorized_by: str | None = None,
    idempotency_key: str | None = None,
) -> LedgerTransaction:
    """
    Append one entry produced by build(current_balance), serialized per user.
    build runs again on every retry, so any precondition it checks is evaluated
    against the head the entry is actually committed on top of.
    If idempotency_key matches an existing entry, return it without applying again.
    """
    await require_user(storage, user_id)
    attempts = get_settings().ledger_max_retries
    for attempt in range(1, attempts + 1):
        head = await storage.head(user_id)
        # Checked after the head read: an entry with this key inserted since then
        # holds the sequence this attempt is about to take, so the insert conflicts.
        if idempotency_key:
            existing = await storage.find_by_idempotency_key(user_id, idempotency_key)
            if existing:
                log.info("ledger_idempotent_replay", user_id=user_id, transaction_id=existing.id)
                return existing

        balance = head.balance_after if head else 0
        draft = await build(balance)
        _validate_draft(draft, balance)

        created_at = utcnow()
        if head and created_at < head.created_at:
            created_at = head.created_at
        entry = NewTransaction(
            user_id=user_id,
            sequence=(head.sequence if head else 0) + 1,
            amount=draft.amount,
            transaction_type=draft.transaction_type,
            description=draft.description,
            created_at=created_at,
            balance_after=balance + draft.amount,
            refunded_transaction_ids=draft.refunded_transaction_ids,
            authorized_by=authorized_by,
            idempotency_key=idempotency_key,
            refund_set_key=draft.refund_set_key,
        )
        try:
            txn = await storage.insert_transaction(entry)
        except SequenceConflict:
            log.info("ledger_append_conflict", user_id=user_id, sequence=entry.sequence, attempt=attempt)
            continue

        await _roll_cache(storage, user_id, txn.balance_after, txn.sequence)
        log.info(
            "ledger_append",
            user_id=user_id,
            transaction_id=txn.id,
            transaction_type=txn.transaction_type.value,
            amount=txn.amount,
            balance_after=txn.balance_after,
            sequence=txn.sequence,
        )
        return txn
    raise ConcurrentModification(user_id, attempts)


async def append(
    storage: LedgerStorage,
    user_id: str,
    amount: int,
    transaction_type: str | TransactionType,
    description: str,
    *,
    authorized_by: str | None = None,
    refunded_transaction_ids: list[str] | None = None,
    idempotency_key: str | None = None,
) -> LedgerTransaction:
    """Append a signed transaction and update the balance atomically."""
    ttype = parse_transaction_type(transaction_type)
    if amount == 0:
        raise InvalidAmount("Amount must be non-zero", amount=amount)
    draft = EntryDraft(
        amount=amount,
        transaction_type=ttype,
        description=description,
        refunded_transaction_ids=refunded_transaction_ids or [],
    )

    async def build(balance: int) -> EntryDraft:
        return draft

    return await commit(
        storage,
        user_id,
        build,
        authorized_by=authorized_by,
        idempotency_key=idempotency_key,
    )


async def get_balance(storage: LedgerStorage, user_id: str) -> int:
    """Return current balance for user (0 before the first entry).

    Read from the head of the log; a cache left behind by a failed update is
    rolled forward on the way.
    """
    await require_user(storage, user_id)
    head = await storage.head(user_id)
    if head is None:
        return 0
    cached = await storage.get_cached_balance(user_id)
    if cached is None or cached.sequence < head.sequence:
        await _roll_cache(storage, user_id, head.balance_after, head.sequence)
    return head.balance_after


async def list_entries(storage: LedgerStorage, user_id: str, limit: int = 50, offset: int = 0) -> list[LedgerTransaction]:
    await require_user(storage, user_id)
    return await storage.list_transactions(user_id, limit, offset)


async def reconcile(storage: LedgerStorage, user_id: str, repair: bool = True) -> ReconcileReport:
    """
    Replay the log and compare it with the cached balance.
    A cache that lags the log (writer stopped between insert and cache update)
    is rolled forward when repair is set. A log whose sum disagrees with its own
    head is reported but never touched.
    """
    await require_user(storage, user_id)
    transactions = await storage.find_transactions(user_id)
    log_balance = sum(t.amount for t in transactions)
    head = max(transactions, key=lambda t: t.sequence, default=None)
    head_balance_after = head.balance_after if head else 0
    head_sequence = head.sequence if head else 0
    cached = await storage.get_cached_balance(user_id)

    report = ReconcileReport(
        user_id=user_id,
        transaction_count=len(transactions),
        log_balance=log_balance,
        head_balance_after=head_balance_after,
        cached_balance=cached.balance if cached else None,
        cached_sequence=cached.sequence if cached else None,
        head_sequence=head_sequence,
        consistent=(
            log_balance == head_balance_after
            and (cached.balance if cached else 0) == log_balance
            and (cached.sequence if cached else 0) == head_sequence
        ),
    )
    if report.consistent:
        return report

    log.warning(
        "balance_drift_detected",
        user_id=user_id,
        log_balance=log_balance,
        head_balance_after=head_balance_after,
        cached_balance=report.cached_balance,
    )
    lagging = cached is None or cached.sequence < head_sequence
    if repair and head and lagging and log_balance == head_balance_after:
        report.repaired = await storage.roll_balance_forward(user_id, head_balance_after, head_sequence)
        log.info("balance_reconciled", user_id=user_id, balance=head_balance_after, sequence=head_sequence)
    return report
