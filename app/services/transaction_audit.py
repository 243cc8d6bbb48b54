"""Duplicate and suspicious spend detection.

annotate() is a pure function over a snapshot of transactions; audit() loads the
snapshot and adds refund state. Annotations are never stored, so the rules here
can change without migrating data.
"""

from datetime import datetime, timedelta, timezone
from typing import Iterable

from pydantic import BaseModel, Field

from app.core.config import get_settings
from app.models.ledger import LedgerTransaction, TransactionType
from app.services.credits import require_user
from app.storage.base import LedgerStorage


def as_naive_utc(value: datetime | None) -> datetime | None:
    """Stored timestamps are naive UTC; convert aware bounds before comparing."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class AnnotatedTransaction(BaseModel):
    id: str
    user_id: str
    sequence: int
    amount: int
    transaction_type: TransactionType
    description: str
    created_at: datetime
    balance_after: int
    suspicious: bool = False
    duplicate: bool = False
    related_transaction_ids: list[str] = Field(default_factory=list)
    refunded: bool = False


def _same_charge(a: LedgerTransaction, b: LedgerTransaction) -> bool:
    return a.id != b.id and a.description == b.description and a.amount == b.amount


def annotate(
    transactions: Iterable[LedgerTransaction],
    duplicate_window: timedelta,
    suspicious_window: timedelta,
) -> list[AnnotatedTransaction]:
    """
    Flag repeats of the same charge.
    duplicate: another transaction with identical description and amount less than
    duplicate_window apart. suspicious: the same within suspicious_window (every
    duplicate is also suspicious). related_transaction_ids lists every sibling inside
    the wider window, in time order.
    """
    ordered = sorted(transactions, key=lambda t: (t.created_at, t.sequence))
    wide = max(duplicate_window, suspicious_window)
    results = []
    for t in ordered:
        duplicate = False
        related = []
        for other in ordered:
            if not _same_charge(t, other):
                continue
            gap = abs(other.created_at - t.created_at)
            if gap < duplicate_window:
                duplicate = True
            if gap < wide:
                related.append(other.id)
        results.append(
            AnnotatedTransaction(
                id=t.id,
                user_id=t.user_id,
                sequence=t.sequence,
                amount=t.amount,
                transaction_type=t.transaction_type,
                description=t.description,
                created_at=t.created_at,
                balance_after=t.balance_after,
                duplicate=duplicate,
                suspicious=bool(related),
                related_transaction_ids=related,
            )
        )
    return results


async def consumed_transaction_ids(
    storage: LedgerStorage,
    user_id: str,
    candidate_ids: Iterable[str] | None = None,
) -> set[str]:
    """Ids already compensated by a refund entry."""
    return await storage.refunded_ids(user_id, candidate_ids)


async def audit(
    storage: LedgerStorage,
    user_id: str,
    start_time: datetime | None = None,
    end_time: datetime | None = None,
) -> list[AnnotatedTransaction]:
    """Annotate the user's spend transactions in [start_time, end_time]. Read-only."""
    await require_user(storage, user_id)
    settings = get_settings()
    spends = await storage.find_transactions(
        user_id,
        transaction_type=TransactionType.SPEND,
        start_time=as_naive_utc(start_time),
        end_time=as_naive_utc(end_time),
    )
    annotated = annotate(
        spends,
        duplicate_window=timedelta(seconds=settings.duplicate_window_seconds),
        suspicious_window=timedelta(seconds=settings.suspicious_window_seconds),
    )
    if not annotated:
        return annotated
    refunded = await consumed_transaction_ids(storage, user_id, [a.id for a in annotated])
    for a in annotated:
        a.refunded = a.id in refunded
    return annotated


def summarize(annotated: list[AnnotatedTransaction]) -> dict:
    """Counts and coin totals for the operator view."""
    flagged = [a for a in annotated if a.suspicious or a.duplicate]
    return {
        "total": len(annotated),
        "suspicious": sum(1 for a in annotated if a.suspicious),
        "duplicate": sum(1 for a in annotated if a.duplicate),
        "flagged_amount": sum(abs(a.amount) for a in flagged if not a.refunded),
    }
