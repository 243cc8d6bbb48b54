"""Automatic refunds of duplicate charges: detect, group, keep one, refund the rest."""

from datetime import datetime, timedelta
from typing import Callable

from pydantic import BaseModel

from app.core.audit import log_event
from app.core.config import get_settings
from app.core.exceptions import BadRequestError, NoDuplicatesFound
from app.core.logging import get_logger
from app.services import refunds as refund_service
from app.services import transaction_audit
from app.services.transaction_audit import AnnotatedTransaction
from app.storage.base import LedgerStorage

log = get_logger(__name__)

KeepPolicy = Callable[[list[AnnotatedTransaction]], AnnotatedTransaction]


def keep_earliest(group: list[AnnotatedTransaction]) -> AnnotatedTransaction:
    return min(group, key=lambda a: (a.created_at, a.sequence))


def keep_latest(group: list[AnnotatedTransaction]) -> AnnotatedTransaction:
    return max(group, key=lambda a: (a.created_at, a.sequence))


KEEP_POLICIES: dict[str, KeepPolicy] = {
    "earliest": keep_earliest,
    "latest": keep_latest,
}


def get_keep_policy(name: str | None = None) -> KeepPolicy:
    name = name or get_settings().refund_keep_policy
    try:
        return KEEP_POLICIES[name]
    except KeyError:
        raise BadRequestError(f"Unknown refund keep policy: {name}") from None


class DuplicateGroup(BaseModel):
    key: str  # description|amount|minute of the earliest member
    kept: AnnotatedTransaction
    members: list[AnnotatedTransaction]

    @property
    def refundable(self) -> list[AnnotatedTransaction]:
        return [m for m in self.members if m.id != self.kept.id]


def find_duplicate_groups(
    annotated: list[AnnotatedTransaction],
    keep_policy: KeepPolicy = keep_earliest,
    duplicate_window: timedelta | None = None,
) -> list[DuplicateGroup]:
    """
    Partition strict duplicates into groups.
    Two transactions share a group when they are linked by a chain of duplicate
    pairs (same description and amount, inside the duplicate window), so a member
    never lands in two groups even when the chain crosses a minute boundary.
    The kept member is chosen among the ones not yet refunded, so a group never ends
    up with every charge refunded.
    """
    if duplicate_window is None:
        duplicate_window = timedelta(seconds=get_settings().duplicate_window_seconds)
    by_id = {a.id: a for a in annotated}
    parent = {a.id: a.id for a in annotated if a.duplicate}

    def find(i: str) -> str:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    for a in annotated:
        if not a.duplicate:
            continue
        for other_id in a.related_transaction_ids:
            other = by_id.get(other_id)
            if other is None or not other.duplicate:
                continue
            if abs(other.created_at - a.created_at) >= duplicate_window:
                continue
            parent[find(other_id)] = find(a.id)

    components: dict[str, list[AnnotatedTransaction]] = {}
    for i in parent:
        components.setdefault(find(i), []).append(by_id[i])

    groups = []
    for members in components.values():
        members.sort(key=lambda a: (a.created_at, a.sequence))
        first = members[0]
        key = f"{first.description}|{first.amount}|{first.created_at.strftime('%Y-%m-%dT%H:%M')}"
        unrefunded = [m for m in members if not m.refunded]
        kept = keep_policy(unrefunded or members)
        groups.append(DuplicateGroup(key=key, kept=kept, members=members))
    groups.sort(key=lambda g: (g.members[0].created_at, g.members[0].sequence))
    return groups


async def find_duplicates(
    storage: LedgerStorage,
    user_id: str,
    start_time: datetime | None = None,
    end_time: datetime | None = None,
    keep_policy: KeepPolicy | None = None,
) -> list[DuplicateGroup]:
    annotated = await transaction_audit.audit(storage, user_id, start_time, end_time)
    return find_duplicate_groups(annotated, keep_policy or get_keep_policy())


async def bulk_refund_duplicates(
    storage: LedgerStorage,
    user_id: str,
    authorized_by: str,
    reason: str | None = None,
    start_time: datetime | None = None,
    end_time: datetime | None = None,
    keep_policy: KeepPolicy | None = None,
) -> refund_service.RefundResult:
    """Refund every duplicate charge except the one each group keeps, as one refund entry."""
    reason = reason or get_settings().bulk_refund_default_reason
    groups = await find_duplicates(storage, user_id, start_time, end_time, keep_policy)
    to_refund = [m.id for g in groups for m in g.refundable if not m.refunded]
    if not to_refund:
        raise NoDuplicatesFound(user_id)

    result = await refund_service.refund(
        storage,
        user_id,
        reason=reason,
        authorized_by=authorized_by,
        transaction_ids=to_refund,
        describe=lambda eligible: f"{reason} ({len(eligible)} duplicate transactions)",
    )
    log.info(
        "bulk_refund_issued",
        user_id=user_id,
        authorized_by=authorized_by,
        groups=len(groups),
        refunded_count=len(result.refunded_transaction_ids),
        amount=result.refunded_amount,
    )
    await log_event(
        storage,
        user_id,
        "bulk_refund_issued",
        "credit_ledger",
        result.refund_transaction_id,
        {
            "groups": [g.key for g in groups],
            "kept_transaction_ids": [g.kept.id for g in groups],
            "amount": result.refunded_amount,
        },
        actor_id=authorized_by,
    )
    return result
