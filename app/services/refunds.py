"""Compensating refunds for spend transactions."""

from typing import Callable

from pydantic import BaseModel, Field

from app.core.audit import log_event
from app.core.exceptions import InvalidAmount, NoEligibleTransactions
from app.core.logging import get_logger
from app.core.security import refund_idempotency_key
from app.models.ledger import LedgerTransaction, TransactionType
from app.services import credits as credits_service
from app.storage.base import LedgerStorage

log = get_logger(__name__)


class RefundResult(BaseModel):
    success: bool
    refunded_amount: int = 0
    refund_transaction_id: str | None = None
    refunded_transaction_ids: list[str] = Field(default_factory=list)
    error: str | None = None
    code: str | None = None


async def _eligible_spends(storage: LedgerStorage, user_id: str, transaction_ids: list[str]) -> list[LedgerTransaction]:
    """Requested spends owned by the user and not yet consumed by a refund."""
    spends = await storage.find_transactions(
        user_id,
        ids=transaction_ids,
        transaction_type=TransactionType.SPEND,
    )
    consumed = await storage.refunded_ids(user_id, [t.id for t in spends])
    return [t for t in spends if t.id not in consumed]


async def refund(
    storage: LedgerStorage,
    user_id: str,
    reason: str,
    authorized_by: str,
    transaction_ids: list[str] | None = None,
    amount: int | None = None,
    idempotency_key: str | None = None,
    describe: Callable[[list[LedgerTransaction]], str] | None = None,
) -> RefundResult:
    """
    Credit the user back, either for specific spend transactions or a fixed amount.

    With transaction_ids the amount is the sum of |amount| of the eligible ones and
    the refund entry records their ids, so they can never be refunded again. The
    eligibility check runs inside the ledger's retry loop: if another refund commits
    first, this one re-checks against it. Exactly one ledger entry is written.
    describe, when given, turns the eligible spends of the committing attempt into
    the reason text.
    """
    await credits_service.require_user(storage, user_id)
    description = f"{credits_service.REFUND_DESCRIPTION_PREFIX}{reason}"

    if transaction_ids:
        requested = list(dict.fromkeys(transaction_ids))

        async def build(balance: int) -> credits_service.EntryDraft:
            eligible = await _eligible_spends(storage, user_id, requested)
            if not eligible:
                raise NoEligibleTransactions(requested)
            ids = [t.id for t in eligible]
            text = describe(eligible) if describe else reason
            return credits_service.EntryDraft(
                amount=sum(abs(t.amount) for t in eligible),
                transaction_type=TransactionType.REFUND,
                description=f"{credits_service.REFUND_DESCRIPTION_PREFIX}{text}",
                refunded_transaction_ids=ids,
                refund_set_key=refund_idempotency_key(ids),
            )
    elif amount is not None:
        if amount <= 0:
            raise InvalidAmount("Refund amount must be positive", amount=amount)

        async def build(balance: int) -> credits_service.EntryDraft:
            return credits_service.EntryDraft(
                amount=amount,
                transaction_type=TransactionType.REFUND,
                description=description,
            )
    else:
        raise InvalidAmount("Either transaction_ids or amount must be provided")

    txn = await credits_service.commit(
        storage,
        user_id,
        build,
        authorized_by=authorized_by,
        idempotency_key=idempotency_key,
    )
    log.info(
        "refund_issued",
        user_id=user_id,
        authorized_by=authorized_by,
        refund_transaction_id=txn.id,
        amount=txn.amount,
        refunded_count=len(txn.refunded_transaction_ids),
    )
    await log_event(
        storage,
        user_id,
        "refund_issued",
        "credit_ledger",
        txn.id,
        {
            "amount": txn.amount,
            "reason": reason,
            "refunded_transaction_ids": txn.refunded_transaction_ids,
        },
        actor_id=authorized_by,
    )
    return RefundResult(
        success=True,
        refunded_amount=txn.amount,
        refund_transaction_id=txn.id,
        refunded_transaction_ids=txn.refunded_transaction_ids,
    )
