import asyncio

import pytest

from app.core.exceptions import InvalidAmount, NoEligibleTransactions, UserNotFound
from app.core.security import refund_idempotency_key
from app.models.ledger import TransactionType
from app.services import credits as credits_service
from app.services import refunds as refund_service

pytestmark = pytest.mark.asyncio


async def _funded_spends(storage, user, clock, *amounts):
    await credits_service.append(storage, user.id, 100, "purchase", "Coin pack")
    spends = []
    for amount in amounts:
        clock.advance(5)
        spends.append(await credits_service.append(storage, user.id, amount, "spend", "Unlock prospect"))
    return spends


async def test_refund_selected_spends(storage, user, admin, clock):
    a, b, c = await _funded_spends(storage, user, clock, -3, -3, -20)
    assert await credits_service.get_balance(storage, user.id) == 74

    result = await refund_service.refund(storage, user.id, "double charge", admin.id, transaction_ids=[a.id, c.id])

    assert result.success
    assert result.refunded_amount == 23
    assert sorted(result.refunded_transaction_ids) == sorted([a.id, c.id])
    assert await credits_service.get_balance(storage, user.id) == 97

    refund_txn = (await storage.find_transactions(user.id, ids=[result.refund_transaction_id]))[0]
    assert refund_txn.transaction_type == TransactionType.REFUND
    assert refund_txn.description == "Refund: double charge"
    assert refund_txn.authorized_by == admin.id
    assert refund_txn.refund_set_key.startswith("refund_")
    assert refund_txn.idempotency_key is None


async def test_refund_is_at_most_what_was_spent(storage, user, admin, clock):
    (a,) = await _funded_spends(storage, user, clock, -3)
    result = await refund_service.refund(storage, user.id, "oops", admin.id, transaction_ids=[a.id, a.id])
    assert result.refunded_amount == 3
    assert await credits_service.get_balance(storage, user.id) == 100


async def test_same_spend_cannot_be_refunded_twice(storage, user, admin, clock):
    (a,) = await _funded_spends(storage, user, clock, -3)
    await refund_service.refund(storage, user.id, "first", admin.id, transaction_ids=[a.id])
    with pytest.raises(NoEligibleTransactions) as exc_info:
        await refund_service.refund(storage, user.id, "second", admin.id, transaction_ids=[a.id])
    assert exc_info.value.details["requested_ids"] == [a.id]
    assert await credits_service.get_balance(storage, user.id) == 100


async def test_partial_overlap_refunds_only_new_ids(storage, user, admin, clock):
    a, b = await _funded_spends(storage, user, clock, -3, -5)
    await refund_service.refund(storage, user.id, "first", admin.id, transaction_ids=[a.id])
    result = await refund_service.refund(storage, user.id, "second", admin.id, transaction_ids=[a.id, b.id])
    assert result.refunded_amount == 5
    assert result.refunded_transaction_ids == [b.id]
    assert await credits_service.get_balance(storage, user.id) == 100


async def test_only_own_spends_are_eligible(storage, user, admin, clock):
    (a,) = await _funded_spends(storage, user, clock, -3)
    purchase = (await storage.find_transactions(user.id, transaction_type=TransactionType.PURCHASE))[0]

    with pytest.raises(NoEligibleTransactions):
        await refund_service.refund(storage, admin.id, "wrong user", admin.id, transaction_ids=[a.id])
    with pytest.raises(NoEligibleTransactions):
        await refund_service.refund(storage, user.id, "not a spend", admin.id, transaction_ids=[purchase.id])
    with pytest.raises(NoEligibleTransactions):
        await refund_service.refund(storage, user.id, "unknown", admin.id, transaction_ids=["nope"])
    assert await credits_service.get_balance(storage, user.id) == 97


async def test_refund_fixed_amount(storage, user, admin):
    result = await refund_service.refund(storage, user.id, "goodwill", admin.id, amount=15)
    assert result.success
    assert result.refunded_amount == 15
    assert result.refunded_transaction_ids == []
    assert await credits_service.get_balance(storage, user.id) == 15


async def test_refund_needs_positive_amount_or_ids(storage, user, admin):
    with pytest.raises(InvalidAmount):
        await refund_service.refund(storage, user.id, "zero", admin.id, amount=0)
    with pytest.raises(InvalidAmount):
        await refund_service.refund(storage, user.id, "negative", admin.id, amount=-4)
    with pytest.raises(InvalidAmount):
        await refund_service.refund(storage, user.id, "nothing", admin.id)
    assert await storage.head(user.id) is None


async def test_refund_unknown_user(storage, admin):
    with pytest.raises(UserNotFound):
        await refund_service.refund(storage, "missing", "x", admin.id, amount=5)


async def test_concurrent_identical_refunds_pay_once(storage, user, admin, clock):
    a, b = await _funded_spends(storage, user, clock, -3, -3)

    results = await asyncio.gather(
        refund_service.refund(storage, user.id, "dup", admin.id, transaction_ids=[a.id, b.id]),
        refund_service.refund(storage, user.id, "dup", admin.id, transaction_ids=[a.id, b.id]),
        return_exceptions=True,
    )

    succeeded = [r for r in results if isinstance(r, refund_service.RefundResult)]
    failed = [r for r in results if isinstance(r, NoEligibleTransactions)]
    assert len(succeeded) == 1
    assert len(failed) == 1
    assert succeeded[0].refunded_amount == 6
    assert await credits_service.get_balance(storage, user.id) == 100
    assert len(await storage.find_transactions(user.id, transaction_type=TransactionType.REFUND)) == 1


async def test_idempotency_key_replays_fixed_refund(storage, user, admin):
    first = await refund_service.refund(storage, user.id, "goodwill", admin.id, amount=10, idempotency_key="tick-42")
    again = await refund_service.refund(storage, user.id, "goodwill", admin.id, amount=10, idempotency_key="tick-42")
    assert again.refund_transaction_id == first.refund_transaction_id
    assert await credits_service.get_balance(storage, user.id) == 10


async def test_refund_records_audit_event(storage, user, admin, clock):
    (a,) = await _funded_spends(storage, user, clock, -3)
    result = await refund_service.refund(storage, user.id, "double charge", admin.id, transaction_ids=[a.id])

    events = [e for e in storage.events if e["event_type"] == "refund_issued"]
    assert len(events) == 1
    event = events[0]
    assert event["user_id"] == user.id
    assert event["actor_id"] == admin.id
    assert event["entity_id"] == result.refund_transaction_id
    assert event["metadata"]["refunded_transaction_ids"] == [a.id]
    assert event["metadata"]["reason"] == "double charge"


async def test_caller_key_and_refund_set_key_are_both_kept(storage, user, admin, clock):
    a, b = await _funded_spends(storage, user, clock, -3, -5)
    result = await refund_service.refund(
        storage, user.id, "ticket", admin.id, transaction_ids=[b.id, a.id], idempotency_key="ticket-7"
    )

    refund_txn = (await storage.find_transactions(user.id, ids=[result.refund_transaction_id]))[0]
    assert refund_txn.idempotency_key == "ticket-7"
    assert refund_txn.refund_set_key == refund_idempotency_key([a.id, b.id])

    replay = await refund_service.refund(
        storage, user.id, "ticket", admin.id, transaction_ids=[a.id, b.id], idempotency_key="ticket-7"
    )
    assert replay.refund_transaction_id == result.refund_transaction_id
    assert await credits_service.get_balance(storage, user.id) == 100
