import pytest
import pytest_asyncio

from app.core.exceptions import BadRequestError, NoDuplicatesFound
from app.models.ledger import NewTransaction, TransactionType
from app.services import bulk_refunds as bulk_refund_service
from app.services import credits as credits_service
from app.services import refunds as refund_service
from app.services import transaction_audit
from app.storage.base import SequenceConflict
from app.storage.memory import MemoryStorage

pytestmark = pytest.mark.asyncio


async def _spend_at(storage, user, clock, offsets, amount=-20, description="Deep scan"):
    """Spends at the given second offsets from the clock's start."""
    start = clock.now
    out = []
    for offset in offsets:
        clock.now = start
        clock.advance(offset)
        out.append(await credits_service.append(storage, user.id, amount, "spend", description))
    clock.now = start
    return out


@pytest_asyncio.fixture
async def funded(storage, user, clock):
    await credits_service.append(storage, user.id, 500, "purchase", "Coin pack 500")
    return user


async def _balance(storage, user):
    return await credits_service.get_balance(storage, user.id)


async def test_three_rapid_repeats_keep_the_first(storage, funded, admin, clock):
    t0, t5, t50 = await _spend_at(storage, funded, clock, [0, 5, 50])
    assert await _balance(storage, funded) == 440

    result = await bulk_refund_service.bulk_refund_duplicates(storage, funded.id, admin.id)

    assert result.success
    assert result.refunded_amount == 40
    assert sorted(result.refunded_transaction_ids) == sorted([t5.id, t50.id])
    assert await _balance(storage, funded) == 480

    refund_txn = (await storage.find_transactions(funded.id, transaction_type=TransactionType.REFUND))[0]
    assert refund_txn.description == (
        "Refund: Refund for duplicate/illegitimate transactions (2 duplicate transactions)"
    )
    assert refund_txn.authorized_by == admin.id

    annotated = {a.id: a for a in await transaction_audit.audit(storage, funded.id)}
    assert not annotated[t0.id].refunded
    assert annotated[t5.id].refunded and annotated[t50.id].refunded


async def test_bulk_refund_is_not_repeatable(storage, funded, admin, clock):
    await _spend_at(storage, funded, clock, [0, 5, 50])
    await bulk_refund_service.bulk_refund_duplicates(storage, funded.id, admin.id)
    with pytest.raises(NoDuplicatesFound):
        await bulk_refund_service.bulk_refund_duplicates(storage, funded.id, admin.id)
    assert await _balance(storage, funded) == 480


async def test_no_duplicates(storage, funded, admin, clock):
    await _spend_at(storage, funded, clock, [0, 600])
    with pytest.raises(NoDuplicatesFound):
        await bulk_refund_service.bulk_refund_duplicates(storage, funded.id, admin.id, reason="cleanup")
    assert await _balance(storage, funded) == 460


async def test_suspicious_only_is_left_alone(storage, funded, admin, clock):
    t0, t30, t110 = await _spend_at(storage, funded, clock, [0, 30, 110])
    result = await bulk_refund_service.bulk_refund_duplicates(storage, funded.id, admin.id)
    assert result.refunded_transaction_ids == [t30.id]
    assert result.refunded_amount == 20


async def test_keep_latest_policy(storage, funded, admin, clock):
    t0, t5, t50 = await _spend_at(storage, funded, clock, [0, 5, 50])
    result = await bulk_refund_service.bulk_refund_duplicates(
        storage, funded.id, admin.id, keep_policy=bulk_refund_service.keep_latest
    )
    assert sorted(result.refunded_transaction_ids) == sorted([t0.id, t5.id])


async def test_chain_across_minute_boundary_is_one_group(storage, funded, admin, clock):
    spends = await _spend_at(storage, funded, clock, [40, 80, 120], amount=-3, description="Unlock prospect")

    groups = await bulk_refund_service.find_duplicates(storage, funded.id)
    assert len(groups) == 1
    assert groups[0].key == "Unlock prospect|-3|2026-03-02T12:00"
    assert groups[0].kept.id == spends[0].id
    assert [m.id for m in groups[0].refundable] == [spends[1].id, spends[2].id]

    result = await bulk_refund_service.bulk_refund_duplicates(storage, funded.id, admin.id)
    assert result.refunded_amount == 6


async def test_separate_groups_refunded_in_one_entry(storage, funded, admin, clock):
    unlocks = await _spend_at(storage, funded, clock, [0, 10], amount=-3, description="Unlock prospect")
    scans = await _spend_at(storage, funded, clock, [20, 30], amount=-20, description="Deep scan")

    groups = await bulk_refund_service.find_duplicates(storage, funded.id)
    assert [g.kept.id for g in groups] == [unlocks[0].id, scans[0].id]

    result = await bulk_refund_service.bulk_refund_duplicates(storage, funded.id, admin.id)
    assert result.refunded_amount == 23
    assert sorted(result.refunded_transaction_ids) == sorted([unlocks[1].id, scans[1].id])
    assert len(await storage.find_transactions(funded.id, transaction_type=TransactionType.REFUND)) == 1

    events = [e for e in storage.events if e["event_type"] == "bulk_refund_issued"]
    assert len(events) == 1
    assert events[0]["metadata"]["kept_transaction_ids"] == [unlocks[0].id, scans[0].id]


async def test_time_range_limits_detection(storage, funded, admin, clock):
    early = await _spend_at(storage, funded, clock, [0, 5])
    late = await _spend_at(storage, funded, clock, [3600, 3605])

    result = await bulk_refund_service.bulk_refund_duplicates(
        storage, funded.id, admin.id, start_time=late[0].created_at
    )
    assert result.refunded_transaction_ids == [late[1].id]
    groups = await bulk_refund_service.find_duplicates(storage, funded.id, end_time=early[1].created_at)
    assert [m.id for g in groups for m in g.refundable if not m.refunded] == [early[1].id]


async def test_unknown_keep_policy():
    with pytest.raises(BadRequestError):
        bulk_refund_service.get_keep_policy("random")
    assert bulk_refund_service.get_keep_policy() is bulk_refund_service.keep_earliest


async def test_hand_refunded_charge_is_not_the_one_kept(storage, funded, admin, clock):
    t0, t5 = await _spend_at(storage, funded, clock, [0, 5])
    await refund_service.refund(storage, funded.id, "support ticket", admin.id, transaction_ids=[t0.id])
    assert await _balance(storage, funded) == 480

    groups = await bulk_refund_service.find_duplicates(storage, funded.id)
    assert groups[0].kept.id == t5.id
    with pytest.raises(NoDuplicatesFound):
        await bulk_refund_service.bulk_refund_duplicates(storage, funded.id, admin.id)
    assert await _balance(storage, funded) == 480


async def test_earliest_unrefunded_is_kept(storage, funded, admin, clock):
    t0, t5, t50 = await _spend_at(storage, funded, clock, [0, 5, 50])
    await refund_service.refund(storage, funded.id, "support ticket", admin.id, transaction_ids=[t0.id])

    result = await bulk_refund_service.bulk_refund_duplicates(storage, funded.id, admin.id)
    assert result.refunded_transaction_ids == [t50.id]
    assert await _balance(storage, funded) == 480


class RefundRaceStorage(MemoryStorage):
    """Another operator's refund of race_id commits just before the first bulk refund insert."""

    def __init__(self):
        super().__init__()
        self.race_id = None

    async def insert_transaction(self, entry: NewTransaction):
        if self.race_id and entry.transaction_type == TransactionType.REFUND:
            race_id, self.race_id = self.race_id, None
            spent = (await self.find_transactions(entry.user_id, ids=[race_id]))[0]
            head = await self.head(entry.user_id)
            await super().insert_transaction(
                entry.model_copy(
                    update={
                        "amount": -spent.amount,
                        "description": "Refund: support ticket",
                        "refunded_transaction_ids": [race_id],
                        "refund_set_key": None,
                        "balance_after": head.balance_after - spent.amount,
                    }
                )
            )
            raise SequenceConflict(entry.user_id, entry.sequence)
        return await super().insert_transaction(entry)


async def test_reason_counts_what_was_actually_refunded(admin, clock):
    storage = RefundRaceStorage()
    user = await storage.create_user("race@example.com")
    await credits_service.append(storage, user.id, 500, "purchase", "Coin pack 500")
    t0, t5, t50 = await _spend_at(storage, user, clock, [0, 5, 50])
    storage.race_id = t5.id

    result = await bulk_refund_service.bulk_refund_duplicates(storage, user.id, admin.id)

    assert result.refunded_transaction_ids == [t50.id]
    bulk_txn = (await storage.find_transactions(user.id, ids=[result.refund_transaction_id]))[0]
    assert bulk_txn.description.endswith("(1 duplicate transactions)")
    assert await _balance(storage, user) == 480
