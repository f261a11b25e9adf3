from uuid import uuid4

import pytest
from sqlalchemy import func, select

from tillpoint_api.domain.loyalty.errors import (
    ConcurrentConflict,
    InsufficientBalance,
    LedgerValidationError,
    StorageConflict,
    UnknownAccount,
)
from tillpoint_api.models.loyalty import LedgerEntryKind, LoyaltyLedgerEntry
from tillpoint_api.observability.loyalty import LoyaltyObservabilityStore
from tillpoint_api.services.loyalty import (
    AccountLockRegistry,
    LoyaltyService,
    PointsLedger,
    RetryPolicy,
    ledger_unit_of_work,
)

FAST_RETRIES = RetryPolicy(max_attempts=3, base_delay_seconds=0, max_delay_seconds=0)


async def _enroll(session_factory, customer_id: str = "cust-1"):
    async with session_factory() as session:
        account = await LoyaltyService(session).enroll(customer_id)
        return account.id


@pytest.mark.asyncio
async def test_append_updates_snapshot_in_step(session_factory, loyalty_catalog) -> None:
    account_id = await _enroll(session_factory)

    async with session_factory() as session:
        ledger = PointsLedger(session)

        async def _operation():
            account = await ledger.load_account(account_id)
            await ledger.append(account, LedgerEntryKind.EARN, 300, "sale-1")
            await ledger.append(account, LedgerEntryKind.REDEEM, -120, "redemption-1")
            await ledger.append(account, LedgerEntryKind.ADJUST, -30, None, description="goodwill reversal")
            return account

        account = await ledger_unit_of_work(session, account_id, _operation, policy=FAST_RETRIES)

        assert account.points_balance == 150
        assert account.last_sequence == 3
        assert account.lifetime_earned == 300
        assert account.lifetime_redeemed == 120

        entries = (
            await session.execute(
                select(LoyaltyLedgerEntry)
                .where(LoyaltyLedgerEntry.account_id == account_id)
                .order_by(LoyaltyLedgerEntry.sequence)
            )
        ).scalars().all()
        assert [entry.sequence for entry in entries] == [1, 2, 3]
        assert [entry.running_balance for entry in entries] == [300, 180, 150]


@pytest.mark.asyncio
async def test_append_refuses_negative_balance(session_factory, loyalty_catalog) -> None:
    account_id = await _enroll(session_factory)

    async with session_factory() as session:
        ledger = PointsLedger(session)

        async def _operation():
            account = await ledger.load_account(account_id)
            await ledger.append(account, LedgerEntryKind.EARN, 50, "sale-1")
            await ledger.append(account, LedgerEntryKind.REDEEM, -80, "redemption-1")

        with pytest.raises(InsufficientBalance):
            await ledger_unit_of_work(session, account_id, _operation, policy=FAST_RETRIES)

    async with session_factory() as session:
        count = (
            await session.execute(
                select(func.count(LoyaltyLedgerEntry.id)).where(LoyaltyLedgerEntry.account_id == account_id)
            )
        ).scalar_one()
        account = await PointsLedger(session).load_account(account_id)

    assert count == 0
    assert account.points_balance == 0
    assert account.last_sequence == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("kind", "delta"),
    [
        (LedgerEntryKind.EARN, -5),
        (LedgerEntryKind.REDEEM, 5),
        (LedgerEntryKind.EXPIRE, 5),
        (LedgerEntryKind.ADJUST, 0),
    ],
)
async def test_append_rejects_deltas_inconsistent_with_kind(session_factory, loyalty_catalog, kind, delta) -> None:
    account_id = await _enroll(session_factory)

    async with session_factory() as session:
        ledger = PointsLedger(session)
        account = await ledger.load_account(account_id)
        with pytest.raises(LedgerValidationError):
            await ledger.append(account, kind, delta, "ref")


@pytest.mark.asyncio
async def test_load_account_raises_for_unknown_id(session_factory, loyalty_catalog) -> None:
    async with session_factory() as session:
        with pytest.raises(UnknownAccount):
            await PointsLedger(session).load_account(uuid4())


@pytest.mark.asyncio
async def test_list_entries_paginates_newest_first(session_factory, loyalty_catalog) -> None:
    account_id = await _enroll(session_factory)

    async with session_factory() as session:
        ledger = PointsLedger(session)

        async def _operation():
            account = await ledger.load_account(account_id)
            for index in range(5):
                await ledger.append(account, LedgerEntryKind.EARN, 10, f"sale-{index}")

        await ledger_unit_of_work(session, account_id, _operation, policy=FAST_RETRIES)

        first = await ledger.list_entries(account_id, limit=2)
        assert [entry.sequence for entry in first.entries] == [5, 4]
        assert first.next_cursor is not None

        second = await ledger.list_entries(account_id, limit=2, cursor=first.next_cursor)
        assert [entry.sequence for entry in second.entries] == [3, 2]

        last = await ledger.list_entries(account_id, limit=2, cursor=second.next_cursor)
        assert [entry.sequence for entry in last.entries] == [1]
        assert last.next_cursor is None

        with pytest.raises(LedgerValidationError):
            await ledger.list_entries(account_id, cursor="not-a-cursor")


@pytest.mark.asyncio
async def test_unit_of_work_retries_storage_conflicts(session_factory, loyalty_catalog) -> None:
    account_id = await _enroll(session_factory)
    store = LoyaltyObservabilityStore()
    registry = AccountLockRegistry()
    calls = {"count": 0}

    async with session_factory() as session:
        ledger = PointsLedger(session, store=store)

        async def _operation():
            calls["count"] += 1
            account = await ledger.load_account(account_id)
            if calls["count"] == 1:
                raise StorageConflict("simulated version clash")
            return await ledger.append(account, LedgerEntryKind.EARN, 25, "sale-retry")

        entry = await ledger_unit_of_work(
            session, account_id, _operation, policy=FAST_RETRIES, registry=registry, store=store
        )

    assert calls["count"] == 2
    assert entry.running_balance == 25
    concurrency = store.snapshot().concurrency
    assert concurrency["conflicts"] == 1
    assert concurrency["retries"] == 1
    assert registry.active_count() == 0


@pytest.mark.asyncio
async def test_unit_of_work_surfaces_exhausted_retries(session_factory, loyalty_catalog) -> None:
    account_id = await _enroll(session_factory)
    store = LoyaltyObservabilityStore()

    async with session_factory() as session:

        async def _operation():
            raise StorageConflict("always contended")

        with pytest.raises(ConcurrentConflict):
            await ledger_unit_of_work(session, account_id, _operation, policy=FAST_RETRIES, store=store)

    concurrency = store.snapshot().concurrency
    assert concurrency["conflicts"] == 3
    assert concurrency["exhausted"] == 1
