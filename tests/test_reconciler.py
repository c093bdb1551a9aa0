"""Tests for the Reconciler."""

from decimal import Decimal

import pytest
from sqlalchemy import text

from app.core.exceptions import ReconciliationError
from app.models.sync import Transaction
from tests.fakes import make_account, make_txn, page


async def test_added_transaction_applied_twice_is_stored_once(reconciler, stored):
    p = page("c1", added=[make_txn("T1"), make_txn("T2")])

    await reconciler.apply_page("item-1", p)
    first = await stored.snapshot()
    await reconciler.apply_page("item-1", p)

    assert await stored.snapshot() == first
    assert set(first) == {"T1", "T2"}


async def test_modified_transaction_replaces_whole_record(reconciler, stored):
    await reconciler.apply_page("item-1", page("c1", added=[make_txn("T1", amount="12.50", pending=True)]))

    changed = make_txn("T1", amount="13.75", pending=False, merchant_name=None, category_primary=None)
    stats = await reconciler.apply_page("item-1", page("c2", modified=[changed]))

    txn = (await stored.transactions())["T1"]
    assert stats.modified == 1
    assert txn.amount == Decimal("13.75")
    assert txn.pending is False
    # No field-level merge: cleared fields are cleared
    assert txn.merchant_name is None
    assert txn.category_primary is None


async def test_amount_sign_is_stored_as_delivered(reconciler, stored):
    refund = make_txn("T1", amount="-40.00")
    await reconciler.apply_page("item-1", page("c1", added=[refund]))

    assert (await stored.transactions())["T1"].amount == Decimal("-40.00")


async def test_removed_transaction_is_deleted(reconciler, stored):
    await reconciler.apply_page("item-1", page("c1", added=[make_txn("T1"), make_txn("T2"), make_txn("T3")]))

    stats = await reconciler.apply_page("item-1", page("c2", removed=["T2"]))

    assert stats.removed == 1
    assert await stored.transaction_ids() == {"T1", "T3"}


async def test_removing_unknown_transaction_is_a_noop(reconciler, stored):
    await reconciler.apply_page("item-1", page("c1", added=[make_txn("T1")]))

    await reconciler.apply_page("item-1", page("c2", removed=["missing"]))
    await reconciler.apply_page("item-1", page("c2", removed=["missing"]))

    assert await stored.transaction_ids() == {"T1"}


async def test_removal_applied_twice_yields_same_absence(reconciler, stored):
    await reconciler.apply_page("item-1", page("c1", added=[make_txn("T1"), make_txn("T2")]))

    removal = page("c2", removed=["T1"])
    await reconciler.apply_page("item-1", removal)
    await reconciler.apply_page("item-1", removal)

    assert await stored.transaction_ids() == {"T2"}


async def test_removal_does_not_touch_other_connections(reconciler, stored):
    await reconciler.apply_page("item-1", page("c1", added=[make_txn("T1")]))

    await reconciler.apply_page("item-2", page("d1", removed=["T1"]))

    assert await stored.transaction_ids() == {"T1"}


async def test_changes_apply_in_page_order(reconciler, stored):
    p = page("c1", added=[make_txn("T1")], removed=["T1"])

    stats = await reconciler.apply_page("item-1", p)

    assert (stats.added, stats.removed) == (1, 1)
    assert await stored.transaction_ids() == set()


async def test_account_snapshot_overwrites_balances(reconciler, stored):
    await reconciler.upsert_accounts("item-1", [make_account(current="500.00", available="450.00", limit="2000.00")])
    await reconciler.upsert_accounts("item-1", [make_account(current="320.10", available=None, limit=None)])

    accounts = await stored.accounts()
    assert len(accounts) == 1
    account = accounts["acc-1"]
    assert account.balance_current == Decimal("320.10")
    assert account.balance_available is None
    assert account.balance_limit is None
    assert account.item_id == "item-1"
    assert account.last_synced_at is not None


async def test_account_upsert_is_idempotent(reconciler, stored):
    snapshots = [make_account("acc-1"), make_account("acc-2", name="Savings")]

    assert await reconciler.upsert_accounts("item-1", snapshots) == 2
    await reconciler.upsert_accounts("item-1", snapshots)

    accounts = await stored.accounts()
    assert set(accounts) == {"acc-1", "acc-2"}
    assert accounts["acc-2"].name == "Savings"


async def test_storage_failure_raises_reconciliation_error(reconciler, engine, stored):
    async with engine.begin() as conn:
        await conn.run_sync(Transaction.__table__.drop)

    with pytest.raises(ReconciliationError):
        await reconciler.apply_page("item-1", page("c1", added=[make_txn("T1")]))


async def test_failed_page_is_not_partially_committed(reconciler, stored):
    await reconciler.apply_page("item-1", page("c1", added=[make_txn("T1")]))

    broken = make_txn("T2")
    broken.name = None  # violates NOT NULL

    with pytest.raises(ReconciliationError):
        await reconciler.apply_page("item-1", page("c2", added=[make_txn("T3"), broken]))

    assert await stored.transaction_ids() == {"T1"}


async def test_missing_json_fields_are_stored_as_sql_null(reconciler, session_factory):
    bare = make_txn("T1")
    bare.location = None
    bare.payment_meta = None
    bare.legacy_category = None

    await reconciler.apply_page("item-1", page("c1", added=[bare]))

    async with session_factory() as db:
        row = (
            await db.execute(
                text(
                    "SELECT location IS NULL, payment_meta IS NULL, legacy_category IS NULL "
                    "FROM transactions WHERE transaction_id = 'T1'"
                )
            )
        ).one()
    assert tuple(row) == (1, 1, 1)
