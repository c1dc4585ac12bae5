from __future__ import annotations

import asyncio

import pytest
from mongomock_motor import AsyncMongoMockClient

from credit_ledger.db.mongo import MongoDBManager
from credit_ledger.models.account import Account, PlanTier
from credit_ledger.models.base import utcnow
from credit_ledger.models.transaction import Transaction, TransactionKind


@pytest.fixture
def mongo_db():
    return MongoDBManager(AsyncMongoMockClient()["credit_ledger_test"])


def _grant(store, session_id: str = "cs_1", allocation: int = 250):
    return store.apply_checkout_grant(
        "acct-1",
        session_id=session_id,
        plan=PlanTier.ESSENTIAL,
        monthly_allocation=allocation,
        subscription_id="sub_1",
        customer_id="cus_1",
        subscription_start=utcnow(),
        subscription_renewal=utcnow(),
    )


@pytest.mark.asyncio
async def test_initialize_creates_indexes(mongo_db):
    await mongo_db.initialize()
    await mongo_db.add_account(Account(id="acct-1", credits=1))

    assert (await mongo_db.get_account("acct-1")).credits == 1


@pytest.mark.asyncio
async def test_debit_filter_refuses_overdraft(mongo_db):
    await mongo_db.add_account(Account(id="acct-1", credits=10))

    assert await mongo_db.debit_credits("acct-1", 11) is None
    assert (await mongo_db.get_account("acct-1")).credits == 10
    assert await mongo_db.debit_credits("acct-1", 10) == 0
    assert await mongo_db.debit_credits("acct-1", 1) is None
    assert await mongo_db.debit_credits("missing", 1) is None


@pytest.mark.asyncio
async def test_concurrent_debits_stop_at_zero(mongo_db):
    await mongo_db.add_account(Account(id="acct-1", credits=25))

    results = await asyncio.gather(*(mongo_db.debit_credits("acct-1", 10) for _ in range(5)))

    assert sorted(r for r in results if r is not None) == [5, 15]
    assert (await mongo_db.get_account("acct-1")).credits == 5


@pytest.mark.asyncio
async def test_replayed_grant_is_refused(mongo_db):
    await mongo_db.add_account(Account(id="acct-1", credits=5))

    assert await _grant(mongo_db) == 255
    assert await _grant(mongo_db) is None

    account = await mongo_db.get_account("acct-1")
    assert account.credits == 255
    assert account.plan == PlanTier.ESSENTIAL
    assert account.processed_checkout_sessions == ["cs_1"]
    assert await _grant(mongo_db, session_id="cs_2", allocation=50) == 305


@pytest.mark.asyncio
async def test_grant_for_unknown_account_is_refused(mongo_db):
    assert await _grant(mongo_db) is None


@pytest.mark.asyncio
async def test_clear_subscription_unsets_billing_period(mongo_db):
    await mongo_db.add_account(Account(id="acct-1"))
    await _grant(mongo_db)

    account = await mongo_db.clear_subscription("acct-1")

    assert account.plan is None
    assert account.billing_subscription_id is None
    assert account.subscription_start is None
    assert account.subscription_renewal is None
    assert account.credits == 250


@pytest.mark.asyncio
async def test_transaction_is_marked_refunded_once(mongo_db):
    tx = await mongo_db.add_transaction(
        Transaction(account_id="acct-1", amount=-10, kind=TransactionKind.GENERATION)
    )

    marked = await mongo_db.mark_transaction_refunded(tx.id)
    assert marked is not None
    assert marked.refunded_at is not None
    assert await mongo_db.mark_transaction_refunded(tx.id) is None
    assert (await mongo_db.get_transaction(tx.id)).refunded_at is not None
