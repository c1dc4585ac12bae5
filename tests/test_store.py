from __future__ import annotations

import asyncio

import pytest
from pymongo.errors import AutoReconnect, NetworkTimeout, ServerSelectionTimeoutError

from credit_ledger.db.mongo import _translate_errors
from credit_ledger.exceptions import StoreTimeout, StoreUnavailable
from credit_ledger.logging.ledger_logger import LedgerLogger
from credit_ledger.models.account import PlanTier
from credit_ledger.models.base import utcnow
from credit_ledger.models.generation import GeneratedOutput, Project
from credit_ledger.models.subscription import ProcessedCheckout
from credit_ledger.models.transaction import Transaction, TransactionKind


def _grant(db, session_id: str = "cs_1", allocation: int = 250):
    return db.apply_checkout_grant(
        "acct-1",
        session_id=session_id,
        plan=PlanTier.ESSENTIAL,
        monthly_allocation=allocation,
        subscription_id="sub_1",
        customer_id="cus_1",
        subscription_start=utcnow(),
        subscription_renewal=None,
    )


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "driver_error, expected",
    [
        (ServerSelectionTimeoutError("no primary"), StoreUnavailable),
        (AutoReconnect("connection reset"), StoreUnavailable),
        (NetworkTimeout("socket timed out"), StoreTimeout),
    ],
)
async def test_driver_errors_are_translated(driver_error, expected):
    with pytest.raises(expected):
        async with _translate_errors():
            raise driver_error


@pytest.mark.asyncio
async def test_debit_guard_refuses_overdraft(db, make_account):
    await make_account("acct-1", credits=10)

    assert await db.debit_credits("acct-1", 11) is None
    assert await db.debit_credits("acct-1", 10) == 0
    assert await db.debit_credits("missing", 1) is None


@pytest.mark.asyncio
async def test_checkout_grant_is_gated_by_session(db, make_account):
    await make_account("acct-1", credits=5)

    results = await asyncio.gather(*(_grant(db) for _ in range(4)))

    assert sorted(results, key=lambda r: r is None) == [255, None, None, None]
    account = await db.get_account("acct-1")
    assert account.processed_checkout_sessions == ["cs_1"]
    assert account.billing_customer_id == "cus_1"
    assert await _grant(db, session_id="cs_2", allocation=50) == 305


@pytest.mark.asyncio
async def test_store_returns_copies(db, make_account):
    await make_account("acct-1", credits=10)

    account = await db.get_account("acct-1")
    account.credits = 1000

    assert (await db.get_account("acct-1")).credits == 10


@pytest.mark.asyncio
async def test_generated_outputs_are_counted_per_account(db):
    mine = await db.add_project(Project(account_id="acct-1"))
    theirs = await db.add_project(Project(account_id="acct-2"))
    first = await db.add_generated_output(GeneratedOutput(project_id=mine.id))
    await db.add_generated_output(GeneratedOutput(project_id=mine.id))
    await db.add_generated_output(GeneratedOutput(project_id=theirs.id))

    assert await db.count_generated_outputs("acct-1") == 2
    assert await db.count_generated_outputs("acct-3") == 0

    await db.delete_generated_output(first.id)
    assert await db.count_generated_outputs("acct-1") == 1


@pytest.mark.asyncio
async def test_processed_checkout_is_unique(db):
    record = ProcessedCheckout(
        session_id="cs_1", account_id="acct-1", plan=PlanTier.BASE, credits_granted=50
    )

    assert await db.add_processed_checkout(record) is True
    assert await db.add_processed_checkout(record) is False
    assert (await db.get_processed_checkout("cs_1")).credits_granted == 50


@pytest.mark.asyncio
async def test_ledger_logger_never_raises(db, tmp_path, monkeypatch):
    async def broken(entry):
        raise StoreUnavailable("ledger collection unavailable")

    monkeypatch.setattr(db, "add_ledger_entry", broken)
    ledger = LedgerLogger(db=db, file_path=tmp_path / "nested" / "ledger.jsonl")

    await ledger.log_error("Something failed", {"x": 1}, account_id="acct-1")
    await ledger.log_system("Started", {})

    lines = (tmp_path / "nested" / "ledger.jsonl").read_text().splitlines()
    assert len(lines) == 2


@pytest.mark.asyncio
async def test_transaction_is_marked_refunded_once(db):
    tx = await db.add_transaction(
        Transaction(account_id="acct-1", amount=-10, kind=TransactionKind.GENERATION)
    )

    marked = await db.mark_transaction_refunded(tx.id)
    assert marked.refunded_at is not None
    assert await db.mark_transaction_refunded(tx.id) is None
    assert await db.mark_transaction_refunded("missing") is None
    assert (await db.get_transaction(tx.id)).refunded_at == marked.refunded_at


@pytest.mark.asyncio
async def test_clear_subscription_drops_billing_period(db, make_account):
    await make_account("acct-1", credits=5)
    await _grant(db)

    account = await db.clear_subscription("acct-1")

    assert account.plan is None
    assert account.monthly_allocation == 0
    assert account.subscription_start is None
    assert account.subscription_renewal is None
    assert account.credits == 255
