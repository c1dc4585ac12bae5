from __future__ import annotations

from typing import Optional

import pytest

from credit_ledger.billing.memory import InMemoryBillingProvider
from credit_ledger.cache.memory import InMemoryAsyncCache
from credit_ledger.db.memory import InMemoryDBManager
from credit_ledger.logging.ledger_logger import LedgerLogger
from credit_ledger.models.account import Account, PlanTier
from credit_ledger.models.generation import GeneratedOutput, Project
from credit_ledger.models.subscription import CheckoutSession, SubscriptionRecord
from credit_ledger.notifications.queue import InMemoryNotificationQueue
from credit_ledger.services.credit_service import CreditService
from credit_ledger.services.notification_service import NotificationService
from credit_ledger.services.pricing import PricingPolicy
from credit_ledger.services.reconciliation_service import ReconciliationService


@pytest.fixture
def db():
    return InMemoryDBManager()


@pytest.fixture
def ledger(db, tmp_path):
    return LedgerLogger(db=db, file_path=tmp_path / "ledger.jsonl")


@pytest.fixture
def pricing():
    return PricingPolicy()


@pytest.fixture
def queue():
    return InMemoryNotificationQueue()


@pytest.fixture
def notifications(db, queue):
    return NotificationService(db=db, queue=queue, low_credit_threshold=10)


@pytest.fixture
def cache():
    return InMemoryAsyncCache()


@pytest.fixture
def credit_service(db, ledger, pricing, cache, notifications):
    return CreditService(
        db=db, ledger=ledger, pricing=pricing, cache=cache, notifications=notifications
    )


@pytest.fixture
def billing():
    return InMemoryBillingProvider(webhook_secret="whsec_test")


@pytest.fixture
def reconciliation(db, ledger, billing, pricing, cache):
    return ReconciliationService(
        db=db,
        ledger=ledger,
        billing=billing,
        pricing=pricing,
        cache=cache,
        price_plan_map={"price_ultimate_monthly": "ultimate"},
    )


@pytest.fixture
def make_account(db):
    async def _make(
        account_id: str = "acct-1",
        credits: int = 0,
        plan: Optional[PlanTier] = None,
        customer_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> Account:
        return await db.add_account(
            Account(
                id=account_id,
                credits=credits,
                plan=plan,
                billing_customer_id=customer_id,
                billing_subscription_id=subscription_id,
            )
        )

    return _make


@pytest.fixture
def add_outputs(db):
    async def _add(account_id: str, count: int) -> Project:
        project = await db.add_project(Project(account_id=account_id, name="model"))
        for _ in range(count):
            await db.add_generated_output(GeneratedOutput(project_id=project.id))
        return project

    return _add


def build_paid_session(
    session_id: str = "cs_test_1",
    account_id: Optional[str] = "acct-1",
    plan_type: Optional[str] = "essential",
    subscription_status: str = "active",
    price_id: str = "price_essential_monthly",
    customer_id: str = "cus_1",
    status: str = "complete",
    payment_status: str = "paid",
) -> CheckoutSession:
    metadata = {}
    if account_id:
        metadata["user_id"] = account_id
    if plan_type:
        metadata["plan_type"] = plan_type
    return CheckoutSession(
        id=session_id,
        status=status,
        payment_status=payment_status,
        account_id=account_id,
        customer_id=customer_id,
        metadata=metadata,
        subscription=SubscriptionRecord(
            id=f"sub_{session_id}",
            customer_id=customer_id,
            status=subscription_status,
            price_ids=[price_id],
        ),
    )


@pytest.fixture
def paid_session(billing):
    """Register a paid checkout session with the billing double and return it."""

    def _register(**kwargs) -> CheckoutSession:
        return billing.add_session(build_paid_session(**kwargs))

    return _register
