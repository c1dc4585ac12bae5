from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .base import BaseDBManager
from ..models.account import Account, PlanTier
from ..models.base import utcnow
from ..models.generation import GeneratedOutput, Project
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.subscription import (
    PriceMapping,
    ProcessedCheckout,
    SubscriptionHistoryEntry,
)
from ..models.transaction import Transaction


class InMemoryDBManager(BaseDBManager):
    """
    In-memory ledger store used for tests and local development.

    Account primitives hold a per-account asyncio lock across their read and
    write, and yield to the event loop in between the way a network round
    trip would, so concurrent callers genuinely interleave. Models are copied
    on the way in and out; callers never share state with the store.
    """

    def __init__(self) -> None:
        self._accounts: Dict[str, Account] = {}
        self._account_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._transactions: List[Transaction] = []
        self._projects: Dict[str, Project] = {}
        self._outputs: Dict[str, GeneratedOutput] = {}
        self._price_mappings: Dict[str, PriceMapping] = {}
        self._processed_checkouts: Dict[str, ProcessedCheckout] = {}
        self._subscription_history: List[SubscriptionHistoryEntry] = []
        self._notifications: List[NotificationEvent] = []
        self._ledger: List[LedgerEntry] = []
        self._id_counter: int = 0

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    # Accounts
    async def add_account(self, account: Account) -> Account:
        if account.id is None:
            account.id = self._next_id()
        self._accounts[account.id] = account.model_copy(deep=True)
        return account

    async def get_account(self, account_id: str) -> Optional[Account]:
        account = self._accounts.get(account_id)
        return account.model_copy(deep=True) if account else None

    async def get_account_by_customer_id(self, customer_id: str) -> Optional[Account]:
        for account in self._accounts.values():
            if account.billing_customer_id == customer_id:
                return account.model_copy(deep=True)
        return None

    # Atomic account primitives
    async def debit_credits(self, account_id: str, amount: int) -> Optional[int]:
        async with self._account_locks[account_id]:
            account = self._accounts.get(account_id)
            await asyncio.sleep(0)
            if account is None or account.credits < amount:
                return None
            account.credits -= amount
            account.updated_at = utcnow()
            return account.credits

    async def credit_credits(self, account_id: str, amount: int) -> Optional[int]:
        async with self._account_locks[account_id]:
            account = self._accounts.get(account_id)
            await asyncio.sleep(0)
            if account is None:
                return None
            account.credits += amount
            account.updated_at = utcnow()
            return account.credits

    async def apply_checkout_grant(
        self,
        account_id: str,
        *,
        session_id: str,
        plan: PlanTier,
        monthly_allocation: int,
        subscription_id: Optional[str],
        customer_id: Optional[str],
        subscription_start: datetime,
        subscription_renewal: Optional[datetime],
    ) -> Optional[int]:
        async with self._account_locks[account_id]:
            account = self._accounts.get(account_id)
            await asyncio.sleep(0)
            if account is None or session_id in account.processed_checkout_sessions:
                return None
            account.credits += monthly_allocation
            account.plan = plan
            account.monthly_allocation = monthly_allocation
            account.billing_subscription_id = subscription_id
            if customer_id:
                account.billing_customer_id = customer_id
            account.subscription_start = subscription_start
            account.subscription_renewal = subscription_renewal
            account.processed_checkout_sessions.append(session_id)
            account.updated_at = utcnow()
            return account.credits

    async def update_subscription_metadata(
        self,
        account_id: str,
        *,
        plan: PlanTier,
        monthly_allocation: int,
        subscription_id: str,
        customer_id: Optional[str],
        subscription_renewal: Optional[datetime],
    ) -> Optional[Account]:
        async with self._account_locks[account_id]:
            account = self._accounts.get(account_id)
            if account is None:
                return None
            account.plan = plan
            account.monthly_allocation = monthly_allocation
            account.billing_subscription_id = subscription_id
            if customer_id:
                account.billing_customer_id = customer_id
            account.subscription_renewal = subscription_renewal
            account.updated_at = utcnow()
            return account.model_copy(deep=True)

    async def clear_subscription(self, account_id: str) -> Optional[Account]:
        async with self._account_locks[account_id]:
            account = self._accounts.get(account_id)
            if account is None:
                return None
            account.plan = None
            account.monthly_allocation = 0
            account.billing_subscription_id = None
            account.subscription_start = None
            account.subscription_renewal = None
            account.updated_at = utcnow()
            return account.model_copy(deep=True)

    # Audit transactions
    async def add_transaction(self, tx: Transaction) -> Transaction:
        if tx.id is None:
            tx.id = self._next_id()
        self._transactions.append(tx.model_copy(deep=True))
        return tx

    async def get_transactions(self, account_id: str) -> Iterable[Transaction]:
        return [t.model_copy(deep=True) for t in self._transactions if t.account_id == account_id]

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        for tx in self._transactions:
            if tx.id == transaction_id:
                return tx.model_copy(deep=True)
        return None

    async def mark_transaction_refunded(self, transaction_id: str) -> Optional[Transaction]:
        # No await between the check and the write.
        for tx in self._transactions:
            if tx.id == transaction_id:
                if tx.refunded_at is not None:
                    return None
                tx.refunded_at = utcnow()
                return tx.model_copy(deep=True)
        return None

    # Generated outputs
    async def add_project(self, project: Project) -> Project:
        if project.id is None:
            project.id = self._next_id()
        self._projects[project.id] = project.model_copy(deep=True)
        return project

    async def add_generated_output(self, output: GeneratedOutput) -> GeneratedOutput:
        if output.id is None:
            output.id = self._next_id()
        self._outputs[output.id] = output.model_copy(deep=True)
        return output

    async def delete_generated_output(self, output_id: str) -> None:
        self._outputs.pop(output_id, None)

    async def count_generated_outputs(self, account_id: str) -> int:
        project_ids = {p.id for p in self._projects.values() if p.account_id == account_id}
        if not project_ids:
            return 0
        return sum(1 for o in self._outputs.values() if o.project_id in project_ids)

    # Billing bookkeeping
    async def add_price_mapping(self, mapping: PriceMapping) -> PriceMapping:
        self._price_mappings[mapping.price_id] = mapping.model_copy(deep=True)
        return mapping

    async def get_price_mapping(self, price_id: str) -> Optional[PriceMapping]:
        mapping = self._price_mappings.get(price_id)
        return mapping.model_copy(deep=True) if mapping else None

    async def add_processed_checkout(self, record: ProcessedCheckout) -> bool:
        if record.session_id in self._processed_checkouts:
            return False
        self._processed_checkouts[record.session_id] = record.model_copy(deep=True)
        return True

    async def get_processed_checkout(self, session_id: str) -> Optional[ProcessedCheckout]:
        record = self._processed_checkouts.get(session_id)
        return record.model_copy(deep=True) if record else None

    async def add_subscription_history(
        self, entry: SubscriptionHistoryEntry
    ) -> SubscriptionHistoryEntry:
        if entry.id is None:
            entry.id = self._next_id()
        self._subscription_history.append(entry.model_copy(deep=True))
        return entry

    async def get_subscription_history(
        self, account_id: str
    ) -> Iterable[SubscriptionHistoryEntry]:
        return [
            e.model_copy(deep=True)
            for e in self._subscription_history
            if e.account_id == account_id
        ]

    # Notifications
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        if notification.id is None:
            notification.id = self._next_id()
        self._notifications.append(notification.model_copy(deep=True))
        return notification

    async def get_notification_events(self, account_id: str) -> Iterable[NotificationEvent]:
        return [
            n.model_copy(deep=True) for n in self._notifications if n.account_id == account_id
        ]

    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.id is None:
            entry.id = self._next_id()
        self._ledger.append(entry.model_copy(deep=True))
        return entry

    @property
    def ledger_entries(self) -> List[LedgerEntry]:
        return list(self._ledger)
