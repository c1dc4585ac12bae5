from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Optional

from ..models.account import Account, PlanTier
from ..models.generation import GeneratedOutput, Project
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.subscription import (
    PriceMapping,
    ProcessedCheckout,
    SubscriptionHistoryEntry,
)
from ..models.transaction import Transaction


class BaseDBManager(ABC):
    """
    DB-agnostic async ledger store interface.

    The methods under "Atomic account primitives" are the only writers of
    `credits`, `plan` and the subscription fields of an account. Each one is
    a single indivisible operation against the backend: concurrent callers
    for the same account are linearized, so no two of them can act on the
    same balance snapshot. They return None when their guard condition did
    not match (insufficient balance, already processed session, unknown
    account); callers re-read the account to tell those cases apart.

    Everything else is plain reads or append-only inserts.
    """

    async def initialize(self) -> None:
        """Prepare the backend (indexes and the like). Called once at startup."""

    # Accounts
    @abstractmethod
    async def add_account(self, account: Account) -> Account: ...

    @abstractmethod
    async def get_account(self, account_id: str) -> Optional[Account]: ...

    @abstractmethod
    async def get_account_by_customer_id(self, customer_id: str) -> Optional[Account]: ...

    # Atomic account primitives
    @abstractmethod
    async def debit_credits(self, account_id: str, amount: int) -> Optional[int]:
        """
        Decrement credits by `amount` only if the balance covers it.
        Returns the new balance, or None if nothing was written.
        """
        ...

    @abstractmethod
    async def credit_credits(self, account_id: str, amount: int) -> Optional[int]:
        """Increment credits by `amount`. Returns the new balance, or None for unknown accounts."""
        ...

    @abstractmethod
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
        """
        Grant `monthly_allocation` on top of the current balance and write the
        plan metadata, unless `session_id` was already granted for this
        account. The gate and the write are one operation.

        Returns the new balance, or None if the session was already processed
        or the account does not exist.
        """
        ...

    @abstractmethod
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
        """Write plan/subscription fields without touching credits."""
        ...

    @abstractmethod
    async def clear_subscription(self, account_id: str) -> Optional[Account]:
        """Reset plan to none and drop subscription references; credits are kept."""
        ...

    # Audit transactions
    @abstractmethod
    async def add_transaction(self, tx: Transaction) -> Transaction: ...

    @abstractmethod
    async def get_transactions(self, account_id: str) -> Iterable[Transaction]: ...

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]: ...

    @abstractmethod
    async def mark_transaction_refunded(self, transaction_id: str) -> Optional[Transaction]:
        """
        Stamp `refunded_at` on a transaction that has none yet, in one
        operation. Returns the updated transaction, or None if it is unknown
        or was already refunded.
        """
        ...

    # Generated outputs (free tier)
    @abstractmethod
    async def add_project(self, project: Project) -> Project: ...

    @abstractmethod
    async def add_generated_output(self, output: GeneratedOutput) -> GeneratedOutput: ...

    @abstractmethod
    async def delete_generated_output(self, output_id: str) -> None: ...

    @abstractmethod
    async def count_generated_outputs(self, account_id: str) -> int:
        """Number of generated outputs across every project the account owns."""
        ...

    # Billing bookkeeping
    @abstractmethod
    async def add_price_mapping(self, mapping: PriceMapping) -> PriceMapping: ...

    @abstractmethod
    async def get_price_mapping(self, price_id: str) -> Optional[PriceMapping]: ...

    @abstractmethod
    async def add_processed_checkout(self, record: ProcessedCheckout) -> bool:
        """Insert-if-absent keyed by session id. Returns False if it already existed."""
        ...

    @abstractmethod
    async def get_processed_checkout(self, session_id: str) -> Optional[ProcessedCheckout]: ...

    @abstractmethod
    async def add_subscription_history(
        self, entry: SubscriptionHistoryEntry
    ) -> SubscriptionHistoryEntry: ...

    @abstractmethod
    async def get_subscription_history(
        self, account_id: str
    ) -> Iterable[SubscriptionHistoryEntry]: ...

    # Notifications
    @abstractmethod
    async def add_notification_event(self, notification: NotificationEvent) -> NotificationEvent: ...

    @abstractmethod
    async def get_notification_events(self, account_id: str) -> Iterable[NotificationEvent]: ...

    # Ledger
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...
