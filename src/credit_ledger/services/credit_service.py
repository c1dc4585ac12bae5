from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, Optional, Tuple

from ..cache.base import AsyncCacheBackend, balance_cache_key
from ..db.base import BaseDBManager
from ..exceptions import (
    AccountNotFound,
    InsufficientCredits,
    RefundFailed,
    RefundNotAllowed,
    SubscriptionRequired,
    TransactionNotFound,
)
from ..logging.ledger_logger import LedgerLogger
from ..models.account import Account, BalanceInfo
from ..models.generation import GenerationCharge, GenerationOptions
from ..models.transaction import Transaction, TransactionKind
from .notification_service import NotificationService
from .pricing import PricingPolicy


logger = logging.getLogger(__name__)

REFUNDABLE_KINDS = (TransactionKind.GENERATION, TransactionKind.PROJECT_CREATION)


class CreditService:
    """
    Balance reads, atomic debits and compensating refunds.

    Every balance change goes through one atomic store primitive; what
    happens afterwards (audit transaction, ledger entry, cache invalidation,
    notifications) is best-effort and can never turn a committed mutation
    into a reported failure.

    If a store call times out (`StoreTimeout`) the mutation may or may not
    have been applied. Re-read the balance with `get_balance` before deciding
    anything; never retry a debit blindly.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        pricing: PricingPolicy,
        cache: Optional[AsyncCacheBackend] = None,
        notifications: Optional[NotificationService] = None,
        balance_cache_ttl: int = 30,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._pricing = pricing
        self._cache = cache
        self._notifications = notifications
        self._balance_cache_ttl = balance_cache_ttl

    @property
    def pricing(self) -> PricingPolicy:
        return self._pricing

    # Balance accessor
    async def get_account(self, account_id: str) -> Account:
        account = await self._db.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    async def get_balance(self, account_id: str) -> BalanceInfo:
        """Authoritative read straight from the store."""
        account = await self.get_account(account_id)
        return BalanceInfo(account_id=account_id, credits=account.credits, plan=account.plan)

    async def get_user_credits(self, account_id: str) -> int:
        """Advisory balance, possibly served from cache. Never base a write on it."""
        key = balance_cache_key(account_id)
        if self._cache:
            cached = await self._cache.get(key)
            if isinstance(cached, int):
                return cached
        balance = (await self.get_account(account_id)).credits
        if self._cache:
            await self._cache.set(key, balance, ttl_seconds=self._balance_cache_ttl)
        return balance

    async def get_credit_history(self, account_id: str) -> Iterable[Transaction]:
        return await self._db.get_transactions(account_id)

    # Debit engine
    async def debit(
        self,
        account_id: str,
        amount: int,
        kind: TransactionKind = TransactionKind.GENERATION,
        description: str | None = None,
        metadata: Optional[Dict[str, Any]] = None,
        correlation_id: str | None = None,
    ) -> int:
        """
        Deduct `amount` if and only if the balance covers it.
        Returns the new balance.
        """
        new_balance, _ = await self._debit(
            account_id, amount, kind, description, metadata, correlation_id
        )
        return new_balance

    async def _debit(
        self,
        account_id: str,
        amount: int,
        kind: TransactionKind,
        description: str | None,
        metadata: Optional[Dict[str, Any]],
        correlation_id: str | None,
    ) -> Tuple[int, Optional[str]]:
        """Debit and return the new balance with the audit transaction id, if recorded."""
        if amount <= 0:
            raise ValueError("amount must be positive")

        new_balance = await self._db.debit_credits(account_id, amount)
        if new_balance is None:
            account = await self._db.get_account(account_id)
            if account is None:
                raise AccountNotFound(account_id)
            await self._ledger.log_error(
                message="Insufficient credits for deduction",
                details={"requested": amount, "current": account.credits},
                account_id=account_id,
                correlation_id=correlation_id,
            )
            raise InsufficientCredits(have=account.credits, need=amount)

        transaction_id = await self._record_transaction(
            Transaction(
                account_id=account_id,
                amount=-amount,
                kind=kind,
                description=description or f"Credits deducted for {kind.value}",
                balance_after=new_balance,
                metadata=metadata or {},
            )
        )
        await self._ledger.log_transaction(
            account_id=account_id,
            message="Credits deducted",
            details={"amount": amount, "new_balance": new_balance, "kind": kind.value},
            correlation_id=correlation_id,
        )
        await self._after_mutation(account_id, new_balance, debited=True)
        return new_balance, transaction_id

    async def check_and_debit_for_generation(
        self,
        account_id: str,
        is_restricted: bool = False,
        options: Optional[GenerationOptions] = None,
        correlation_id: str | None = None,
    ) -> GenerationCharge:
        """
        Price a generation request and pay for it.

        Accounts without a plan get a limited number of free standard
        generations, counted from their durable generated outputs.
        """
        options = options or GenerationOptions()
        account = await self.get_account(account_id)

        if account.plan is None:
            if is_restricted:
                raise SubscriptionRequired(
                    SubscriptionRequired.RESTRICTED_REQUIRES_PLAN,
                    "Restricted content requires a subscription plan. "
                    "Please subscribe to the Essential or Ultimate plan.",
                )
            generated = await self._db.count_generated_outputs(account_id)
            if not self._pricing.is_free_generation_allowed(generated):
                raise SubscriptionRequired(
                    SubscriptionRequired.FREE_TIER_EXHAUSTED,
                    f"You have used your {self._pricing.free_tier_generations} free images. "
                    "Please subscribe to a plan to continue generating images.",
                )
            logger.info(
                "Account %s has %s generated outputs, allowing free generation (%s left)",
                account_id,
                generated,
                self._pricing.free_generations_left(generated) - 1,
            )
            await self._record_transaction(
                Transaction(
                    account_id=account_id,
                    amount=0,
                    kind=TransactionKind.FREE_TIER,
                    description="Free image generation",
                    balance_after=account.credits,
                    metadata={"generated_outputs": generated, "count": options.count},
                )
            )
            return GenerationCharge(cost=0, remaining_credits=account.credits, was_free=True)

        cost = self._pricing.cost(account.plan, is_restricted, options)
        description = "Image generation"
        if is_restricted:
            description += " (restricted)"
        if options.count == self._pricing.batch_size and not is_restricted:
            description += " (batch)"

        remaining, transaction_id = await self._debit(
            account_id,
            cost,
            TransactionKind.GENERATION,
            description,
            {
                "plan": account.plan.value,
                "is_restricted": is_restricted,
                "options": options.model_dump(),
            },
            correlation_id,
        )
        return GenerationCharge(
            cost=cost, remaining_credits=remaining, was_free=False, transaction_id=transaction_id
        )

    async def check_and_debit_for_project_creation(
        self, account_id: str, correlation_id: str | None = None
    ) -> GenerationCharge:
        cost = self._pricing.project_creation_cost
        remaining, transaction_id = await self._debit(
            account_id,
            cost,
            TransactionKind.PROJECT_CREATION,
            "Project creation",
            None,
            correlation_id,
        )
        return GenerationCharge(cost=cost, remaining_credits=remaining, transaction_id=transaction_id)

    @asynccontextmanager
    async def charged_generation(
        self,
        account_id: str,
        is_restricted: bool = False,
        options: Optional[GenerationOptions] = None,
        correlation_id: str | None = None,
    ) -> AsyncIterator[GenerationCharge]:
        """
        Pay for a generation, then run the body. If the body raises or is
        cancelled, the exact amount that was debited is refunded and the
        error re-raised. The refund is shielded so a second cancellation
        cannot interrupt it halfway.

            async with credits.charged_generation(account_id, options=opts) as charge:
                images = await provider.generate(prompt)
        """
        charge = await self.check_and_debit_for_generation(
            account_id, is_restricted, options, correlation_id=correlation_id
        )
        try:
            yield charge
        except BaseException as exc:
            if charge.cost > 0:
                logger.warning(
                    "Generation failed for account %s (%s), refunding %s credits",
                    account_id,
                    type(exc).__name__,
                    charge.cost,
                )
                await asyncio.shield(
                    self._compensate(account_id, charge, exc, correlation_id)
                )
            raise

    async def _compensate(
        self,
        account_id: str,
        charge: GenerationCharge,
        exc: BaseException,
        correlation_id: str | None,
    ) -> Optional[int]:
        if charge.transaction_id:
            try:
                marked = await self._db.mark_transaction_refunded(charge.transaction_id)
            except Exception:
                logger.exception(
                    "Failed to mark transaction %s refunded", charge.transaction_id
                )
            else:
                if marked is None:
                    logger.warning(
                        "Transaction %s was already refunded", charge.transaction_id
                    )
                    return None
        reason = str(exc) or type(exc).__name__
        return await self.refund(
            account_id,
            charge.cost,
            reason=f"Generation failed: {reason}",
            metadata={
                "error_type": type(exc).__name__,
                "transaction_id": charge.transaction_id,
            },
            correlation_id=correlation_id,
        )

    # Compensation engine
    async def refund(
        self,
        account_id: str,
        amount: int,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
        correlation_id: str | None = None,
    ) -> Optional[int]:
        """
        Credit back `amount` previously debited for a failed operation.

        Returns the new balance, or None when nothing was refunded: a zero
        amount is a no-op, and a failed refund is logged and flagged for
        manual reconciliation instead of being raised.
        """
        if amount < 0:
            raise ValueError("amount must not be negative")
        if amount == 0:
            return None

        try:
            new_balance = await self._db.credit_credits(account_id, amount)
            if new_balance is None:
                raise RefundFailed(account_id, amount, "account not found")
        except Exception as exc:
            failure = exc if isinstance(exc, RefundFailed) else RefundFailed(account_id, amount, str(exc))
            logger.error("%s", failure, exc_info=exc)
            await self._ledger.log_error(
                message="Refund failed",
                details={"amount": amount, "reason": reason, "error": str(exc)},
                account_id=account_id,
                correlation_id=correlation_id,
            )
            await self._flag_unrefunded(account_id, amount, reason, str(failure))
            return None

        await self._record_transaction(
            Transaction(
                account_id=account_id,
                amount=amount,
                kind=TransactionKind.REFUND,
                description=reason,
                balance_after=new_balance,
                metadata=metadata or {},
            )
        )
        await self._ledger.log_transaction(
            account_id=account_id,
            message="Credits refunded",
            details={"amount": amount, "new_balance": new_balance, "reason": reason},
            correlation_id=correlation_id,
        )
        await self._after_mutation(account_id, new_balance)
        return new_balance

    async def refund_transaction(
        self,
        account_id: str,
        transaction_id: str,
        reason: str,
        correlation_id: str | None = None,
    ) -> Optional[int]:
        """
        Refund a recorded debit of this account, at most once.

        The transaction is stamped refunded before the credit is applied, so
        two concurrent requests for the same debit cannot both pay out.
        Returns the new balance, or None if the credit itself failed and was
        flagged.
        """
        tx = await self._db.get_transaction(transaction_id)
        if tx is None or tx.account_id != account_id:
            raise TransactionNotFound(transaction_id)
        if tx.kind not in REFUNDABLE_KINDS or tx.amount >= 0:
            raise RefundNotAllowed(transaction_id, f"{tx.kind.value} transactions are not refundable")
        if tx.refunded_at is not None:
            raise RefundNotAllowed(transaction_id, "already refunded")

        marked = await self._db.mark_transaction_refunded(transaction_id)
        if marked is None:
            raise RefundNotAllowed(transaction_id, "already refunded")
        return await self.refund(
            account_id,
            -tx.amount,
            reason,
            metadata={"transaction_id": transaction_id},
            correlation_id=correlation_id,
        )

    # Best-effort side effects
    async def _record_transaction(self, tx: Transaction) -> Optional[str]:
        try:
            recorded = await self._db.add_transaction(tx)
        except Exception:
            logger.exception(
                "Failed to record %s transaction for account %s", tx.kind.value, tx.account_id
            )
            return None
        return recorded.id

    async def _after_mutation(self, account_id: str, balance: int, debited: bool = False) -> None:
        if self._cache:
            try:
                await self._cache.delete(balance_cache_key(account_id))
            except Exception:
                logger.exception("Failed to invalidate cached balance for %s", account_id)
        if debited and self._notifications:
            try:
                await self._notifications.notify_low_credits(account_id, balance)
            except Exception:
                logger.exception("Failed to send low-credit notification for %s", account_id)

    async def _flag_unrefunded(self, account_id: str, amount: int, reason: str, error: str) -> None:
        if not self._notifications:
            return
        try:
            await self._notifications.flag_unrefunded_debit(account_id, amount, reason, error)
        except Exception:
            logger.exception("Failed to flag un-refunded debit for %s", account_id)
