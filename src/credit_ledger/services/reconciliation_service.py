from __future__ import annotations

import logging
from typing import Any, Awaitable, Dict, Mapping, Optional

from ..billing.base import BillingProvider, subscription_from_dict
from ..cache.base import AsyncCacheBackend, balance_cache_key, price_mapping_cache_key
from ..db.base import BaseDBManager
from ..exceptions import AccountNotFound, MalformedBillingEvent, SessionNotComplete
from ..logging.ledger_logger import LedgerLogger
from ..models.account import Account, PlanTier
from ..models.base import utcnow
from ..models.subscription import (
    BillingEvent,
    CheckoutSession,
    PriceMapping,
    ProcessedCheckout,
    ReconciliationResult,
    SubscriptionAction,
    SubscriptionHistoryEntry,
    SubscriptionRecord,
    SubscriptionStatus,
)
from ..models.transaction import Transaction, TransactionKind
from .pricing import PricingPolicy


logger = logging.getLogger(__name__)

# Statuses for which a subscription update still describes a live plan.
UPDATABLE_STATUSES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIALING.value,
    SubscriptionStatus.PAST_DUE.value,
)

DISPATCHED_EVENTS = (
    "checkout.session.completed",
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)


class ReconciliationService:
    """
    Turns completed checkouts into plan + credit state, exactly once.

    `reconcile_checkout_completion` is the single entry point for both the
    webhook delivery and the client-triggered fallback. Either may arrive
    first, twice, or concurrently with the other: the grant is gated inside
    one atomic account update keyed by checkout session id, so only the first
    caller credits and every later one gets an `idempotent_replay` result.

    Subscription updates and cancellations only touch plan metadata; renewals
    never grant credits here.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerLogger,
        billing: BillingProvider,
        pricing: PricingPolicy,
        cache: Optional[AsyncCacheBackend] = None,
        price_plan_map: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._billing = billing
        self._pricing = pricing
        self._cache = cache
        self._price_plan_map = dict(price_plan_map or {})

    # Checkout completion
    async def reconcile_checkout_completion(
        self, session_id: str, correlation_id: str | None = None
    ) -> ReconciliationResult:
        session = await self._billing.retrieve_checkout_session(session_id)
        subscription = self._verify(session)
        account_id = session.account_id or ""

        plan = await self.resolve_plan(session.metadata, subscription)
        details = self._pricing.plan_details(plan)

        new_balance = await self._db.apply_checkout_grant(
            account_id,
            session_id=session.id,
            plan=details.plan,
            monthly_allocation=details.monthly_credits,
            subscription_id=subscription.id,
            customer_id=session.customer_id or subscription.customer_id,
            subscription_start=utcnow(),
            subscription_renewal=subscription.current_period_end,
        )

        if new_balance is None:
            account = await self._db.get_account(account_id)
            if account is None:
                raise AccountNotFound(account_id)
            logger.info(
                "Checkout session %s was already credited to account %s", session.id, account_id
            )
            return ReconciliationResult(
                account_id=account_id,
                plan=account.plan or details.plan,
                credits_granted=0,
                idempotent_replay=True,
                remaining_credits=account.credits,
            )

        logger.info(
            "Granted %s credits to account %s for %s plan (session %s, subscription %s is %s)",
            details.monthly_credits,
            account_id,
            details.plan.value,
            session.id,
            subscription.id,
            subscription.status,
        )
        await self._invalidate_balance(account_id)

        await self._best_effort(
            "processed checkout",
            self._record_processed_checkout(
                ProcessedCheckout(
                    session_id=session.id,
                    account_id=account_id,
                    subscription_id=subscription.id,
                    plan=details.plan,
                    credits_granted=details.monthly_credits,
                )
            ),
        )
        await self._best_effort(
            "subscription grant transaction",
            self._db.add_transaction(
                Transaction(
                    account_id=account_id,
                    amount=details.monthly_credits,
                    kind=TransactionKind.SUBSCRIPTION_GRANT,
                    description=f"Monthly credit allocation for {details.plan.value} plan",
                    balance_after=new_balance,
                    metadata={
                        "plan": details.plan.value,
                        "monthly_credits": details.monthly_credits,
                        "session_id": session.id,
                    },
                )
            ),
        )
        await self._best_effort(
            "subscription history",
            self._db.add_subscription_history(
                SubscriptionHistoryEntry(
                    account_id=account_id,
                    plan=details.plan,
                    action=SubscriptionAction.STARTED,
                    subscription_id=subscription.id,
                    amount_paid=details.price,
                    credits_allocated=details.monthly_credits,
                )
            ),
        )
        await self._ledger.log_transaction(
            account_id=account_id,
            message="Subscription credits granted",
            details={
                "session_id": session.id,
                "plan": details.plan.value,
                "amount": details.monthly_credits,
                "new_balance": new_balance,
            },
            correlation_id=correlation_id,
        )

        return ReconciliationResult(
            account_id=account_id,
            plan=details.plan,
            credits_granted=details.monthly_credits,
            idempotent_replay=False,
            remaining_credits=new_balance,
        )

    @staticmethod
    def _verify(session: CheckoutSession) -> SubscriptionRecord:
        if not session.is_paid:
            raise SessionNotComplete(
                session.id,
                f"status={session.status} payment_status={session.payment_status}",
            )
        if not session.account_id:
            raise SessionNotComplete(session.id, "no account reference on session")
        if session.subscription is None:
            raise SessionNotComplete(session.id, "no subscription attached")
        if not session.subscription.is_entitled:
            raise SessionNotComplete(
                session.id, f"subscription status is {session.subscription.status}"
            )
        return session.subscription

    async def _record_processed_checkout(self, record: ProcessedCheckout) -> None:
        if not await self._db.add_processed_checkout(record):
            logger.warning("Processed checkout record for %s already existed", record.session_id)

    # Plan resolution
    async def resolve_plan(
        self,
        metadata: Mapping[str, Any],
        subscription: SubscriptionRecord,
        prefer_price: bool = False,
    ) -> PlanTier:
        """
        Explicit `plan_type` metadata wins, then the price → plan mapping,
        then the lowest tier. With `prefer_price` the mapping is consulted
        first, since a plan change keeps the checkout's original metadata.
        """
        from_metadata = PlanTier.parse(metadata.get("plan_type"))
        if from_metadata is not None and not prefer_price:
            return from_metadata

        for price_id in subscription.price_ids:
            plan = await self.plan_for_price(price_id)
            if plan is not None:
                return plan

        if from_metadata is not None:
            return from_metadata

        lowest = PlanTier.lowest()
        logger.warning(
            "Could not resolve plan for subscription %s (prices %s), defaulting to %s",
            subscription.id,
            subscription.price_ids,
            lowest.value,
        )
        return lowest

    async def plan_for_price(self, price_id: str) -> Optional[PlanTier]:
        key = price_mapping_cache_key(price_id)
        if self._cache:
            cached = await self._cache.get(key)
            if cached:
                return PlanTier.parse(cached)

        plan: Optional[PlanTier] = None
        mapping = await self._db.get_price_mapping(price_id)
        if mapping is not None:
            plan = mapping.plan
        else:
            plan = PlanTier.parse(self._price_plan_map.get(price_id))

        if plan is not None and self._cache:
            await self._cache.set(key, plan.value, ttl_seconds=300)
        return plan

    async def register_price_mapping(self, price_id: str, plan: PlanTier) -> PriceMapping:
        mapping = await self._db.add_price_mapping(PriceMapping(price_id=price_id, plan=plan))
        if self._cache:
            await self._cache.delete(price_mapping_cache_key(price_id))
        return mapping

    # Subscription lifecycle (metadata only)
    async def apply_subscription_update(
        self, subscription: SubscriptionRecord, correlation_id: str | None = None
    ) -> Optional[Account]:
        if subscription.status not in UPDATABLE_STATUSES:
            logger.info(
                "Ignoring update of subscription %s in status %s",
                subscription.id,
                subscription.status,
            )
            return None

        account = await self._account_for_subscription(subscription)
        if account is None or account.id is None:
            logger.warning("No account found for subscription %s", subscription.id)
            return None

        plan = await self.resolve_plan(subscription.metadata, subscription, prefer_price=True)
        details = self._pricing.plan_details(plan)
        updated = await self._db.update_subscription_metadata(
            account.id,
            plan=details.plan,
            monthly_allocation=details.monthly_credits,
            subscription_id=subscription.id,
            customer_id=subscription.customer_id,
            subscription_renewal=subscription.current_period_end,
        )
        logger.info(
            "Subscription update for account %s: %s -> %s",
            account.id,
            account.plan.value if account.plan else None,
            details.plan.value,
        )

        await self._best_effort(
            "subscription history",
            self._db.add_subscription_history(
                SubscriptionHistoryEntry(
                    account_id=account.id,
                    plan=details.plan,
                    action=SubscriptionAction.UPDATED,
                    subscription_id=subscription.id,
                )
            ),
        )
        await self._ledger.log_transaction(
            account_id=account.id,
            message="Subscription updated",
            details={"subscription_id": subscription.id, "plan": details.plan.value},
            correlation_id=correlation_id,
        )
        return updated

    async def apply_subscription_cancellation(
        self, subscription: SubscriptionRecord, correlation_id: str | None = None
    ) -> Optional[Account]:
        account = await self._account_for_subscription(subscription)
        if account is None or account.id is None:
            logger.warning("No account found for cancelled subscription %s", subscription.id)
            return None

        if account.billing_subscription_id and account.billing_subscription_id != subscription.id:
            logger.info(
                "Ignoring cancellation of superseded subscription %s on account %s",
                subscription.id,
                account.id,
            )
            return account

        updated = await self._db.clear_subscription(account.id)
        logger.info("Subscription %s cancelled, account %s reverted to no plan", subscription.id, account.id)

        await self._best_effort(
            "subscription history",
            self._db.add_subscription_history(
                SubscriptionHistoryEntry(
                    account_id=account.id,
                    plan=None,
                    action=SubscriptionAction.CANCELLED,
                    subscription_id=subscription.id,
                )
            ),
        )
        await self._ledger.log_transaction(
            account_id=account.id,
            message="Subscription cancelled",
            details={"subscription_id": subscription.id},
            correlation_id=correlation_id,
        )
        return updated

    async def _account_for_subscription(self, subscription: SubscriptionRecord) -> Optional[Account]:
        if subscription.customer_id:
            account = await self._db.get_account_by_customer_id(subscription.customer_id)
            if account is not None:
                return account
        account_id = subscription.metadata.get("user_id")
        if account_id:
            return await self._db.get_account(account_id)
        return None

    # Webhook producer
    async def handle_webhook(self, payload: bytes, signature: str) -> Dict[str, Any]:
        event = self._billing.construct_event(payload, signature)
        return await self.handle_event(event)

    async def handle_event(self, event: BillingEvent) -> Dict[str, Any]:
        """
        Dispatch a verified event. Rejections that retrying cannot fix are
        acknowledged; store errors propagate so the provider redelivers.
        """
        obj = event.data.get("object") or {}
        response: Dict[str, Any] = {"received": True, "type": event.type, "handled": True}

        try:
            if event.type in DISPATCHED_EVENTS and not (
                isinstance(obj, Mapping) and obj.get("id")
            ):
                raise MalformedBillingEvent(event.id, "event object has no id")
            if event.type == "checkout.session.completed":
                result = await self.reconcile_checkout_completion(obj["id"], correlation_id=event.id)
                response["idempotent_replay"] = result.idempotent_replay
            elif event.type in ("customer.subscription.created", "customer.subscription.updated"):
                await self.apply_subscription_update(
                    subscription_from_dict(obj), correlation_id=event.id
                )
            elif event.type == "customer.subscription.deleted":
                await self.apply_subscription_cancellation(
                    subscription_from_dict(obj), correlation_id=event.id
                )
            else:
                logger.info("Unhandled billing event type %s", event.type)
                response["handled"] = False
        except (SessionNotComplete, AccountNotFound, MalformedBillingEvent) as exc:
            logger.warning("Billing event %s (%s) not applied: %s", event.id, event.type, exc)
            response["handled"] = False
        return response

    # Helpers
    async def _invalidate_balance(self, account_id: str) -> None:
        if not self._cache:
            return
        try:
            await self._cache.delete(balance_cache_key(account_id))
        except Exception:
            logger.exception("Failed to invalidate cached balance for %s", account_id)

    @staticmethod
    async def _best_effort(what: str, awaitable: Awaitable[Any]) -> None:
        try:
            await awaitable
        except Exception:
            logger.exception("Failed to record %s", what)
