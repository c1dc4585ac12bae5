from __future__ import annotations

import json
from typing import Dict

from .base import BillingProvider
from ..exceptions import BillingProviderError, WebhookSignatureError
from ..models.subscription import BillingEvent, CheckoutSession, SubscriptionRecord


class InMemoryBillingProvider(BillingProvider):
    """
    Billing provider double for tests and local development.

    Webhook "signatures" are accepted when they equal `webhook_secret`.
    """

    def __init__(self, webhook_secret: str = "whsec_test") -> None:
        self.webhook_secret = webhook_secret
        self._sessions: Dict[str, CheckoutSession] = {}
        self._subscriptions: Dict[str, SubscriptionRecord] = {}
        self.session_lookups: int = 0

    def add_session(self, session: CheckoutSession) -> CheckoutSession:
        self._sessions[session.id] = session
        if session.subscription is not None:
            self._subscriptions[session.subscription.id] = session.subscription
        return session

    def add_subscription(self, subscription: SubscriptionRecord) -> SubscriptionRecord:
        self._subscriptions[subscription.id] = subscription
        return subscription

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        self.session_lookups += 1
        session = self._sessions.get(session_id)
        if session is None:
            raise BillingProviderError(f"could not retrieve checkout session {session_id}")
        return session.model_copy(deep=True)

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionRecord:
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None:
            raise BillingProviderError(f"could not retrieve subscription {subscription_id}")
        return subscription.model_copy(deep=True)

    def construct_event(self, payload: bytes, signature: str) -> BillingEvent:
        if signature != self.webhook_secret:
            raise WebhookSignatureError("webhook signature verification failed")
        try:
            data = json.loads(payload)
        except ValueError as exc:
            raise WebhookSignatureError(f"invalid webhook payload: {exc}") from exc
        if not isinstance(data, dict):
            raise WebhookSignatureError("invalid webhook payload: expected an object")
        return BillingEvent(
            id=data.get("id") or "", type=data.get("type") or "", data=data.get("data") or {}
        )
