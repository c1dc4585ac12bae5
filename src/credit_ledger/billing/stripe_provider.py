"""Billing provider backed by Stripe checkout sessions and webhooks."""

from __future__ import annotations

import logging
from typing import Any, Dict

import stripe
from starlette.concurrency import run_in_threadpool

from .base import (
    BillingProvider,
    checkout_session_from_dict,
    subscription_from_dict,
    subscription_id_of,
)
from ..exceptions import BillingProviderError, WebhookSignatureError
from ..models.subscription import BillingEvent, CheckoutSession, SubscriptionRecord


logger = logging.getLogger(__name__)


class StripeBillingProvider(BillingProvider):
    """
    The Stripe SDK is synchronous, so every API call runs in the threadpool
    to keep the event loop free.
    """

    def __init__(self, secret_key: str, webhook_secret: str) -> None:
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret

    def _ensure_api_key(self) -> None:
        if not self._secret_key:
            raise BillingProviderError("Stripe secret key is not configured")
        if stripe.api_key != self._secret_key:
            stripe.api_key = self._secret_key

    @staticmethod
    def _as_dict(stripe_object: Any) -> Dict[str, Any]:
        if stripe_object is None:
            return {}
        if isinstance(stripe_object, dict):
            return stripe_object
        to_dict = getattr(stripe_object, "to_dict", None)
        if callable(to_dict):
            return to_dict()
        to_dict_recursive = getattr(stripe_object, "to_dict_recursive", None)
        if callable(to_dict_recursive):
            return to_dict_recursive()
        return dict(stripe_object)

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        self._ensure_api_key()
        try:
            session = await run_in_threadpool(
                stripe.checkout.Session.retrieve, session_id, expand=["subscription"]
            )
        except stripe.StripeError as exc:
            logger.error("Failed to retrieve checkout session %s: %s", session_id, exc)
            raise BillingProviderError(f"could not retrieve checkout session {session_id}") from exc

        data = self._as_dict(session)
        subscription_id = subscription_id_of(data)
        if subscription_id and not isinstance(data.get("subscription"), dict):
            # Expansion is best-effort on Stripe's side; fetch it explicitly.
            data["subscription"] = self._as_dict(
                await self._retrieve_raw_subscription(subscription_id)
            )
        return checkout_session_from_dict(data)

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionRecord:
        self._ensure_api_key()
        subscription = await self._retrieve_raw_subscription(subscription_id)
        return subscription_from_dict(self._as_dict(subscription))

    async def _retrieve_raw_subscription(self, subscription_id: str) -> Any:
        try:
            return await run_in_threadpool(stripe.Subscription.retrieve, subscription_id)
        except stripe.StripeError as exc:
            logger.error("Failed to retrieve subscription %s: %s", subscription_id, exc)
            raise BillingProviderError(f"could not retrieve subscription {subscription_id}") from exc

    def construct_event(self, payload: bytes, signature: str) -> BillingEvent:
        if not self._webhook_secret:
            raise BillingProviderError("Stripe webhook secret is not configured")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except ValueError as exc:
            raise WebhookSignatureError(f"invalid webhook payload: {exc}") from exc
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError(f"webhook signature verification failed: {exc}") from exc

        data = self._as_dict(event)
        return BillingEvent(
            id=data.get("id") or "",
            type=data.get("type") or "",
            data=dict(data.get("data") or {}),
        )
