from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from ..models.subscription import BillingEvent, CheckoutSession, SubscriptionRecord


class BillingProvider(ABC):
    """
    The slice of the billing provider the reconciliation handler needs:
    reading checkout sessions and subscriptions, and verifying webhooks.
    """

    @abstractmethod
    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        """Fetch a checkout session with its subscription expanded."""
        ...

    @abstractmethod
    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionRecord: ...

    @abstractmethod
    def construct_event(self, payload: bytes, signature: str) -> BillingEvent:
        """Verify a webhook delivery and decode it. Raises WebhookSignatureError."""
        ...


def to_datetime(timestamp: Any) -> Optional[datetime]:
    if not timestamp:
        return None
    if isinstance(timestamp, datetime):
        return timestamp
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc)


def _items(data: Mapping[str, Any]) -> List[Mapping[str, Any]]:
    items = data.get("items") or {}
    if isinstance(items, Mapping):
        return list(items.get("data") or [])
    return list(items)


def subscription_from_dict(data: Mapping[str, Any]) -> SubscriptionRecord:
    """
    Normalize a provider subscription payload (as found in API responses
    and webhook events).

    Newer API versions report the billing period per item rather than on the
    subscription, so both places are consulted.
    """
    items = _items(data)
    price_ids = []
    for item in items:
        price = item.get("price") or {}
        price_id = price.get("id") if isinstance(price, Mapping) else price
        if price_id:
            price_ids.append(price_id)

    first_item = items[0] if items else {}
    period_start = data.get("current_period_start") or first_item.get("current_period_start")
    period_end = data.get("current_period_end") or first_item.get("current_period_end")

    customer = data.get("customer")
    if isinstance(customer, Mapping):
        customer = customer.get("id")

    return SubscriptionRecord(
        id=data["id"],
        customer_id=customer,
        status=data.get("status") or "",
        price_ids=price_ids,
        current_period_start=to_datetime(period_start),
        current_period_end=to_datetime(period_end),
        trial_end=to_datetime(data.get("trial_end")),
        metadata=dict(data.get("metadata") or {}),
    )


def checkout_session_from_dict(data: Mapping[str, Any]) -> CheckoutSession:
    metadata: Dict[str, Any] = dict(data.get("metadata") or {})

    subscription: Optional[SubscriptionRecord] = None
    raw_subscription = data.get("subscription")
    if isinstance(raw_subscription, Mapping):
        subscription = subscription_from_dict(raw_subscription)

    customer = data.get("customer")
    if isinstance(customer, Mapping):
        customer = customer.get("id")

    return CheckoutSession(
        id=data["id"],
        status=data.get("status"),
        payment_status=data.get("payment_status"),
        account_id=metadata.get("user_id") or data.get("client_reference_id"),
        customer_id=customer,
        subscription=subscription,
        metadata=metadata,
    )


def subscription_id_of(data: Mapping[str, Any]) -> Optional[str]:
    """The subscription id of a session payload, expanded or not."""
    raw = data.get("subscription")
    if isinstance(raw, Mapping):
        return raw.get("id")
    return raw
