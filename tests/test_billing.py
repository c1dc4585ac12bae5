from __future__ import annotations

import json

import pytest

from credit_ledger.billing.base import (
    checkout_session_from_dict,
    subscription_from_dict,
    subscription_id_of,
)
from credit_ledger.billing.stripe_provider import StripeBillingProvider
from credit_ledger.exceptions import BillingProviderError, WebhookSignatureError


def test_subscription_period_read_from_items():
    record = subscription_from_dict(
        {
            "id": "sub_1",
            "customer": {"id": "cus_1"},
            "status": "trialing",
            "items": {
                "data": [
                    {
                        "price": {"id": "price_a"},
                        "current_period_start": 1764547200,
                        "current_period_end": 1767225600,
                    }
                ]
            },
            "metadata": {"user_id": "acct-1"},
        }
    )

    assert record.customer_id == "cus_1"
    assert record.price_ids == ["price_a"]
    assert record.current_period_end.year == 2026
    assert record.is_entitled
    assert record.metadata == {"user_id": "acct-1"}


def test_checkout_session_account_falls_back_to_client_reference():
    session = checkout_session_from_dict(
        {
            "id": "cs_1",
            "status": "complete",
            "payment_status": "paid",
            "client_reference_id": "acct-9",
            "customer": "cus_9",
            "subscription": {"id": "sub_9", "status": "active", "items": {"data": []}},
        }
    )

    assert session.account_id == "acct-9"
    assert session.is_paid
    assert session.subscription.id == "sub_9"


def test_checkout_session_metadata_wins_over_client_reference():
    session = checkout_session_from_dict(
        {
            "id": "cs_1",
            "client_reference_id": "acct-9",
            "metadata": {"user_id": "acct-1", "plan_type": "ultimate"},
        }
    )
    assert session.account_id == "acct-1"
    assert session.subscription is None
    assert not session.is_paid


def test_subscription_id_of_expanded_and_plain():
    assert subscription_id_of({"subscription": "sub_1"}) == "sub_1"
    assert subscription_id_of({"subscription": {"id": "sub_2"}}) == "sub_2"
    assert subscription_id_of({}) is None


def test_in_memory_provider_verifies_signature(billing):
    payload = json.dumps({"id": "evt_1", "type": "ping", "data": {}}).encode()

    event = billing.construct_event(payload, "whsec_test")
    assert event.type == "ping"

    with pytest.raises(WebhookSignatureError):
        billing.construct_event(payload, "whsec_other")
    with pytest.raises(WebhookSignatureError):
        billing.construct_event(b"not json", "whsec_test")


def test_stripe_provider_rejects_unsigned_payload():
    provider = StripeBillingProvider(secret_key="sk_test_x", webhook_secret="whsec_x")

    with pytest.raises(WebhookSignatureError):
        provider.construct_event(b'{"id": "evt_1"}', "t=1,v1=forged")


def test_stripe_provider_requires_configuration():
    provider = StripeBillingProvider(secret_key="", webhook_secret="")

    with pytest.raises(BillingProviderError):
        provider.construct_event(b"{}", "sig")
