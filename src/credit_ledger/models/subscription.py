from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import BaseModel, Field

from .account import PlanTier
from .base import DBSerializableModel, utcnow


class PlanDetails(BaseModel):
    plan: PlanTier
    monthly_credits: int
    price: float


class PriceMapping(DBSerializableModel):
    """Billing provider price identifier mapped to the plan it sells."""

    collection_name: ClassVar[str] = "credit_price_mappings"
    primary_key: ClassVar[Optional[str]] = "price_id"

    price_id: str
    plan: PlanTier


class ProcessedCheckout(DBSerializableModel):
    """
    Audit record of a checkout session whose allocation has been granted.
    Keyed (and unique) by the provider's session id.
    """

    collection_name: ClassVar[str] = "credit_processed_checkouts"
    primary_key: ClassVar[Optional[str]] = "session_id"

    session_id: str
    account_id: str
    subscription_id: Optional[str] = None
    plan: PlanTier
    credits_granted: int
    processed_at: datetime = Field(default_factory=utcnow)


class SubscriptionAction(str, Enum):
    STARTED = "started"
    UPDATED = "updated"
    CANCELLED = "cancelled"


class SubscriptionHistoryEntry(DBSerializableModel):
    collection_name: ClassVar[str] = "credit_subscription_history"

    id: Optional[str] = Field(default=None)
    account_id: str
    plan: Optional[PlanTier] = None
    action: SubscriptionAction
    subscription_id: Optional[str] = None
    amount_paid: Optional[float] = None
    credits_allocated: int = 0
    created_at: datetime = Field(default_factory=utcnow)


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    PAUSED = "paused"


class SubscriptionRecord(BaseModel):
    """Provider-neutral view of a billing subscription."""

    id: str
    customer_id: Optional[str] = None
    status: str
    price_ids: List[str] = Field(default_factory=list)
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_entitled(self) -> bool:
        """Trialing subscriptions are credited exactly like active ones."""
        return self.status in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value)


class CheckoutSession(BaseModel):
    """Provider-neutral view of a completed (or not) checkout session."""

    id: str
    status: Optional[str] = None
    payment_status: Optional[str] = None
    account_id: Optional[str] = None
    customer_id: Optional[str] = None
    subscription: Optional[SubscriptionRecord] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    PAID_STATES: ClassVar[tuple[str, ...]] = ("paid", "no_payment_required")

    @property
    def is_paid(self) -> bool:
        return self.status == "complete" and self.payment_status in self.PAID_STATES


class BillingEvent(BaseModel):
    """A verified webhook event."""

    id: str
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)


class ReconciliationResult(BaseModel):
    account_id: str
    plan: PlanTier
    credits_granted: int
    idempotent_replay: bool = False
    remaining_credits: Optional[int] = None
