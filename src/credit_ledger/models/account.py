from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, List, Optional

from pydantic import BaseModel, Field

from .base import DBSerializableModel, utcnow


class PlanTier(str, Enum):
    """Paid plans, lowest tier first."""

    BASE = "base"
    ESSENTIAL = "essential"
    ULTIMATE = "ultimate"

    @classmethod
    def lowest(cls) -> "PlanTier":
        return cls.BASE

    @classmethod
    def parse(cls, value: Any) -> Optional["PlanTier"]:
        """Return the tier named by `value`, or None for empty/unknown names."""
        if isinstance(value, cls):
            return value
        if not value:
            return None
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class Account(DBSerializableModel):
    """
    One row per user. `credits` and the subscription fields are written only
    through the store's atomic primitives.
    """

    collection_name: ClassVar[str] = "credit_accounts"
    unique_fields: ClassVar[tuple[str, ...]] = ("billing_customer_id",)

    id: Optional[str] = Field(default=None)
    credits: int = Field(default=0, ge=0)
    plan: Optional[PlanTier] = None
    monthly_allocation: int = 0
    billing_customer_id: Optional[str] = None
    billing_subscription_id: Optional[str] = None
    subscription_start: Optional[datetime] = None
    subscription_renewal: Optional[datetime] = None
    processed_checkout_sessions: List[str] = Field(
        default_factory=list,
        description="Checkout sessions whose monthly allocation was already granted.",
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class BalanceInfo(BaseModel):
    account_id: str
    credits: int
    plan: Optional[PlanTier] = None
