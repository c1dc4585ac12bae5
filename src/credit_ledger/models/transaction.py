from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class TransactionKind(str, Enum):
    GENERATION = "generation"
    PROJECT_CREATION = "project_creation"
    REFUND = "refund"
    SUBSCRIPTION_GRANT = "subscription_grant"
    FREE_TIER = "free_tier"


class Transaction(DBSerializableModel):
    """
    Append-only audit row, one per credit-affecting event.

    `amount` is signed: negative for debits, positive for grants and refunds,
    zero for free-tier generations. The balance on the account row stays
    authoritative; this log is written best-effort.
    """

    collection_name: ClassVar[str] = "credit_transactions"

    id: Optional[str] = Field(default=None)
    account_id: str
    amount: int
    kind: TransactionKind
    description: Optional[str] = None
    balance_after: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    refunded_at: Optional[datetime] = Field(
        default=None,
        description="Set once when a debit is refunded; a debit is refunded at most once.",
    )
    created_at: datetime = Field(default_factory=utcnow)
