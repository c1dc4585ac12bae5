from __future__ import annotations

from typing import Any, Dict, Optional


class CreditLedgerError(Exception):
    """
    Base class for every error raised by the ledger.

    `code` is a stable machine-readable identifier and `http_status` the
    status an HTTP surface should answer with.
    """

    code: str = "CREDIT_LEDGER_ERROR"
    http_status: int = 500

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": str(self), "code": self.code}


class InsufficientCredits(CreditLedgerError, ValueError):
    code = "INSUFFICIENT_CREDITS"
    http_status = 402

    def __init__(self, have: int, need: int) -> None:
        self.have = have
        self.need = need
        super().__init__(f"insufficient credits: have {have}, need {need}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"available": self.have, "required": self.need})
        return data


class SubscriptionRequired(CreditLedgerError):
    """
    Paywall signal for accounts without a plan.

    `reason` distinguishes an exhausted free tier from a restricted-content
    request, since the user has to act differently on each.
    """

    code = "SUBSCRIPTION_REQUIRED"
    http_status = 402

    FREE_TIER_EXHAUSTED = "free_tier_exhausted"
    RESTRICTED_REQUIRES_PLAN = "restricted_requires_plan"
    PLAN_REQUIRED = "plan_required"

    def __init__(self, reason: str, message: Optional[str] = None) -> None:
        self.reason = reason
        super().__init__(message or reason)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.reason
        return data


class PlanNotEligible(CreditLedgerError):
    code = "PLAN_NOT_ELIGIBLE"
    http_status = 402

    def __init__(self, plan: Optional[str]) -> None:
        self.plan = plan
        super().__init__(f"restricted content is not available on plan {plan!r}")


class SessionNotComplete(CreditLedgerError):
    code = "SESSION_NOT_COMPLETE"
    http_status = 400

    def __init__(self, session_id: str, reason: str) -> None:
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"checkout session {session_id} rejected: {reason}")


class AccountNotFound(CreditLedgerError):
    code = "ACCOUNT_NOT_FOUND"
    http_status = 404

    def __init__(self, account_id: Optional[str]) -> None:
        self.account_id = account_id
        super().__init__(f"account {account_id!r} not found")


class StoreUnavailable(CreditLedgerError):
    """
    The ledger store could not be reached. The outcome of the mutation is
    unknown; callers should re-read the balance before retrying.
    """

    code = "STORE_UNAVAILABLE"
    http_status = 503

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["retry"] = True
        return data


class StoreTimeout(StoreUnavailable):
    code = "STORE_TIMEOUT"
    http_status = 504


class RefundFailed(CreditLedgerError):
    """Raised and handled inside the refund path; never reaches end users."""

    code = "REFUND_FAILED"

    def __init__(self, account_id: str, amount: int, reason: str) -> None:
        self.account_id = account_id
        self.amount = amount
        super().__init__(f"refund of {amount} credits to {account_id} failed: {reason}")


class TransactionNotFound(CreditLedgerError):
    code = "TRANSACTION_NOT_FOUND"
    http_status = 404

    def __init__(self, transaction_id: str) -> None:
        self.transaction_id = transaction_id
        super().__init__(f"transaction {transaction_id!r} not found")


class RefundNotAllowed(CreditLedgerError):
    """The transaction is not a debit, or it was already refunded."""

    code = "REFUND_NOT_ALLOWED"
    http_status = 409

    def __init__(self, transaction_id: str, reason: str) -> None:
        self.transaction_id = transaction_id
        self.reason = reason
        super().__init__(f"transaction {transaction_id} cannot be refunded: {reason}")


class BillingProviderError(CreditLedgerError):
    code = "BILLING_PROVIDER_ERROR"
    http_status = 502


class WebhookSignatureError(BillingProviderError):
    code = "INVALID_WEBHOOK_SIGNATURE"
    http_status = 400


class MalformedBillingEvent(CreditLedgerError):
    """A verified event whose payload cannot be acted on. Never retried."""

    code = "MALFORMED_BILLING_EVENT"
    http_status = 400

    def __init__(self, event_id: str, reason: str) -> None:
        self.event_id = event_id
        self.reason = reason
        super().__init__(f"billing event {event_id} is malformed: {reason}")
