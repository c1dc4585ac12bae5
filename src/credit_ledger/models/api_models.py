from typing import Optional

from pydantic import BaseModel, Field

from .generation import GenerationOptions


class GenerationChargeRequest(BaseModel):
    account_id: str
    is_restricted: bool = False
    options: GenerationOptions = Field(default_factory=GenerationOptions)


class GenerationChargeResponse(BaseModel):
    cost: int
    remaining_credits: int
    was_free: bool
    transaction_id: Optional[str] = None


class RefundRequest(BaseModel):
    account_id: str
    transaction_id: str
    reason: str


class RefundResponse(BaseModel):
    account_id: str
    refunded: bool
    remaining_credits: Optional[int] = None


class CreditBalanceResponse(BaseModel):
    account_id: str
    credits: int
    plan: Optional[str] = None


class CheckoutCompletionRequest(BaseModel):
    session_id: str


class CheckoutCompletionResponse(BaseModel):
    account_id: str
    plan: str
    credits_granted: int
    idempotent_replay: bool
    remaining_credits: Optional[int] = None
