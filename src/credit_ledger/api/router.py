from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request

from ..exceptions import CreditLedgerError, StoreUnavailable
from ..models.api_models import (
    CheckoutCompletionRequest,
    CheckoutCompletionResponse,
    CreditBalanceResponse,
    GenerationChargeRequest,
    GenerationChargeResponse,
    RefundRequest,
    RefundResponse,
)
from .dependencies import LedgerServices, get_services


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credits", tags=["credits"])
billing_router = APIRouter(prefix="/billing", tags=["billing"])


def _http_error(exc: CreditLedgerError) -> HTTPException:
    headers = {"Retry-After": "1"} if isinstance(exc, StoreUnavailable) else None
    return HTTPException(status_code=exc.http_status, detail=exc.to_dict(), headers=headers)


@router.get("/balance/{account_id}", response_model=CreditBalanceResponse)
async def get_balance(
    account_id: str, services: LedgerServices = Depends(get_services)
) -> CreditBalanceResponse:
    try:
        balance = await services.credits.get_balance(account_id)
    except CreditLedgerError as exc:
        raise _http_error(exc) from exc
    return CreditBalanceResponse(
        account_id=account_id,
        credits=balance.credits,
        plan=balance.plan.value if balance.plan else None,
    )


@router.post("/generation", response_model=GenerationChargeResponse)
async def charge_generation(
    payload: GenerationChargeRequest, services: LedgerServices = Depends(get_services)
) -> GenerationChargeResponse:
    try:
        charge = await services.credits.check_and_debit_for_generation(
            payload.account_id, payload.is_restricted, payload.options
        )
    except CreditLedgerError as exc:
        raise _http_error(exc) from exc
    return GenerationChargeResponse(**charge.model_dump())


@router.post("/refund", response_model=RefundResponse)
async def refund(
    payload: RefundRequest, services: LedgerServices = Depends(get_services)
) -> RefundResponse:
    try:
        remaining = await services.credits.refund_transaction(
            payload.account_id, payload.transaction_id, payload.reason
        )
    except CreditLedgerError as exc:
        raise _http_error(exc) from exc
    return RefundResponse(
        account_id=payload.account_id,
        refunded=remaining is not None,
        remaining_credits=remaining,
    )


@billing_router.post("/checkout/complete", response_model=CheckoutCompletionResponse)
async def complete_checkout(
    payload: CheckoutCompletionRequest, services: LedgerServices = Depends(get_services)
) -> CheckoutCompletionResponse:
    """Client-triggered fallback for when the webhook is late or lost."""
    try:
        result = await services.reconciliation.reconcile_checkout_completion(payload.session_id)
    except CreditLedgerError as exc:
        raise _http_error(exc) from exc
    return CheckoutCompletionResponse(
        account_id=result.account_id,
        plan=result.plan.value,
        credits_granted=result.credits_granted,
        idempotent_replay=result.idempotent_replay,
        remaining_credits=result.remaining_credits,
    )


@billing_router.post("/webhook")
async def billing_webhook(
    request: Request, services: LedgerServices = Depends(get_services)
) -> dict:
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")
    try:
        return await services.reconciliation.handle_webhook(payload, signature)
    except CreditLedgerError as exc:
        logger.warning("Webhook delivery rejected: %s", exc)
        raise _http_error(exc) from exc


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    provider = app.dependency_overrides.get(get_services, get_services)
    services = provider()
    await services.db.initialize()
    yield


def create_app() -> FastAPI:
    app = FastAPI(title="Credit ledger", lifespan=lifespan)
    app.include_router(router)
    app.include_router(billing_router)
    return app
