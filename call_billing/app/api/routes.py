from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from ..core.clients import StripeGateway
from ..core.dependencies import (
    get_balance_service,
    get_current_account,
    get_settlement_service,
    get_stripe_gateway,
)
from ..models import (
    AccountResponse,
    CallRecordResponse,
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    StatementResponse,
)
from ..services import BalanceService, SettlementService


router = APIRouter(prefix="/accounts", tags=["accounts"])

@router.get("/me", response_model=AccountResponse)
def get_own_account(
    account: AccountResponse = Depends(get_current_account),
) -> AccountResponse:
    return account

@router.get("/me/transactions", response_model=StatementResponse)
def get_own_transactions(
    limit: int = Query(default=50, ge=1, le=200),
    cursor: Optional[str] = None,
    account: AccountResponse = Depends(get_current_account),
    service: BalanceService = Depends(get_balance_service),
) -> StatementResponse:
    return service.get_statement(account.id, limit=limit, cursor=cursor)

calls_router = APIRouter(prefix="/calls", tags=["calls"])

@calls_router.get("", response_model=list[CallRecordResponse])
def list_own_calls(
    limit: int = Query(default=50, ge=1, le=200),
    account: AccountResponse = Depends(get_current_account),
    service: SettlementService = Depends(get_settlement_service),
) -> list[CallRecordResponse]:
    return service.call_history(account.id, limit=limit)

payments_router = APIRouter(prefix="/payments", tags=["payments"])

@payments_router.post(
    "/checkout-session",
    response_model=CheckoutSessionResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_checkout_session(
    payload: CheckoutSessionRequest,
    account: AccountResponse = Depends(get_current_account),
    gateway: StripeGateway = Depends(get_stripe_gateway),
) -> CheckoutSessionResponse:
    session = gateway.create_checkout_session(account.id, payload.amount)
    return CheckoutSessionResponse(session_id=session.session_id, url=session.url)

__all__ = ["router", "calls_router", "payments_router"]
