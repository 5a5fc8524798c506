from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session

from ..models import AccountResponse
from ..services import (
    BalanceService,
    BillingRepository,
    PriceSheetImporter,
    PricingEngine,
    PricingRepository,
    SettlementService,
)
from .clients import ProviderClients, StripeGateway
from .config import Settings, get_settings
from .db import get_session
from .errors import AuthError, PaymentsUnavailableError, PermissionDeniedError

bearer_scheme = HTTPBearer(auto_error=False)


def get_clients(request: Request) -> ProviderClients:
    return request.app.state.clients


def get_pricing_engine(
    session: Session = Depends(get_session),
    clients: ProviderClients = Depends(get_clients),
    settings: Settings = Depends(get_settings),
) -> PricingEngine:
    return PricingEngine(
        session,
        PricingRepository(session),
        markup_cache=clients.markup_cache,
        batch_size=settings.pricing_batch_size,
    )

def get_settlement_service(
    session: Session = Depends(get_session),
    pricing: PricingEngine = Depends(get_pricing_engine),
    settings: Settings = Depends(get_settings),
) -> SettlementService:
    repository = BillingRepository(session)
    return SettlementService(
        session, pricing, repository, max_attempts=settings.transaction_max_attempts
    )

def get_balance_service(
    session: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> BalanceService:
    repository = BillingRepository(session)
    return BalanceService(
        session, repository, max_attempts=settings.transaction_max_attempts
    )

def get_pricing_repository(session: Session = Depends(get_session)) -> PricingRepository:
    return PricingRepository(session)

def get_price_sheet_importer(session: Session = Depends(get_session)) -> PriceSheetImporter:
    return PriceSheetImporter(session)

def get_stripe_gateway(
    clients: ProviderClients = Depends(get_clients),
) -> StripeGateway:
    if clients.stripe is None:
        raise PaymentsUnavailableError("Payments are not configured")
    return clients.stripe


def get_current_account(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    clients: ProviderClients = Depends(get_clients),
    service: BalanceService = Depends(get_balance_service),
) -> AccountResponse:
    if credentials is None or not credentials.credentials:
        raise AuthError("Missing bearer token")
    identity = clients.tokens.verify(credentials.credentials)
    return service.ensure_account(
        identity.uid, email=identity.email, display_name=identity.name
    )

def require_admin(
    account: AccountResponse = Depends(get_current_account),
) -> AccountResponse:
    if not account.is_admin:
        raise PermissionDeniedError("Admin privileges required")
    return account
