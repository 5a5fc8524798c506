"""Inbound provider webhooks.

The telephony status callback is acknowledged with an empty TwiML document
whatever happens during settlement; only a bad signature is refused.
"""

import hmac
import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.security import HTTPAuthorizationCredentials
from starlette.concurrency import run_in_threadpool
from twilio.twiml.voice_response import VoiceResponse

from ..core.clients import ProviderClients, StripeGateway
from ..core.config import Settings, get_settings
from ..core.dependencies import (
    bearer_scheme,
    get_balance_service,
    get_clients,
    get_pricing_repository,
    get_settlement_service,
    get_stripe_gateway,
)
from ..core.errors import AuthError, PermissionDeniedError
from ..models import PriceEventRequest, PriceUpdateResponse, StatusCallback
from ..services import BalanceService, PricingRepository, SettlementService
from ..services.cost import to_decimal


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _twiml_ack() -> Response:
    return Response(content=str(VoiceResponse()), media_type="text/xml")

@router.post("/twilio/status")
async def twilio_status_callback(
    request: Request,
    user_id: Optional[str] = Query(default=None, alias="UserId"),
    clients: ProviderClients = Depends(get_clients),
    service: SettlementService = Depends(get_settlement_service),
) -> Response:
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}
    clients.twilio.verify(
        str(request.url), params, request.headers.get("X-Twilio-Signature")
    )

    event = StatusCallback.from_form(params, user_id or params.get("UserId"))
    try:
        outcome = await run_in_threadpool(service.settle, event)
    except Exception:
        logger.exception(
            "webhook.twilio.unhandled",
            extra={"call_id": event.call_id, "user_id": event.user_id},
        )
    else:
        logger.info(
            "webhook.twilio.settled",
            extra={"call_id": outcome.call_id, "action": outcome.action.value},
        )
    return _twiml_ack()

@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    gateway: StripeGateway = Depends(get_stripe_gateway),
    service: BalanceService = Depends(get_balance_service),
) -> dict:
    payload = await request.body()
    event = gateway.construct_event(payload, request.headers.get("stripe-signature"))

    event_type = event.get("type")
    if event_type != "checkout.session.completed":
        logger.info("webhook.stripe.ignored", extra={"event_type": event_type})
        return {"received": True}

    checkout = event.get("data", {}).get("object", {})
    if checkout.get("payment_status") != "paid":
        logger.info(
            "webhook.stripe.unpaid",
            extra={"session_id": checkout.get("id"), "status": checkout.get("payment_status")},
        )
        return {"received": True}

    metadata = checkout.get("metadata") or {}
    user_id = metadata.get("userId")
    try:
        amount: Optional[Decimal] = to_decimal(metadata.get("amountToAdd", ""))
    except (InvalidOperation, ValueError):
        amount = None
    if not user_id or amount is None or amount <= 0:
        logger.warning(
            "webhook.stripe.unattributable",
            extra={"session_id": checkout.get("id"), "metadata": metadata},
        )
        return {"received": True}

    await run_in_threadpool(service.credit_deposit, user_id, amount, checkout["id"])
    return {"received": True}

@router.post("/pricing-events", response_model=PriceUpdateResponse)
def pricing_event(
    payload: PriceEventRequest,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
    repository: PricingRepository = Depends(get_pricing_repository),
) -> PriceUpdateResponse:
    if credentials is None or not credentials.credentials:
        raise AuthError("Unauthorized")
    secret = settings.pricing_webhook_secret
    if not secret or not hmac.compare_digest(credentials.credentials, secret):
        raise PermissionDeniedError("Invalid webhook token")

    try:
        record = repository.add_price_update(
            country_code=payload.country_code,
            previous_base_price=to_decimal(payload.previous_base_price),
            new_base_price=to_decimal(payload.new_base_price),
            source="webhook",
        )
        repository.session.commit()
    except Exception:
        repository.session.rollback()
        raise
    repository.session.refresh(record)
    logger.info(
        "pricing.event_recorded",
        extra={
            "country_code": record.country_code,
            "percentage_change": record.percentage_change,
            "is_significant": record.is_significant,
        },
    )
    return PriceUpdateResponse.model_validate(record, from_attributes=True)

__all__ = ["router"]
