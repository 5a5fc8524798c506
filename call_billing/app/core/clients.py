from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlsplit

import jwt
import stripe
from twilio.request_validator import RequestValidator

from ..services.pricing import MarkupConfigCache
from .config import Settings
from .errors import AuthError, ExternalProviderError, WebhookSignatureError


logger = logging.getLogger(__name__)


class TwilioSignatureVerifier:
    """Checks ``X-Twilio-Signature`` on inbound status callbacks."""

    def __init__(self, auth_token: str, public_base_url: Optional[str] = None) -> None:
        self._validator = RequestValidator(auth_token)
        self.public_base_url = (public_base_url or "").rstrip("/")

    def candidate_urls(self, request_url: str) -> list[str]:
        candidates = [request_url]
        if self.public_base_url:
            parts = urlsplit(request_url)
            rebased = f"{self.public_base_url}{parts.path}"
            if parts.query:
                rebased = f"{rebased}?{parts.query}"
            candidates.append(rebased)
        return list(dict.fromkeys(candidates))

    def verify(
        self, request_url: str, params: Mapping[str, str], signature: Optional[str]
    ) -> None:
        if not signature:
            raise WebhookSignatureError("Missing webhook signature")
        for url in self.candidate_urls(request_url):
            if self._validator.validate(url, dict(params), signature):
                return
        raise WebhookSignatureError("Invalid webhook signature")


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: Optional[str]


class StripeGateway:
    def __init__(self, secret_key: str, webhook_secret: str, app_url: str) -> None:
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.app_url = app_url.rstrip("/")

    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict[str, Any]:
        """Verify the signed payload and return the event as a plain dict."""
        if not signature:
            raise WebhookSignatureError("Missing payment webhook signature")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise WebhookSignatureError("Invalid payment webhook signature") from exc
        return json.loads(payload)

    def create_checkout_session(self, user_id: str, amount: float) -> CheckoutSession:
        try:
            session = stripe.checkout.Session.create(
                api_key=self.secret_key,
                mode="payment",
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": "usd",
                            "product_data": {"name": "Call credit"},
                            "unit_amount": int(round(amount * 100)),
                        },
                        "quantity": 1,
                    }
                ],
                success_url=f"{self.app_url}/dashboard?payment=success",
                cancel_url=f"{self.app_url}/dashboard?payment=cancelled",
                client_reference_id=user_id,
                metadata={"userId": user_id, "amountToAdd": str(amount)},
            )
        except stripe.StripeError as exc:
            logger.error(
                "payments.checkout_failed", extra={"user_id": user_id, "error": str(exc)}
            )
            raise ExternalProviderError("Could not create checkout session") from exc
        return CheckoutSession(session_id=session.id, url=session.url)


@dataclass(frozen=True)
class AuthIdentity:
    uid: str
    email: Optional[str] = None
    name: Optional[str] = None


class TokenVerifier:
    def __init__(
        self, secret: str, algorithm: str = "HS256", audience: Optional[str] = None
    ) -> None:
        self.secret = secret
        self.algorithm = algorithm
        self.audience = audience

    def verify(self, token: str) -> AuthIdentity:
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                options={"require": ["sub", "exp"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise AuthError("Token has expired") from exc
        except jwt.PyJWTError as exc:
            raise AuthError("Invalid authentication token") from exc
        return AuthIdentity(
            uid=str(claims["sub"]),
            email=claims.get("email"),
            name=claims.get("name"),
        )


@dataclass
class ProviderClients:
    twilio: TwilioSignatureVerifier
    tokens: TokenVerifier
    markup_cache: MarkupConfigCache
    stripe: Optional[StripeGateway] = None

    def close(self) -> None:
        self.markup_cache.invalidate()


def init_clients(settings: Settings) -> ProviderClients:
    settings.validate_required_secrets()
    gateway = None
    if settings.payments_enabled:
        gateway = StripeGateway(
            settings.stripe_secret_key, settings.stripe_webhook_secret, settings.app_url
        )
    else:
        logger.warning("payments.disabled")
    return ProviderClients(
        twilio=TwilioSignatureVerifier(
            settings.twilio_auth_token, settings.public_base_url
        ),
        tokens=TokenVerifier(
            settings.auth_jwt_secret,
            settings.auth_jwt_algorithm,
            settings.auth_jwt_audience,
        ),
        markup_cache=MarkupConfigCache(settings.markup_cache_ttl_seconds),
        stripe=gateway,
    )
