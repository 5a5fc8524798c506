import hashlib
import hmac
import time
from decimal import Decimal
from typing import Optional

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel
from twilio.request_validator import RequestValidator

from ..core import db as core_db
from ..core.config import get_settings
from ..core.db import create_engine_for_url, get_session, set_engine
from ..main import app
from ..models import AccountModel, CountryPriceModel, MarkupConfigModel

TWILIO_AUTH_TOKEN = "twilio-test-token"
JWT_SECRET = "jwt-test-secret"
STRIPE_SECRET_KEY = "sk_test_123"
STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
PRICING_WEBHOOK_SECRET = "pricing-test-secret"

US_NUMBER = "+16502530000"
GB_NUMBER = "+442071838750"
IR_NUMBER = "+982112345678"


@pytest.fixture
def settings_env(monkeypatch):
    monkeypatch.setenv("CALLBILL_TWILIO_AUTH_TOKEN", TWILIO_AUTH_TOKEN)
    monkeypatch.setenv("CALLBILL_AUTH_JWT_SECRET", JWT_SECRET)
    monkeypatch.setenv("CALLBILL_STRIPE_SECRET_KEY", STRIPE_SECRET_KEY)
    monkeypatch.setenv("CALLBILL_STRIPE_WEBHOOK_SECRET", STRIPE_WEBHOOK_SECRET)
    monkeypatch.setenv("CALLBILL_PRICING_WEBHOOK_SECRET", PRICING_WEBHOOK_SECRET)
    get_settings.cache_clear()
    yield monkeypatch
    get_settings.cache_clear()


@pytest.fixture
def engine(tmp_path):
    test_db = tmp_path / "test.db"
    engine = create_engine_for_url(f"sqlite:///{test_db}")
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def client(settings_env, engine) -> TestClient:
    original_engine = core_db.engine
    set_engine(engine)

    def _get_session_override():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = _get_session_override

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    set_engine(original_engine)


# Seed helpers ---------------------------------------------------------------
def add_account(
    session: Session, account_id: str, balance: str = "0", is_admin: bool = False
) -> AccountModel:
    account = AccountModel(id=account_id, balance=Decimal(balance), is_admin=is_admin)
    session.add(account)
    session.commit()
    return account


def add_country_price(
    session: Session, country_code: str, country_name: str, base_price: str
) -> CountryPriceModel:
    price = CountryPriceModel(
        country_code=country_code, country_name=country_name, base_price=Decimal(base_price)
    )
    session.add(price)
    session.commit()
    return price


def set_markup(
    session: Session,
    *,
    default: str = "100",
    minimum: str = "100",
    minimum_final_price: str = "0.15",
    country_markups: Optional[dict[str, float]] = None,
) -> MarkupConfigModel:
    config = session.get(MarkupConfigModel, 1) or MarkupConfigModel(id=1)
    config.default_markup_percent = Decimal(default)
    config.minimum_markup_percent = Decimal(minimum)
    config.minimum_final_price = Decimal(minimum_final_price)
    config.country_markups = country_markups or {}
    session.add(config)
    session.commit()
    return config


# Credentials ----------------------------------------------------------------
def make_token(
    user_id: str,
    *,
    email: Optional[str] = None,
    expires_in: int = 3600,
    secret: str = JWT_SECRET,
) -> str:
    claims = {"sub": user_id, "exp": int(time.time()) + expires_in}
    if email:
        claims["email"] = email
    return jwt.encode(claims, secret, algorithm="HS256")


def auth_headers(user_id: str, **kwargs) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id, **kwargs)}"}


def twilio_signature(url: str, params: dict[str, str]) -> str:
    return RequestValidator(TWILIO_AUTH_TOKEN).compute_signature(url, params)


def stripe_signature(payload: str, secret: str = STRIPE_WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    digest = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={digest}"
