from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(UTC)


class Account(SQLModel, table=True):
    id: str = Field(primary_key=True, description="Auth provider user id")
    email: Optional[str] = None
    display_name: Optional[str] = None
    balance: Decimal = Field(default=Decimal("0"), max_digits=14, decimal_places=4)
    is_admin: bool = Field(default=False)
    # Bumped by every balance write; guards compare-and-set updates.
    version: int = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow)
    last_login: Optional[datetime] = None


class AccountTransaction(SQLModel, table=True):
    __tablename__ = "account_transaction"

    id: UUID = Field(default_factory=uuid4, primary_key=True, index=True)
    account_id: str = Field(foreign_key="account.id", index=True)
    type: str
    amount: Decimal = Field(max_digits=14, decimal_places=4)
    currency: str = "USD"
    status: str = "completed"
    source: str
    linked_call_id: Optional[str] = Field(default=None, unique=True, index=True)
    external_ref: Optional[str] = Field(default=None, unique=True, index=True)
    phone_number: Optional[str] = None
    duration_seconds: Optional[int] = None
    memo: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)


class CallRecord(SQLModel, table=True):
    __tablename__ = "call_record"

    call_id: str = Field(primary_key=True)
    # Not a foreign key: unattributable calls are still recorded.
    user_id: str = Field(index=True)
    phone_number: Optional[str] = None
    from_number: Optional[str] = None
    direction: str = "outgoing"
    account_sid: Optional[str] = None
    provider_status: str
    app_status: str
    duration_seconds: int = 0
    cost: Decimal = Field(default=Decimal("0"), max_digits=14, decimal_places=4)
    billing_status: str = "pending"
    created_at: datetime = Field(default_factory=utcnow)
    timestamp: datetime = Field(default_factory=utcnow, index=True)


class CountryPrice(SQLModel, table=True):
    __tablename__ = "country_price"

    country_code: str = Field(primary_key=True, max_length=2)
    country_name: str
    base_price: Decimal = Field(ge=0, max_digits=14, decimal_places=4)
    currency: str = "USD"
    last_updated: datetime = Field(default_factory=utcnow)


class MarkupConfig(SQLModel, table=True):
    __tablename__ = "markup_config"

    id: int = Field(default=1, primary_key=True)
    default_markup_percent: Decimal = Field(
        default=Decimal("100"), max_digits=10, decimal_places=4
    )
    country_markups: dict[str, float] = Field(
        default_factory=dict, sa_column=Column(JSON, nullable=False)
    )
    minimum_markup_percent: Decimal = Field(
        default=Decimal("100"), max_digits=10, decimal_places=4
    )
    minimum_final_price: Decimal = Field(
        default=Decimal("0.15"), max_digits=14, decimal_places=4
    )
    updated_at: datetime = Field(default_factory=utcnow)


class PriceUpdate(SQLModel, table=True):
    __tablename__ = "price_update"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    country_code: str = Field(index=True, max_length=2)
    previous_base_price: Decimal = Field(max_digits=14, decimal_places=4)
    new_base_price: Decimal = Field(max_digits=14, decimal_places=4)
    percentage_change: float
    is_significant: bool = Field(default=False, index=True)
    source: str = "admin"
    timestamp: datetime = Field(default_factory=utcnow, index=True)
