from __future__ import annotations

import math
from collections.abc import Mapping
from datetime import datetime
from enum import Enum
from typing import Literal, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field, field_validator


class ProviderCallStatus(str, Enum):
    """Call states reported by the telephony provider's status callback."""

    QUEUED = "queued"
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    BUSY = "busy"
    NO_ANSWER = "no-answer"
    FAILED = "failed"
    CANCELED = "canceled"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "ProviderCallStatus":
        try:
            return cls((raw or "").strip().lower())
        except ValueError:
            return cls.UNKNOWN


TERMINAL_PROVIDER_STATUSES = frozenset(
    {
        ProviderCallStatus.COMPLETED,
        ProviderCallStatus.BUSY,
        ProviderCallStatus.NO_ANSWER,
        ProviderCallStatus.FAILED,
        ProviderCallStatus.CANCELED,
    }
)


class AppCallStatus(str, Enum):
    ANSWERED = "answered"
    MISSED = "missed"
    REJECTED = "rejected"
    FAILED = "failed"
    CANCELED = "canceled"
    UNKNOWN = "unknown"


class CallDirection(str, Enum):
    OUTGOING = "outgoing"
    INCOMING = "incoming"


class BillingStatus(str, Enum):
    PENDING = "pending"
    BILLED = "billed"
    PARTIALLY_BILLED = "partially_billed"
    NOT_BILLABLE = "not_billable"
    BILLING_FAILED = "billing_failed"


class TransactionType(str, Enum):
    CALL = "call"
    DEPOSIT = "deposit"
    ADJUSTMENT = "adjustment"


class StatusCallback(BaseModel):
    """A single status-callback delivery from the telephony provider.

    ``status`` is the known status the raw value maps to, or ``UNKNOWN``;
    ``raw_status`` always keeps the value exactly as delivered.
    """

    call_id: Optional[str] = None
    status: ProviderCallStatus = ProviderCallStatus.UNKNOWN
    raw_status: str = ""
    duration_seconds: int = Field(default=0, ge=0)
    to_number: Optional[str] = None
    from_number: Optional[str] = None
    account_sid: Optional[str] = None
    direction: CallDirection = CallDirection.OUTGOING
    user_id: Optional[str] = None

    @classmethod
    def from_form(
        cls, form: Mapping[str, str], user_id: Optional[str] = None
    ) -> "StatusCallback":
        raw_status = (form.get("CallStatus") or "").strip()
        raw_direction = (form.get("Direction") or "").lower()
        return cls(
            call_id=(form.get("CallSid") or "").strip() or None,
            status=ProviderCallStatus.parse(raw_status),
            raw_status=raw_status,
            duration_seconds=_parse_duration(form.get("CallDuration")),
            to_number=form.get("To") or None,
            from_number=form.get("From") or None,
            account_sid=form.get("AccountSid") or None,
            direction=(
                CallDirection.INCOMING
                if raw_direction.startswith("inbound")
                else CallDirection.OUTGOING
            ),
            user_id=(user_id or "").strip() or None,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PROVIDER_STATUSES


def _parse_duration(raw: Optional[str]) -> int:
    try:
        value = int((raw or "0").strip())
    except ValueError:
        return 0
    return max(value, 0)


# Accounts and ledger ------------------------------------------------------
class AccountResponse(BaseModel):
    id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    balance: float = Field(..., description="Prepaid balance in USD")
    is_admin: bool = False
    created_at: datetime
    last_login: Optional[datetime] = None


class TransactionResponse(BaseModel):
    id: UUID
    type: TransactionType
    amount: float = Field(..., description="Signed USD amount; charges are negative")
    currency: str
    status: str
    source: str
    linked_call_id: Optional[str] = None
    external_ref: Optional[str] = None
    phone_number: Optional[str] = None
    duration_seconds: Optional[int] = None
    memo: Optional[str] = None
    created_at: datetime


class StatementResponse(BaseModel):
    items: list[TransactionResponse]
    next_cursor: Optional[str] = None


class ReconciliationResponse(BaseModel):
    account_id: str
    balance: float
    ledger_total: float
    difference: float
    transaction_count: int
    is_reconciled: bool


class BalanceAdjustmentRequest(BaseModel):
    target_user_id: str = Field(..., min_length=1)
    new_balance: float = Field(..., ge=0, allow_inf_nan=False)


class CheckoutSessionRequest(BaseModel):
    amount: float = Field(..., gt=0, allow_inf_nan=False, description="USD to add")

    @field_validator("amount")
    @classmethod
    def check_amount_step(cls, value: float) -> float:
        if value < 5 or value > 100 or not math.isclose(value % 5, 0.0, abs_tol=1e-9):
            raise ValueError("Amount must be between $5 and $100 in increments of $5")
        return value


class CheckoutSessionResponse(BaseModel):
    session_id: str
    url: Optional[str] = None


# Calls --------------------------------------------------------------------
class CallRecordResponse(BaseModel):
    call_id: str
    user_id: str
    phone_number: Optional[str] = None
    direction: CallDirection
    provider_status: str
    app_status: AppCallStatus
    duration_seconds: int
    cost: float
    billing_status: BillingStatus
    created_at: datetime
    timestamp: datetime


# Pricing ------------------------------------------------------------------
class PriceQuoteResponse(BaseModel):
    phone_number: str = ""
    country_code: str
    country_name: str
    base_price: float = 0.0
    markup_percent: float = 0.0
    final_price: float
    currency: str = "USD"
    billing_increment: int = 60
    is_estimate: bool = False
    is_unsupported: bool = False
    calculated_cost: Optional[float] = None
    duration: Optional[int] = None


class BulkPricingRequest(BaseModel):
    country_codes: list[str] = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("country_codes", "countryCodes"),
    )

    @field_validator("country_codes")
    @classmethod
    def check_codes(cls, codes: list[str]) -> list[str]:
        for code in codes:
            if len(code) != 2 or not code.isalpha():
                raise ValueError("Each country code must be a 2-letter ISO code")
        return [code.upper() for code in codes]


class BulkPricingResponse(BaseModel):
    pricing: dict[str, PriceQuoteResponse]
    count: int


class MarkupConfigPayload(BaseModel):
    default_markup_percent: float = Field(..., ge=0, allow_inf_nan=False)
    country_markups: dict[str, float] = Field(default_factory=dict)
    minimum_markup_percent: float = Field(default=0, ge=0, allow_inf_nan=False)
    minimum_final_price: float = Field(default=0, ge=0, allow_inf_nan=False)

    @field_validator("country_markups")
    @classmethod
    def check_country_markups(cls, markups: dict[str, float]) -> dict[str, float]:
        normalized: dict[str, float] = {}
        for code, percent in markups.items():
            if len(code) != 2 or not code.isalpha():
                raise ValueError(f"Invalid country code in markups: {code!r}")
            if not math.isfinite(percent) or percent < 0:
                raise ValueError(f"Markup for {code} must be a non-negative number")
            normalized[code.upper()] = percent
        return normalized


class MarkupConfigResponse(MarkupConfigPayload):
    updated_at: Optional[datetime] = None


class CountryPriceUpdateRequest(BaseModel):
    base_price: float = Field(..., ge=0, allow_inf_nan=False)
    country_name: Optional[str] = Field(default=None, min_length=1)


class CountryPriceResponse(BaseModel):
    country_code: str
    country_name: str
    base_price: float
    currency: str
    last_updated: datetime


class PriceUpdateResponse(BaseModel):
    id: UUID
    country_code: str
    previous_base_price: float
    new_base_price: float
    percentage_change: float
    is_significant: bool
    source: str
    timestamp: datetime


class PriceEventRequest(BaseModel):
    country_code: str = Field(..., min_length=2, max_length=2)
    previous_base_price: float = Field(..., ge=0, allow_inf_nan=False)
    new_base_price: float = Field(..., ge=0, allow_inf_nan=False)


class CsvImportResponse(BaseModel):
    success: Literal[True] = True
    imported: int
    skipped: int
    unchanged: int
    price_changes: int
    timestamp: datetime
