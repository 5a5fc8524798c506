from .db import Account as AccountModel
from .db import AccountTransaction as AccountTransactionModel
from .db import CallRecord as CallRecordModel
from .db import CountryPrice as CountryPriceModel
from .db import MarkupConfig as MarkupConfigModel
from .db import PriceUpdate as PriceUpdateModel
from .schemas import (
    TERMINAL_PROVIDER_STATUSES,
    AccountResponse,
    AppCallStatus,
    BalanceAdjustmentRequest,
    BillingStatus,
    BulkPricingRequest,
    BulkPricingResponse,
    CallDirection,
    CallRecordResponse,
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    CountryPriceResponse,
    CountryPriceUpdateRequest,
    CsvImportResponse,
    MarkupConfigPayload,
    MarkupConfigResponse,
    PriceEventRequest,
    PriceQuoteResponse,
    PriceUpdateResponse,
    ProviderCallStatus,
    ReconciliationResponse,
    StatementResponse,
    StatusCallback,
    TransactionResponse,
    TransactionType,
)

__all__ = [
    "TERMINAL_PROVIDER_STATUSES",
    "AccountResponse",
    "AppCallStatus",
    "BalanceAdjustmentRequest",
    "BillingStatus",
    "BulkPricingRequest",
    "BulkPricingResponse",
    "CallDirection",
    "CallRecordResponse",
    "CheckoutSessionRequest",
    "CheckoutSessionResponse",
    "CountryPriceResponse",
    "CountryPriceUpdateRequest",
    "CsvImportResponse",
    "MarkupConfigPayload",
    "MarkupConfigResponse",
    "PriceEventRequest",
    "PriceQuoteResponse",
    "PriceUpdateResponse",
    "ProviderCallStatus",
    "ReconciliationResponse",
    "StatementResponse",
    "StatusCallback",
    "TransactionResponse",
    "TransactionType",
    "AccountModel",
    "AccountTransactionModel",
    "CallRecordModel",
    "CountryPriceModel",
    "MarkupConfigModel",
    "PriceUpdateModel",
]
