from .balance import BalanceService
from .cost import compute_cost, round_money, to_decimal
from .csv_import import PriceSheetImporter, parse_price_sheet
from .pricing import (
    MarkupConfigCache,
    MarkupRules,
    PricingEngine,
    RateQuote,
    parse_destination,
)
from .pricing_store import PricingRepository
from .repository import BillingRepository
from .settlement import SettlementAction, SettlementOutcome, SettlementService

__all__ = [
    "BalanceService",
    "BillingRepository",
    "MarkupConfigCache",
    "MarkupRules",
    "PriceSheetImporter",
    "PricingEngine",
    "PricingRepository",
    "RateQuote",
    "SettlementAction",
    "SettlementOutcome",
    "SettlementService",
    "compute_cost",
    "parse_destination",
    "parse_price_sheet",
    "round_money",
    "to_decimal",
]
