from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..core.dependencies import get_pricing_engine
from ..core.errors import ValidationError
from ..models import BulkPricingRequest, BulkPricingResponse, PriceQuoteResponse
from ..services import PricingEngine


router = APIRouter(prefix="/pricing", tags=["pricing"])


def _parse_duration(raw: Optional[str]) -> Optional[int]:
    if raw is None or raw == "":
        return None
    try:
        duration = int(raw)
    except ValueError as exc:
        raise ValidationError("Invalid duration. Must be a non-negative integer.") from exc
    if duration < 0:
        raise ValidationError("Invalid duration. Must be a non-negative integer.")
    return duration

@router.get("", response_model=PriceQuoteResponse)
def get_price_quote(
    phone_number: Optional[str] = None,
    duration: Optional[str] = None,
    phone_number_camel: Optional[str] = Query(default=None, alias="phoneNumber"),
    engine: PricingEngine = Depends(get_pricing_engine),
) -> PriceQuoteResponse:
    number = (phone_number or phone_number_camel or "").strip()
    if not number:
        raise ValidationError("Phone number is required")
    # An unescaped "+" in a query string arrives as a space.
    if number.isdigit():
        number = f"+{number}"
    return engine.quote(number, _parse_duration(duration))

@router.post("", response_model=BulkPricingResponse)
def get_bulk_pricing(
    payload: BulkPricingRequest,
    engine: PricingEngine = Depends(get_pricing_engine),
) -> BulkPricingResponse:
    rates = engine.resolve_rates_for_countries(payload.country_codes)
    pricing = {code: rate.to_response() for code, rate in rates.items()}
    return BulkPricingResponse(pricing=pricing, count=len(pricing))

__all__ = ["router"]
