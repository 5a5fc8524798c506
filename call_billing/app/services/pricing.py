from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

import phonenumbers
from phonenumbers import geocoder
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from ..core.errors import PhoneParseError, PricingNotFoundError
from ..models import CountryPriceModel, MarkupConfigModel, PriceQuoteResponse
from .cost import BILLING_INCREMENT_SECONDS, compute_cost, round_money, to_decimal
from .pricing_store import PricingRepository, default_markup_config


logger = logging.getLogger(__name__)

# Embargoed or otherwise unserviceable destinations.
UNSUPPORTED_COUNTRIES = frozenset({"CU", "IR", "KP", "SY"})


@dataclass(frozen=True)
class MarkupRules:
    """Immutable snapshot of the markup configuration."""

    default_markup_percent: Decimal
    minimum_markup_percent: Decimal
    minimum_final_price: Decimal
    country_markups: Mapping[str, Decimal] = field(default_factory=dict)

    @classmethod
    def from_model(cls, config: MarkupConfigModel) -> "MarkupRules":
        return cls(
            default_markup_percent=to_decimal(config.default_markup_percent),
            minimum_markup_percent=to_decimal(config.minimum_markup_percent),
            minimum_final_price=to_decimal(config.minimum_final_price),
            country_markups={
                code.upper(): to_decimal(percent)
                for code, percent in (config.country_markups or {}).items()
            },
        )

    def markup_for(self, country_code: str) -> Decimal:
        percent = self.country_markups.get(
            country_code.upper(), self.default_markup_percent
        )
        return max(percent, self.minimum_markup_percent)

    def final_price(self, base_price: Decimal, country_code: str) -> Decimal:
        marked_up = base_price * (1 + self.markup_for(country_code) / 100)
        return round_money(max(marked_up, self.minimum_final_price))


class MarkupConfigCache:
    """Holds the markup rules for at most ``ttl_seconds`` between store reads."""

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._rules: Optional[MarkupRules] = None
        self._loaded_at = 0.0
        # Bumped by invalidate(); a load that started earlier is not stored.
        self._generation = 0

    def get(self, loader: Callable[[], MarkupRules]) -> MarkupRules:
        with self._lock:
            rules, loaded_at = self._rules, self._loaded_at
            generation = self._generation
        if rules is not None and self._clock() - loaded_at < self.ttl_seconds:
            return rules
        rules = loader()
        with self._lock:
            if generation == self._generation:
                self._rules = rules
                self._loaded_at = self._clock()
        return rules

    def invalidate(self) -> None:
        with self._lock:
            self._rules = None
            self._generation += 1


@dataclass(frozen=True)
class RateQuote:
    country_code: str
    country_name: str
    final_price: Decimal
    base_price: Decimal = Decimal("0")
    markup_percent: Decimal = Decimal("0")
    currency: str = "USD"
    billing_increment_seconds: int = BILLING_INCREMENT_SECONDS
    is_unsupported: bool = False
    is_estimate: bool = False
    phone_number: str = ""

    def to_response(self) -> PriceQuoteResponse:
        return PriceQuoteResponse(
            phone_number=self.phone_number,
            country_code=self.country_code,
            country_name=self.country_name,
            base_price=float(self.base_price),
            markup_percent=float(self.markup_percent),
            final_price=float(self.final_price),
            currency=self.currency,
            billing_increment=self.billing_increment_seconds,
            is_estimate=self.is_estimate,
            is_unsupported=self.is_unsupported,
        )


def parse_destination(phone_number: str) -> tuple[str, str]:
    """Return ``(iso_country_code, country_name)`` for an E.164 number."""
    if not phone_number or not phone_number.strip():
        raise PhoneParseError("Phone number is required")
    try:
        parsed = phonenumbers.parse(phone_number.strip(), None)
    except phonenumbers.NumberParseException as exc:
        raise PhoneParseError(f"Could not parse phone number {phone_number!r}") from exc
    if not phonenumbers.is_possible_number(parsed):
        raise PhoneParseError(f"{phone_number!r} is not a possible phone number")
    region = phonenumbers.region_code_for_number(parsed)
    if not region or region in ("ZZ", "001"):
        raise PhoneParseError(f"Could not determine country for {phone_number!r}")
    name = geocoder.country_name_for_number(parsed, "en") or region
    return region, name


class PricingEngine:
    def __init__(
        self,
        session: Session,
        repository: Optional[PricingRepository] = None,
        markup_cache: Optional[MarkupConfigCache] = None,
        batch_size: int = 10,
    ) -> None:
        self.session = session
        self.repository = repository or PricingRepository(session)
        self.markup_cache = markup_cache
        self.batch_size = max(batch_size, 1)

    # ------------------------------------------------------------------
    # Helper utilities
    # ------------------------------------------------------------------
    def _load_markup_rules(self) -> MarkupRules:
        config = self.repository.get_markup_config() or default_markup_config()
        return MarkupRules.from_model(config)

    def markup_rules(self) -> MarkupRules:
        if self.markup_cache is None:
            return self._load_markup_rules()
        return self.markup_cache.get(self._load_markup_rules)

    def _unsupported_quote(
        self, country_code: str, country_name: str, *, phone_number: str = "", estimate: bool
    ) -> RateQuote:
        return RateQuote(
            country_code=country_code,
            country_name=country_name,
            final_price=Decimal("0"),
            is_unsupported=True,
            is_estimate=estimate,
            phone_number=phone_number,
        )

    def _priced_quote(
        self,
        price: CountryPriceModel,
        rules: MarkupRules,
        *,
        phone_number: str = "",
        estimate: bool,
    ) -> RateQuote:
        base_price = to_decimal(price.base_price)
        return RateQuote(
            country_code=price.country_code,
            country_name=price.country_name,
            base_price=base_price,
            markup_percent=rules.markup_for(price.country_code),
            final_price=rules.final_price(base_price, price.country_code),
            currency=price.currency,
            is_estimate=estimate,
            phone_number=phone_number,
        )

    def _fetch_batch_prices(
        self, batch: list[str]
    ) -> dict[str, Optional[CountryPriceModel]]:
        """Prices for ``batch``; codes whose lookup failed are left out.

        A failed batch query is retried one code at a time.
        """
        try:
            found = self.repository.get_country_prices(batch)
        except SQLAlchemyError:
            self.session.rollback()
            logger.warning("pricing.batch_failed", extra={"country_codes": batch})
        else:
            return {code: found.get(code) for code in batch}

        prices: dict[str, Optional[CountryPriceModel]] = {}
        for code in batch:
            try:
                prices[code] = self.repository.get_country_price(code)
            except SQLAlchemyError:
                self.session.rollback()
                logger.exception("pricing.lookup_failed", extra={"country_code": code})
        return prices

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def resolve_rate(self, phone_number: str) -> Optional[RateQuote]:
        """Billable per-minute rate for ``phone_number``.

        Returns ``None`` when no price is stored for the destination country.
        Raises ``PhoneParseError`` when the number has no determinable country.
        """
        country_code, country_name = parse_destination(phone_number)

        if country_code in UNSUPPORTED_COUNTRIES:
            return self._unsupported_quote(
                country_code, country_name, phone_number=phone_number, estimate=False
            )

        price = self.repository.get_country_price(country_code)
        if price is None:
            logger.warning(
                "pricing.not_found",
                extra={"country_code": country_code, "phone_number": phone_number},
            )
            return None

        return self._priced_quote(
            price, self.markup_rules(), phone_number=phone_number, estimate=False
        )

    def quote(self, phone_number: str, duration: Optional[int] = None) -> PriceQuoteResponse:
        rate = self.resolve_rate(phone_number)
        if rate is None:
            raise PricingNotFoundError(
                "Could not determine pricing for the given phone number"
            )
        response = rate.to_response()
        if duration is not None:
            response.calculated_cost = float(
                compute_cost(rate.final_price, duration, rate.billing_increment_seconds)
            )
            response.duration = duration
        return response

    def resolve_rates_for_countries(
        self, country_codes: Iterable[str]
    ) -> dict[str, RateQuote]:
        codes = list(dict.fromkeys(code.upper() for code in country_codes))
        rules = self.markup_rules()
        results: dict[str, RateQuote] = {}

        for code in codes:
            if code in UNSUPPORTED_COUNTRIES:
                results[code] = self._unsupported_quote(code, code, estimate=True)
        priced_codes = [code for code in codes if code not in UNSUPPORTED_COUNTRIES]

        for start in range(0, len(priced_codes), self.batch_size):
            batch = priced_codes[start : start + self.batch_size]
            prices = self._fetch_batch_prices(batch)
            for code in batch:
                if code not in prices:
                    continue
                price = prices[code]
                if price is None:
                    logger.info("pricing.not_found", extra={"country_code": code})
                    continue
                try:
                    results[code] = self._priced_quote(price, rules, estimate=True)
                except (ArithmeticError, ValueError):
                    logger.exception("pricing.quote_failed", extra={"country_code": code})

        return results
