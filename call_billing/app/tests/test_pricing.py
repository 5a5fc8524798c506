from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from ..core.errors import PhoneParseError, PricingNotFoundError
from ..models import MarkupConfigModel
from ..services.pricing import MarkupConfigCache, MarkupRules, PricingEngine, parse_destination
from ..services.pricing_store import PricingRepository, describe_price_change
from .conftest import GB_NUMBER, IR_NUMBER, US_NUMBER, add_country_price, set_markup


def test_parse_destination_finds_region() -> None:
    assert parse_destination(US_NUMBER) == ("US", "United States")
    assert parse_destination(GB_NUMBER)[0] == "GB"


@pytest.mark.parametrize("number", ["", "   ", "not a number", "12345", "+999"])
def test_parse_destination_rejects_unparseable(number: str) -> None:
    with pytest.raises(PhoneParseError):
        parse_destination(number)


def test_default_markup_applies_minimum_final_price(session) -> None:
    add_country_price(session, "US", "United States", "0.01")
    rate = PricingEngine(session).resolve_rate(US_NUMBER)

    assert rate is not None
    assert rate.country_code == "US"
    assert rate.final_price == Decimal("0.15")
    assert rate.billing_increment_seconds == 60
    assert rate.is_unsupported is False


def test_final_price_follows_markup_formula(session) -> None:
    add_country_price(session, "GB", "United Kingdom", "0.2")
    set_markup(session, default="50", minimum="10", minimum_final_price="0.15")

    rate = PricingEngine(session).resolve_rate(GB_NUMBER)
    assert rate.final_price == Decimal("0.3")
    assert rate.markup_percent == Decimal("50")


def test_country_markup_cannot_undercut_minimum(session) -> None:
    add_country_price(session, "GB", "United Kingdom", "0.2")
    set_markup(
        session,
        default="50",
        minimum="25",
        minimum_final_price="0",
        country_markups={"GB": 10.0},
    )

    rate = PricingEngine(session).resolve_rate(GB_NUMBER)
    assert rate.markup_percent == Decimal("25")
    assert rate.final_price == Decimal("0.25")


def test_unsupported_country_is_zero_priced(session) -> None:
    add_country_price(session, "IR", "Iran", "0.5")
    rate = PricingEngine(session).resolve_rate(IR_NUMBER)

    assert rate.is_unsupported is True
    assert rate.final_price == Decimal("0")


def test_missing_price_returns_none(session) -> None:
    assert PricingEngine(session).resolve_rate(GB_NUMBER) is None
    with pytest.raises(PricingNotFoundError):
        PricingEngine(session).quote(GB_NUMBER)


def test_quote_includes_cost_for_duration(session) -> None:
    add_country_price(session, "US", "United States", "0.01")
    quote = PricingEngine(session).quote(US_NUMBER, duration=125)

    assert quote.final_price == pytest.approx(0.15)
    assert quote.calculated_cost == pytest.approx(0.45)
    assert quote.duration == 125


def test_batch_rates_skip_misses_and_flag_unsupported(session) -> None:
    add_country_price(session, "US", "United States", "0.01")
    add_country_price(session, "GB", "United Kingdom", "0.2")
    engine = PricingEngine(session, batch_size=1)

    rates = engine.resolve_rates_for_countries(["us", "GB", "FR", "KP", "US"])

    assert set(rates) == {"US", "GB", "KP"}
    assert rates["US"].is_estimate is True
    assert rates["KP"].is_unsupported is True
    assert rates["GB"].final_price == Decimal("0.4")


def _failing_batch_query(repository: PricingRepository, failing_code: str):
    original = repository.get_country_prices

    def flaky(codes):
        codes = list(codes)
        if failing_code in codes:
            raise OperationalError("SELECT", {}, Exception("store unavailable"))
        return original(codes)

    return flaky


def test_batch_rates_continue_after_failed_batch(session) -> None:
    add_country_price(session, "US", "United States", "0.01")
    add_country_price(session, "GB", "United Kingdom", "0.2")
    repository = PricingRepository(session)
    repository.get_country_prices = _failing_batch_query(repository, "US")
    original_single = repository.get_country_price

    def flaky_single(code):
        if code == "US":
            raise OperationalError("SELECT", {}, Exception("store unavailable"))
        return original_single(code)

    repository.get_country_price = flaky_single
    rates = PricingEngine(session, repository).resolve_rates_for_countries(
        ["US", "GB", "KP"]
    )

    assert set(rates) == {"GB", "KP"}
    assert rates["GB"].final_price == Decimal("0.4")
    assert rates["KP"].is_unsupported is True


def test_failed_batch_falls_back_to_single_lookups(session) -> None:
    add_country_price(session, "US", "United States", "0.01")
    add_country_price(session, "GB", "United Kingdom", "0.2")
    repository = PricingRepository(session)
    repository.get_country_prices = _failing_batch_query(repository, "US")

    rates = PricingEngine(session, repository).resolve_rates_for_countries(
        ["US", "GB", "FR"]
    )

    assert set(rates) == {"US", "GB"}
    assert rates["US"].final_price == Decimal("0.15")


def test_markup_cache_expires_and_invalidates() -> None:
    now = [0.0]
    cache = MarkupConfigCache(ttl_seconds=30, clock=lambda: now[0])
    loads = []

    def loader() -> MarkupRules:
        loads.append(1)
        return MarkupRules.from_model(MarkupConfigModel(id=1))

    cache.get(loader)
    cache.get(loader)
    assert len(loads) == 1

    now[0] = 31.0
    cache.get(loader)
    assert len(loads) == 2

    cache.invalidate()
    cache.get(loader)
    assert len(loads) == 3


def test_markup_cache_drops_load_overtaken_by_invalidate() -> None:
    cache = MarkupConfigCache(ttl_seconds=30, clock=lambda: 0.0)
    loads = []

    def stale_loader() -> MarkupRules:
        loads.append(1)
        # A config write lands while this read is in flight.
        cache.invalidate()
        return MarkupRules.from_model(MarkupConfigModel(id=1))

    def loader() -> MarkupRules:
        loads.append(1)
        return MarkupRules.from_model(MarkupConfigModel(id=1))

    cache.get(stale_loader)
    cache.get(loader)
    cache.get(loader)
    assert len(loads) == 2


def test_price_change_significance() -> None:
    percentage, significant = describe_price_change(Decimal("0.10"), Decimal("0.104"))
    assert percentage == pytest.approx(4.0)
    assert significant is False
    assert describe_price_change(Decimal("0.10"), Decimal("0.12"))[1] is True
    assert describe_price_change(Decimal("0"), Decimal("0.12")) == (0.0, True)
    assert describe_price_change(Decimal("0.10"), Decimal("0")) == (-100.0, True)


def test_upsert_records_price_update_only_on_change(session) -> None:
    repository = PricingRepository(session)
    _, created = repository.upsert_country_price(
        country_code="de", country_name="Germany", base_price=Decimal("0.02")
    )
    _, unchanged = repository.upsert_country_price(
        country_code="DE", country_name="Germany", base_price=Decimal("0.02")
    )
    _, changed = repository.upsert_country_price(
        country_code="DE", country_name="Germany", base_price=Decimal("0.03")
    )
    session.commit()

    assert created is None
    assert unchanged is None
    assert changed is not None
    assert changed.percentage_change == pytest.approx(50.0)
    assert changed.is_significant is True
    assert [u.country_code for u in repository.list_price_updates()] == ["DE"]
