from __future__ import annotations

from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Optional

from sqlmodel import Session, col, select

from ..models import CountryPriceModel, MarkupConfigModel, PriceUpdateModel
from ..models.db import utcnow


MARKUP_CONFIG_ID = 1
SIGNIFICANT_CHANGE_PERCENT = 5.0


def default_markup_config() -> MarkupConfigModel:
    return MarkupConfigModel(
        id=MARKUP_CONFIG_ID,
        default_markup_percent=Decimal("100"),
        country_markups={},
        minimum_markup_percent=Decimal("100"),
        minimum_final_price=Decimal("0.15"),
    )


def describe_price_change(previous: Decimal, new: Decimal) -> tuple[float, bool]:
    """Return ``(percentage_change, is_significant)`` for a base price change."""
    percentage = float((new - previous) / previous * 100) if previous > 0 else 0.0
    significant = (
        abs(percentage) > SIGNIFICANT_CHANGE_PERCENT or previous == 0 or new == 0
    )
    return percentage, significant


class PricingRepository:
    """Country prices, the markup singleton and the price change audit log."""

    def __init__(self, session: Session) -> None:
        self.session = session

    # Country prices -----------------------------------------------------
    def get_country_price(self, country_code: str) -> Optional[CountryPriceModel]:
        return self.session.get(CountryPriceModel, country_code.upper())

    def get_country_prices(
        self, country_codes: Iterable[str]
    ) -> dict[str, CountryPriceModel]:
        codes = {code.upper() for code in country_codes}
        if not codes:
            return {}
        stmt = select(CountryPriceModel).where(col(CountryPriceModel.country_code).in_(codes))
        return {row.country_code: row for row in self.session.exec(stmt)}

    def list_country_prices(self) -> list[CountryPriceModel]:
        stmt = select(CountryPriceModel).order_by(col(CountryPriceModel.country_code))
        return list(self.session.exec(stmt))

    def upsert_country_price(
        self,
        *,
        country_code: str,
        country_name: str,
        base_price: Decimal,
        currency: str = "USD",
        source: str = "admin",
    ) -> tuple[CountryPriceModel, Optional[PriceUpdateModel]]:
        """Insert or update one price, auditing base price changes.

        Does not commit.
        """
        if base_price < 0:
            raise ValueError("Base price must be non-negative")
        code = country_code.upper()
        price = self.get_country_price(code)
        update_record: Optional[PriceUpdateModel] = None
        if price is None:
            price = CountryPriceModel(
                country_code=code,
                country_name=country_name,
                base_price=base_price,
                currency=currency,
            )
        else:
            if price.base_price != base_price:
                update_record = self.add_price_update(
                    country_code=code,
                    previous_base_price=price.base_price,
                    new_base_price=base_price,
                    source=source,
                )
            price.country_name = country_name
            price.base_price = base_price
            price.currency = currency
        price.last_updated = utcnow()
        self.session.add(price)
        self.session.flush()
        return price, update_record

    def bulk_upsert_country_prices(
        self, rows: Mapping[str, tuple[str, Decimal]], *, source: str
    ) -> list[PriceUpdateModel]:
        """Upsert ``{code: (country_name, base_price)}``, returning the audit records added."""
        updates: list[PriceUpdateModel] = []
        for code, (country_name, base_price) in rows.items():
            _, update_record = self.upsert_country_price(
                country_code=code,
                country_name=country_name,
                base_price=base_price,
                source=source,
            )
            if update_record is not None:
                updates.append(update_record)
        return updates

    # Markup configuration -----------------------------------------------
    def get_markup_config(self) -> Optional[MarkupConfigModel]:
        return self.session.get(MarkupConfigModel, MARKUP_CONFIG_ID)

    def save_markup_config(
        self,
        *,
        default_markup_percent: Decimal,
        country_markups: dict[str, float],
        minimum_markup_percent: Decimal,
        minimum_final_price: Decimal,
    ) -> MarkupConfigModel:
        config = self.get_markup_config() or MarkupConfigModel(id=MARKUP_CONFIG_ID)
        config.default_markup_percent = default_markup_percent
        config.country_markups = dict(country_markups)
        config.minimum_markup_percent = minimum_markup_percent
        config.minimum_final_price = minimum_final_price
        config.updated_at = utcnow()
        self.session.add(config)
        self.session.flush()
        return config

    # Price change audit log ---------------------------------------------
    def add_price_update(
        self,
        *,
        country_code: str,
        previous_base_price: Decimal,
        new_base_price: Decimal,
        source: str,
    ) -> PriceUpdateModel:
        percentage, significant = describe_price_change(
            previous_base_price, new_base_price
        )
        record = PriceUpdateModel(
            country_code=country_code.upper(),
            previous_base_price=previous_base_price,
            new_base_price=new_base_price,
            percentage_change=percentage,
            is_significant=significant,
            source=source,
        )
        self.session.add(record)
        self.session.flush()
        return record

    def list_price_updates(
        self, *, significant_only: bool = False, limit: int = 100
    ) -> list[PriceUpdateModel]:
        stmt = select(PriceUpdateModel)
        if significant_only:
            stmt = stmt.where(col(PriceUpdateModel.is_significant).is_(True))
        stmt = stmt.order_by(col(PriceUpdateModel.timestamp).desc()).limit(limit)
        return list(self.session.exec(stmt))
