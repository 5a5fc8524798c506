from __future__ import annotations

import csv
import io
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlmodel import Session

from ..core.errors import ValidationError
from ..models import CsvImportResponse
from ..models.db import utcnow
from .pricing_store import PricingRepository


logger = logging.getLogger(__name__)

ISO_HEADERS = ("iso",)
COUNTRY_HEADERS = ("country",)
PRICE_HEADERS = ("price / min", "price/min", "price per min", "price")

_PARENTHETICAL_CODE = re.compile(r"\(([A-Z]{2})\)")
_PRICE_CHARS = re.compile(r"[^0-9.\-]")

COUNTRY_NAME_CODES: dict[str, str] = {
    "afghanistan": "AF", "albania": "AL", "algeria": "DZ", "andorra": "AD",
    "angola": "AO", "argentina": "AR", "armenia": "AM", "australia": "AU",
    "austria": "AT", "azerbaijan": "AZ", "bahamas": "BS", "bahrain": "BH",
    "bangladesh": "BD", "barbados": "BB", "belarus": "BY", "belgium": "BE",
    "belize": "BZ", "bolivia": "BO", "bosnia and herzegovina": "BA",
    "botswana": "BW", "brazil": "BR", "bulgaria": "BG", "cambodia": "KH",
    "cameroon": "CM", "canada": "CA", "chile": "CL", "china": "CN",
    "colombia": "CO", "costa rica": "CR", "croatia": "HR", "cuba": "CU",
    "cyprus": "CY", "czech republic": "CZ", "czechia": "CZ", "denmark": "DK",
    "dominican republic": "DO", "ecuador": "EC", "egypt": "EG",
    "el salvador": "SV", "estonia": "EE", "ethiopia": "ET", "finland": "FI",
    "france": "FR", "georgia": "GE", "germany": "DE", "ghana": "GH",
    "gibraltar": "GI", "greece": "GR", "guatemala": "GT", "honduras": "HN",
    "hong kong": "HK", "hungary": "HU", "iceland": "IS", "india": "IN",
    "indonesia": "ID", "iran": "IR", "iraq": "IQ", "ireland": "IE",
    "israel": "IL", "italy": "IT", "jamaica": "JM", "japan": "JP",
    "jordan": "JO", "kazakhstan": "KZ", "kenya": "KE", "kuwait": "KW",
    "latvia": "LV", "lebanon": "LB", "liechtenstein": "LI", "lithuania": "LT",
    "luxembourg": "LU", "malaysia": "MY", "malta": "MT", "mexico": "MX",
    "moldova": "MD", "monaco": "MC", "mongolia": "MN", "montenegro": "ME",
    "morocco": "MA", "mozambique": "MZ", "nepal": "NP", "netherlands": "NL",
    "new zealand": "NZ", "nicaragua": "NI", "niger": "NE", "nigeria": "NG",
    "north korea": "KP", "north macedonia": "MK", "norway": "NO", "oman": "OM",
    "pakistan": "PK", "panama": "PA", "paraguay": "PY", "peru": "PE",
    "philippines": "PH", "poland": "PL", "portugal": "PT", "puerto rico": "PR",
    "qatar": "QA", "romania": "RO", "russia": "RU", "saudi arabia": "SA",
    "senegal": "SN", "serbia": "RS", "singapore": "SG", "slovakia": "SK",
    "slovenia": "SI", "south africa": "ZA", "south korea": "KR", "spain": "ES",
    "sri lanka": "LK", "sweden": "SE", "switzerland": "CH", "syria": "SY",
    "taiwan": "TW", "tanzania": "TZ", "thailand": "TH", "tunisia": "TN",
    "turkey": "TR", "uganda": "UG", "ukraine": "UA",
    "united arab emirates": "AE", "united kingdom": "GB", "united states": "US",
    "uruguay": "UY", "uzbekistan": "UZ", "venezuela": "VE", "vietnam": "VN",
    "yemen": "YE", "zambia": "ZM", "zimbabwe": "ZW",
}

# Longest names first so "nigeria" is tried before "niger".
_NAMES_BY_LENGTH = sorted(COUNTRY_NAME_CODES, key=len, reverse=True)


@dataclass
class ParsedPriceSheet:
    prices: dict[str, tuple[str, Decimal]] = field(default_factory=dict)
    skipped: int = 0


def _find_column(headers: list[str], aliases: tuple[str, ...]) -> Optional[int]:
    lowered = [header.strip().lower() for header in headers]
    for alias in aliases:
        for index, header in enumerate(lowered):
            if alias in header:
                return index
    return None


def country_code_for_name(country_name: str) -> Optional[str]:
    normalized = country_name.strip().lower()
    if normalized in COUNTRY_NAME_CODES:
        return COUNTRY_NAME_CODES[normalized]
    match = _PARENTHETICAL_CODE.search(country_name)
    if match:
        return match.group(1)
    for name in _NAMES_BY_LENGTH:
        if normalized.startswith(name + " ") or normalized.startswith(name + "-"):
            return COUNTRY_NAME_CODES[name]
    return None


def parse_price_sheet(text: str) -> ParsedPriceSheet:
    """Parse a per-minute price sheet, keeping the lowest price per country."""
    rows = list(csv.reader(io.StringIO(text)))
    if len(rows) < 2:
        raise ValidationError("CSV file is empty or invalid")

    header = rows[0]
    iso_index = _find_column(header, ISO_HEADERS)
    country_index = _find_column(header, COUNTRY_HEADERS)
    price_index = _find_column(header, PRICE_HEADERS)
    if country_index is None or price_index is None:
        raise ValidationError(
            "CSV file is missing required columns (country name and price per minute)"
        )

    sheet = ParsedPriceSheet()
    for line_number, row in enumerate(rows[1:], start=2):
        if not any(cell.strip() for cell in row):
            continue
        if len(row) <= max(country_index, price_index):
            logger.warning("csv_import.short_row", extra={"line": line_number})
            sheet.skipped += 1
            continue

        country_name = row[country_index].strip()
        if not country_name or country_name.lower() == "country":
            continue

        code = ""
        if iso_index is not None and len(row) > iso_index:
            code = row[iso_index].strip().upper()
        if len(code) != 2 or not code.isalpha():
            code = country_code_for_name(country_name) or ""
        if not code:
            logger.warning(
                "csv_import.unknown_country",
                extra={"line": line_number, "country_name": country_name},
            )
            sheet.skipped += 1
            continue

        price_text = _PRICE_CHARS.sub("", row[price_index])
        try:
            price = Decimal(price_text)
        except InvalidOperation:
            price = None
        if price is None or not price.is_finite() or price < 0:
            logger.warning(
                "csv_import.invalid_price",
                extra={"line": line_number, "price": row[price_index]},
            )
            sheet.skipped += 1
            continue

        current = sheet.prices.get(code)
        if current is None or price < current[1]:
            sheet.prices[code] = (country_name, price)

    return sheet


class PriceSheetImporter:
    def __init__(
        self, session: Session, repository: Optional[PricingRepository] = None
    ) -> None:
        self.session = session
        self.repository = repository or PricingRepository(session)

    def import_text(self, text: str) -> CsvImportResponse:
        sheet = parse_price_sheet(text)
        if not sheet.prices:
            raise ValidationError("No valid pricing data found in the CSV file")

        existing = self.repository.get_country_prices(sheet.prices)
        changed = {
            code: row
            for code, row in sheet.prices.items()
            if code not in existing or existing[code].base_price != row[1]
        }
        unchanged = len(sheet.prices) - len(changed)
        try:
            updates = self.repository.bulk_upsert_country_prices(
                changed, source="csv_import"
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info(
            "csv_import.completed",
            extra={
                "countries": len(sheet.prices),
                "skipped": sheet.skipped,
                "price_changes": len(updates),
            },
        )
        return CsvImportResponse(
            imported=len(changed),
            skipped=sheet.skipped,
            unchanged=unchanged,
            price_changes=len(updates),
            timestamp=utcnow(),
        )
