import logging

from fastapi import APIRouter, Depends, File, UploadFile
from starlette.concurrency import run_in_threadpool

from ..core.clients import ProviderClients
from ..core.dependencies import (
    get_balance_service,
    get_clients,
    get_price_sheet_importer,
    get_pricing_repository,
    require_admin,
)
from ..core.errors import ValidationError
from ..models import (
    AccountResponse,
    BalanceAdjustmentRequest,
    CountryPriceResponse,
    CountryPriceUpdateRequest,
    CsvImportResponse,
    MarkupConfigModel,
    MarkupConfigPayload,
    MarkupConfigResponse,
    PriceUpdateResponse,
    ReconciliationResponse,
)
from ..services import BalanceService, PriceSheetImporter, PricingRepository
from ..services.cost import to_decimal
from ..services.pricing_store import default_markup_config


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


def _markup_response(config: MarkupConfigModel) -> MarkupConfigResponse:
    return MarkupConfigResponse(
        default_markup_percent=float(config.default_markup_percent),
        country_markups=dict(config.country_markups or {}),
        minimum_markup_percent=float(config.minimum_markup_percent),
        minimum_final_price=float(config.minimum_final_price),
        updated_at=config.updated_at,
    )

@router.get("/users", response_model=list[AccountResponse])
def list_users(
    admin: AccountResponse = Depends(require_admin),
    service: BalanceService = Depends(get_balance_service),
) -> list[AccountResponse]:
    return service.list_accounts()

@router.post("/balance", response_model=AccountResponse)
def set_balance(
    payload: BalanceAdjustmentRequest,
    admin: AccountResponse = Depends(require_admin),
    service: BalanceService = Depends(get_balance_service),
) -> AccountResponse:
    return service.adjust_balance(
        payload.target_user_id, payload.new_balance, actor_id=admin.id
    )

@router.get("/accounts/{account_id}/reconciliation", response_model=ReconciliationResponse)
def reconcile_account(
    account_id: str,
    admin: AccountResponse = Depends(require_admin),
    service: BalanceService = Depends(get_balance_service),
) -> ReconciliationResponse:
    return service.reconcile(account_id)

@router.get("/pricing/markup-config", response_model=MarkupConfigResponse)
def get_markup_config(
    admin: AccountResponse = Depends(require_admin),
    repository: PricingRepository = Depends(get_pricing_repository),
) -> MarkupConfigResponse:
    return _markup_response(repository.get_markup_config() or default_markup_config())

@router.put("/pricing/markup-config", response_model=MarkupConfigResponse)
def save_markup_config(
    payload: MarkupConfigPayload,
    admin: AccountResponse = Depends(require_admin),
    repository: PricingRepository = Depends(get_pricing_repository),
    clients: ProviderClients = Depends(get_clients),
) -> MarkupConfigResponse:
    try:
        config = repository.save_markup_config(
            default_markup_percent=to_decimal(payload.default_markup_percent),
            country_markups=payload.country_markups,
            minimum_markup_percent=to_decimal(payload.minimum_markup_percent),
            minimum_final_price=to_decimal(payload.minimum_final_price),
        )
        repository.session.commit()
    except Exception:
        repository.session.rollback()
        raise
    clients.markup_cache.invalidate()
    repository.session.refresh(config)
    logger.info("pricing.markup_config_saved", extra={"actor_id": admin.id})
    return _markup_response(config)

@router.put("/pricing/countries/{country_code}", response_model=CountryPriceResponse)
def set_country_price(
    country_code: str,
    payload: CountryPriceUpdateRequest,
    admin: AccountResponse = Depends(require_admin),
    repository: PricingRepository = Depends(get_pricing_repository),
) -> CountryPriceResponse:
    code = country_code.strip().upper()
    if len(code) != 2 or not code.isalpha():
        raise ValidationError("Country code must be a 2-letter ISO code")

    existing = repository.get_country_price(code)
    country_name = payload.country_name or (existing.country_name if existing else None)
    if not country_name:
        raise ValidationError("Country name is required for a new country")
    try:
        price, _ = repository.upsert_country_price(
            country_code=code,
            country_name=country_name,
            base_price=to_decimal(payload.base_price),
            source="admin",
        )
        repository.session.commit()
    except Exception:
        repository.session.rollback()
        raise
    repository.session.refresh(price)
    return CountryPriceResponse(
        country_code=price.country_code,
        country_name=price.country_name,
        base_price=float(price.base_price),
        currency=price.currency,
        last_updated=price.last_updated,
    )

@router.post("/pricing/csv-import", response_model=CsvImportResponse)
async def import_pricing_csv(
    csv_file: UploadFile = File(...),
    admin: AccountResponse = Depends(require_admin),
    importer: PriceSheetImporter = Depends(get_price_sheet_importer),
) -> CsvImportResponse:
    filename = (csv_file.filename or "").lower()
    if filename and not filename.endswith(".csv"):
        raise ValidationError("File must be a CSV file")
    raw = await csv_file.read()
    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ValidationError("CSV file must be UTF-8 encoded") from exc
    return await run_in_threadpool(importer.import_text, text)

@router.get("/pricing/price-updates", response_model=list[PriceUpdateResponse])
def list_price_updates(
    significant_only: bool = False,
    admin: AccountResponse = Depends(require_admin),
    repository: PricingRepository = Depends(get_pricing_repository),
) -> list[PriceUpdateResponse]:
    return [
        PriceUpdateResponse.model_validate(record, from_attributes=True)
        for record in repository.list_price_updates(significant_only=significant_only)
    ]

__all__ = ["router"]
