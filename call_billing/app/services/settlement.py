"""Settlement of completed calls against prepaid balances.

Each status-callback delivery is settled independently. The provider delivers
at least once, so a call id may arrive many times, concurrently or out of
order; the terminal-status check and the balance deduction run in one
compare-and-set unit of work so a retried delivery can never charge twice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from ..core.errors import (
    AccountNotFoundError,
    NotFoundError,
    PhoneParseError,
    TransactionConflictError,
)
from ..models import (
    TERMINAL_PROVIDER_STATUSES,
    AppCallStatus,
    BillingStatus,
    CallRecordModel,
    CallRecordResponse,
    ProviderCallStatus,
    StatusCallback,
    TransactionType,
)
from ..models.db import utcnow
from .cost import compute_cost
from .pricing import PricingEngine
from .repository import BillingRepository


logger = logging.getLogger(__name__)

ZERO = Decimal("0")

STATUS_MAP: dict[ProviderCallStatus, AppCallStatus] = {
    ProviderCallStatus.COMPLETED: AppCallStatus.ANSWERED,
    ProviderCallStatus.NO_ANSWER: AppCallStatus.MISSED,
    ProviderCallStatus.BUSY: AppCallStatus.REJECTED,
    ProviderCallStatus.FAILED: AppCallStatus.FAILED,
    ProviderCallStatus.CANCELED: AppCallStatus.CANCELED,
}


def map_provider_status(status: ProviderCallStatus) -> AppCallStatus:
    return STATUS_MAP.get(status, AppCallStatus.UNKNOWN)


def is_final(record: CallRecordModel) -> bool:
    return ProviderCallStatus.parse(record.provider_status) in TERMINAL_PROVIDER_STATUSES


class SettlementAction(str, Enum):
    SKIPPED = "skipped"
    RECORDED = "recorded"
    CHARGED = "charged"
    DUPLICATE = "duplicate"
    STALE = "stale"
    FALLBACK = "fallback"
    FAILED = "failed"


@dataclass(frozen=True)
class SettlementOutcome:
    action: SettlementAction
    call_id: Optional[str] = None
    app_status: Optional[AppCallStatus] = None
    charged: Decimal = ZERO
    reason: Optional[str] = None


class SettlementService:
    def __init__(
        self,
        session: Session,
        pricing: PricingEngine,
        repository: Optional[BillingRepository] = None,
        max_attempts: int = 3,
    ) -> None:
        self.session = session
        self.pricing = pricing
        self.repository = repository or BillingRepository(session)
        self.max_attempts = max_attempts

    # ------------------------------------------------------------------
    # Helper utilities
    # ------------------------------------------------------------------
    def _call_cost(self, event: StatusCallback, app_status: AppCallStatus) -> Decimal:
        if app_status is not AppCallStatus.ANSWERED or event.duration_seconds <= 0:
            return ZERO

        context = {"call_id": event.call_id, "to_number": event.to_number}
        try:
            rate = self.pricing.resolve_rate(event.to_number or "")
        except PhoneParseError as exc:
            logger.warning("settlement.pricing.unparseable", extra={**context, "error": str(exc)})
            return ZERO
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("settlement.pricing.lookup_failed", extra=context)
            return ZERO

        if rate is None:
            logger.warning("settlement.pricing.missing", extra=context)
            return ZERO
        if rate.is_unsupported:
            logger.warning(
                "settlement.pricing.unsupported",
                extra={**context, "country_code": rate.country_code},
            )
            return ZERO
        return compute_cost(
            rate.final_price, event.duration_seconds, rate.billing_increment_seconds
        )

    def _fill_missing(self, record: CallRecordModel, event: StatusCallback) -> None:
        for attr, value in (
            ("phone_number", event.to_number),
            ("from_number", event.from_number),
            ("account_sid", event.account_sid),
        ):
            if getattr(record, attr) is None and value:
                setattr(record, attr, value)
        self.session.add(record)

    def _write_call_record(
        self,
        existing: Optional[CallRecordModel],
        event: StatusCallback,
        app_status: AppCallStatus,
        *,
        cost: Decimal,
        billing_status: BillingStatus,
    ) -> CallRecordModel:
        provider_status = (
            event.status.value
            if event.status is not ProviderCallStatus.UNKNOWN
            else (event.raw_status.lower() or ProviderCallStatus.UNKNOWN.value)
        )
        if existing is None:
            record = CallRecordModel(
                call_id=event.call_id,
                user_id=event.user_id,
                phone_number=event.to_number,
                from_number=event.from_number,
                direction=event.direction.value,
                account_sid=event.account_sid,
                provider_status=provider_status,
                app_status=app_status.value,
                duration_seconds=event.duration_seconds,
                cost=cost,
                billing_status=billing_status.value,
            )
            return self.repository.add_call_record(record)

        existing.provider_status = provider_status
        existing.app_status = app_status.value
        existing.duration_seconds = event.duration_seconds
        existing.cost = cost
        existing.billing_status = billing_status.value
        existing.timestamp = utcnow()
        self._fill_missing(existing, event)
        self.session.flush()
        return existing

    def _charge(
        self, event: StatusCallback, app_status: AppCallStatus, cost: Decimal
    ) -> SettlementOutcome:
        account = self.repository.get_account(event.user_id)
        if account is None:
            raise AccountNotFoundError(f"Account {event.user_id} not found")

        existing = self.repository.get_call_record(event.call_id)
        if existing is not None and is_final(existing):
            self._fill_missing(existing, event)
            logger.info(
                "settlement.duplicate",
                extra={"call_id": event.call_id, "stored_status": existing.provider_status},
            )
            return SettlementOutcome(
                SettlementAction.DUPLICATE, event.call_id, app_status, reason="already settled"
            )

        balance = account.balance
        deduction = min(cost, balance)
        if deduction < cost:
            logger.warning(
                "settlement.insufficient_funds",
                extra={
                    "call_id": event.call_id,
                    "user_id": event.user_id,
                    "cost": str(cost),
                    "balance": str(balance),
                },
            )
        billing_status = (
            BillingStatus.BILLED if deduction == cost else BillingStatus.PARTIALLY_BILLED
        )

        self._write_call_record(
            existing, event, app_status, cost=deduction, billing_status=billing_status
        )
        if deduction > 0:
            self.repository.compare_and_set_balance(account, balance - deduction)
            self.repository.add_transaction(
                account_id=event.user_id,
                amount=-deduction,
                tx_type=TransactionType.CALL.value,
                source="system",
                linked_call_id=event.call_id,
                phone_number=event.to_number,
                duration_seconds=event.duration_seconds,
            )

        logger.info(
            "settlement.charged",
            extra={
                "call_id": event.call_id,
                "user_id": event.user_id,
                "cost": str(cost),
                "charged": str(deduction),
                "balance": str(balance - deduction),
            },
        )
        return SettlementOutcome(
            SettlementAction.CHARGED, event.call_id, app_status, charged=deduction
        )

    def _record(
        self,
        event: StatusCallback,
        app_status: AppCallStatus,
        billing_status: Optional[BillingStatus] = None,
    ) -> SettlementOutcome:
        existing = self.repository.get_call_record(event.call_id)
        if existing is not None and is_final(existing):
            # Never regress or overwrite a settled call.
            self._fill_missing(existing, event)
            action = SettlementAction.DUPLICATE if event.is_terminal else SettlementAction.STALE
            logger.info(
                f"settlement.{action.value}",
                extra={
                    "call_id": event.call_id,
                    "stored_status": existing.provider_status,
                    "incoming_status": event.raw_status,
                },
            )
            return SettlementOutcome(action, event.call_id, app_status)

        if billing_status is None:
            billing_status = (
                BillingStatus.NOT_BILLABLE if event.is_terminal else BillingStatus.PENDING
            )
        self._write_call_record(
            existing, event, app_status, cost=ZERO, billing_status=billing_status
        )
        logger.info(
            "settlement.recorded",
            extra={
                "call_id": event.call_id,
                "status": event.raw_status,
                "billing_status": billing_status.value,
            },
        )
        return SettlementOutcome(SettlementAction.RECORDED, event.call_id, app_status)

    def _fallback(
        self, event: StatusCallback, app_status: AppCallStatus, error: Exception
    ) -> SettlementOutcome:
        try:
            outcome = self.repository.run_in_transaction(
                lambda: self._record(event, app_status, BillingStatus.BILLING_FAILED),
                attempts=1,
            )
        except (TransactionConflictError, SQLAlchemyError):
            logger.exception(
                "settlement.fallback_failed",
                extra={"call_id": event.call_id, "user_id": event.user_id},
            )
            return SettlementOutcome(
                SettlementAction.FAILED, event.call_id, app_status, reason=str(error)
            )
        if outcome.action is not SettlementAction.RECORDED:
            return outcome
        return SettlementOutcome(
            SettlementAction.FALLBACK, event.call_id, app_status, reason=str(error)
        )

    def _record_to_response(self, record: CallRecordModel) -> CallRecordResponse:
        return CallRecordResponse(
            call_id=record.call_id,
            user_id=record.user_id,
            phone_number=record.phone_number,
            direction=record.direction,
            provider_status=record.provider_status,
            app_status=record.app_status,
            duration_seconds=record.duration_seconds,
            cost=float(record.cost),
            billing_status=record.billing_status,
            created_at=record.created_at,
            timestamp=record.timestamp,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def settle(self, event: StatusCallback) -> SettlementOutcome:
        """Record one status-callback delivery and charge for it if billable.

        Every failure has a degraded outcome instead of an exception: pricing
        problems bill $0, billing problems fall back to recording the call alone.
        """
        if not event.call_id:
            logger.warning("settlement.skipped", extra={"reason": "missing call id"})
            return SettlementOutcome(SettlementAction.SKIPPED, reason="missing call id")
        if not event.user_id:
            logger.warning(
                "settlement.skipped",
                extra={"call_id": event.call_id, "reason": "missing user id"},
            )
            return SettlementOutcome(
                SettlementAction.SKIPPED, event.call_id, reason="missing user id"
            )

        app_status = map_provider_status(event.status)
        if event.status is ProviderCallStatus.UNKNOWN:
            logger.warning(
                "settlement.unknown_status",
                extra={"call_id": event.call_id, "status": event.raw_status},
            )

        cost = self._call_cost(event, app_status)
        if cost > 0:
            try:
                return self.repository.run_in_transaction(
                    lambda: self._charge(event, app_status, cost), self.max_attempts
                )
            except (NotFoundError, TransactionConflictError, SQLAlchemyError) as exc:
                logger.error(
                    "settlement.charge_failed",
                    extra={
                        "call_id": event.call_id,
                        "user_id": event.user_id,
                        "cost": str(cost),
                        "error": str(exc),
                    },
                )
                return self._fallback(event, app_status, exc)

        try:
            return self.repository.run_in_transaction(
                lambda: self._record(event, app_status), self.max_attempts
            )
        except (TransactionConflictError, SQLAlchemyError):
            logger.exception("settlement.record_failed", extra={"call_id": event.call_id})
            return SettlementOutcome(
                SettlementAction.FAILED, event.call_id, app_status, reason="record failed"
            )

    def call_history(self, user_id: str, limit: int = 50) -> list[CallRecordResponse]:
        records = self.repository.list_call_records(user_id, limit)
        return [self._record_to_response(record) for record in records]
