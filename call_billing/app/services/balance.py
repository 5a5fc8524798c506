from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from ..core.errors import AccountNotFoundError, ValidationError
from ..models import (
    AccountModel,
    AccountResponse,
    AccountTransactionModel,
    ReconciliationResponse,
    StatementResponse,
    TransactionResponse,
    TransactionType,
)
from ..models.db import utcnow
from .cost import Number, round_money, to_decimal
from .repository import BillingRepository


logger = logging.getLogger(__name__)


class BalanceService:
    """Balance reads and mutations outside the call settlement path."""

    def __init__(
        self,
        session: Session,
        repository: Optional[BillingRepository] = None,
        max_attempts: int = 3,
    ) -> None:
        self.session = session
        self.repository = repository or BillingRepository(session)
        self.max_attempts = max_attempts

    # ------------------------------------------------------------------
    # Helper utilities
    # ------------------------------------------------------------------
    def _get_account(self, account_id: str) -> AccountModel:
        account = self.repository.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return account

    def _account_to_response(self, account: AccountModel) -> AccountResponse:
        return AccountResponse(
            id=account.id,
            email=account.email,
            display_name=account.display_name,
            balance=float(account.balance),
            is_admin=account.is_admin,
            created_at=account.created_at,
            last_login=account.last_login,
        )

    def _transaction_to_response(
        self, entry: AccountTransactionModel
    ) -> TransactionResponse:
        return TransactionResponse(
            id=entry.id,
            type=entry.type,
            amount=float(entry.amount),
            currency=entry.currency,
            status=entry.status,
            source=entry.source,
            linked_call_id=entry.linked_call_id,
            external_ref=entry.external_ref,
            phone_number=entry.phone_number,
            duration_seconds=entry.duration_seconds,
            memo=entry.memo,
            created_at=entry.created_at,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def ensure_account(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> AccountResponse:
        """Return the caller's account, creating it with a zero balance on first sight."""
        account = self.repository.get_account(user_id)
        if account is None:
            try:
                account = self.repository.add_account(
                    user_id, email=email, display_name=display_name
                )
                self.session.commit()
            except IntegrityError:
                # Another request created it first.
                self.session.rollback()
                account = self._get_account(user_id)
            else:
                logger.info("account.created", extra={"account_id": user_id})
                return self._account_to_response(account)

        account.last_login = utcnow()
        if email and not account.email:
            account.email = email
        if display_name and not account.display_name:
            account.display_name = display_name
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return self._account_to_response(account)

    def get_account(self, account_id: str) -> AccountResponse:
        return self._account_to_response(self._get_account(account_id))

    def list_accounts(self) -> list[AccountResponse]:
        return [self._account_to_response(a) for a in self.repository.list_accounts()]

    def adjust_balance(
        self,
        account_id: str,
        new_balance: Number,
        actor_id: Optional[str] = None,
    ) -> AccountResponse:
        """Set an absolute balance, recording the delta as an adjustment entry."""
        target = to_decimal(new_balance)
        if target < 0:
            raise ValidationError("Balance must be a non-negative number")
        target = round_money(target)

        def work() -> Decimal:
            account = self._get_account(account_id)
            previous = account.balance
            delta = target - previous
            if delta == 0:
                return delta
            self.repository.compare_and_set_balance(account, target)
            self.repository.add_transaction(
                account_id=account_id,
                amount=delta,
                tx_type=TransactionType.ADJUSTMENT.value,
                source="admin",
                memo=f"Balance set by {actor_id}" if actor_id else "Balance set by admin",
            )
            return delta

        delta = self.repository.run_in_transaction(work, self.max_attempts)
        logger.info(
            "account.balance_adjusted",
            extra={
                "account_id": account_id,
                "actor_id": actor_id,
                "new_balance": str(target),
                "delta": str(delta),
            },
        )
        return self.get_account(account_id)

    def credit_deposit(
        self,
        account_id: str,
        amount: Number,
        session_id: str,
        source: str = "stripe",
    ) -> AccountResponse:
        """Credit a confirmed payment exactly once per payment session id."""
        value = to_decimal(amount)
        if value <= 0:
            raise ValidationError("Deposit amount must be positive")
        if not session_id:
            raise ValidationError("Payment session id is required")
        value = round_money(value)

        def work() -> bool:
            account = self._get_account(account_id)
            if self.repository.find_transaction_by_external_ref(session_id) is not None:
                return False
            self.repository.compare_and_set_balance(account, account.balance + value)
            self.repository.add_transaction(
                account_id=account_id,
                amount=value,
                tx_type=TransactionType.DEPOSIT.value,
                source=source,
                external_ref=session_id,
            )
            return True

        credited = self.repository.run_in_transaction(work, self.max_attempts)
        if credited:
            logger.info(
                "deposit.credited",
                extra={"account_id": account_id, "amount": str(value), "session_id": session_id},
            )
        else:
            logger.info(
                "idempotent.deposit.hit",
                extra={"account_id": account_id, "session_id": session_id},
            )
        return self.get_account(account_id)

    def get_statement(
        self,
        account_id: str,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> StatementResponse:
        self._get_account(account_id)

        entries = self.repository.list_transactions(account_id)

        start_index = 0
        if cursor:
            try:
                cursor_id = UUID(cursor)
            except ValueError as exc:
                raise ValueError("Invalid cursor") from exc
            for idx, entry in enumerate(entries):
                if entry.id == cursor_id:
                    start_index = idx + 1
                    break
            else:
                raise ValueError("Invalid cursor")

        slice_entries = entries[start_index : start_index + limit]
        next_cursor = None
        if start_index + limit < len(entries):
            next_cursor = str(slice_entries[-1].id)

        return StatementResponse(
            items=[self._transaction_to_response(entry) for entry in slice_entries],
            next_cursor=next_cursor,
        )

    def reconcile(self, account_id: str) -> ReconciliationResponse:
        account = self._get_account(account_id)
        total, count = self.repository.ledger_summary(account_id)
        difference = account.balance - total
        return ReconciliationResponse(
            account_id=account_id,
            balance=float(account.balance),
            ledger_total=float(total),
            difference=float(difference),
            transaction_count=count,
            is_reconciled=difference == 0,
        )
