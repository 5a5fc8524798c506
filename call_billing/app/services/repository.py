from __future__ import annotations

import logging
from collections.abc import Callable
from decimal import Decimal
from typing import Optional, TypeVar

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from ..core.errors import TransactionConflictError
from ..models import AccountModel, AccountTransactionModel, CallRecordModel
from ..models.db import utcnow


logger = logging.getLogger(__name__)

T = TypeVar("T")


class BillingRepository:
    """Thin data access layer around the SQLModel session."""

    def __init__(self, session: Session) -> None:
        self.session = session

    # Units of work ------------------------------------------------------
    def run_in_transaction(self, work: Callable[[], T], attempts: int = 3) -> T:
        """Run ``work`` and commit, retrying on optimistic-concurrency conflicts.

        ``work`` must re-read everything it depends on, since each retry starts
        from a rolled-back session.
        """
        attempts = max(attempts, 1)
        for attempt in range(1, attempts + 1):
            try:
                result = work()
                self.session.commit()
                return result
            except (TransactionConflictError, IntegrityError) as exc:
                self.session.rollback()
                logger.warning(
                    "transaction.conflict",
                    extra={"attempt": attempt, "attempts": attempts, "error": str(exc)},
                )
                if attempt == attempts:
                    if isinstance(exc, TransactionConflictError):
                        raise
                    raise TransactionConflictError(str(exc)) from exc
            except Exception:
                self.session.rollback()
                raise
        raise AssertionError("unreachable")

    # Accounts -----------------------------------------------------------
    def get_account(self, account_id: str) -> Optional[AccountModel]:
        return self.session.get(AccountModel, account_id)

    def add_account(
        self,
        account_id: str,
        *,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        is_admin: bool = False,
    ) -> AccountModel:
        account = AccountModel(
            id=account_id,
            email=email,
            display_name=display_name,
            is_admin=is_admin,
            last_login=utcnow(),
        )
        self.session.add(account)
        self.session.flush()
        return account

    def list_accounts(self) -> list[AccountModel]:
        stmt = select(AccountModel).order_by(col(AccountModel.created_at))
        return list(self.session.exec(stmt))

    def compare_and_set_balance(
        self, account: AccountModel, new_balance: Decimal
    ) -> None:
        """Write ``new_balance`` only if nobody changed the account since it was read."""
        expected_version = account.version
        stmt = (
            update(AccountModel)
            .where(col(AccountModel.id) == account.id)
            .where(col(AccountModel.version) == expected_version)
            .values(balance=new_balance, version=expected_version + 1)
            .execution_options(synchronize_session=False)
        )
        result = self.session.exec(stmt)  # type: ignore[call-overload]
        if result.rowcount != 1:
            raise TransactionConflictError(
                f"Account {account.id} changed during the transaction"
            )
        # Keep the in-session copy consistent with what was written.
        self.session.expire(account)

    # Ledger -------------------------------------------------------------
    def add_transaction(
        self,
        *,
        account_id: str,
        amount: Decimal,
        tx_type: str,
        source: str,
        linked_call_id: Optional[str] = None,
        external_ref: Optional[str] = None,
        phone_number: Optional[str] = None,
        duration_seconds: Optional[int] = None,
        memo: Optional[str] = None,
    ) -> AccountTransactionModel:
        entry = AccountTransactionModel(
            account_id=account_id,
            amount=amount,
            type=tx_type,
            source=source,
            linked_call_id=linked_call_id,
            external_ref=external_ref,
            phone_number=phone_number,
            duration_seconds=duration_seconds,
            memo=memo,
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def list_transactions(self, account_id: str) -> list[AccountTransactionModel]:
        stmt = (
            select(AccountTransactionModel)
            .where(AccountTransactionModel.account_id == account_id)
            .order_by(
                col(AccountTransactionModel.created_at).desc(),
                col(AccountTransactionModel.id),
            )
        )
        return list(self.session.exec(stmt))

    def find_transaction_by_external_ref(
        self, external_ref: str
    ) -> Optional[AccountTransactionModel]:
        stmt = select(AccountTransactionModel).where(
            AccountTransactionModel.external_ref == external_ref
        )
        return self.session.exec(stmt).first()

    def ledger_summary(self, account_id: str) -> tuple[Decimal, int]:
        entries = self.list_transactions(account_id)
        return sum((entry.amount for entry in entries), Decimal("0")), len(entries)

    # Call records -------------------------------------------------------
    def get_call_record(self, call_id: str) -> Optional[CallRecordModel]:
        return self.session.get(CallRecordModel, call_id)

    def add_call_record(self, record: CallRecordModel) -> CallRecordModel:
        self.session.add(record)
        self.session.flush()
        return record

    def list_call_records(self, user_id: str, limit: int) -> list[CallRecordModel]:
        stmt = (
            select(CallRecordModel)
            .where(CallRecordModel.user_id == user_id)
            .order_by(col(CallRecordModel.timestamp).desc())
            .limit(limit)
        )
        return list(self.session.exec(stmt))
