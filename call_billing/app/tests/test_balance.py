from decimal import Decimal

import pytest

from ..core.errors import AccountNotFoundError, ValidationError
from ..models import AccountModel
from ..services import BalanceService, BillingRepository


def _service(session) -> BalanceService:
    return BalanceService(session)


def test_ensure_account_creates_zero_balance_once(session) -> None:
    service = _service(session)
    created = service.ensure_account("user-1", email="a@example.com")
    again = service.ensure_account("user-1", email="other@example.com")

    assert created.balance == 0
    assert again.email == "a@example.com"
    assert again.last_login is not None
    assert len(service.list_accounts()) == 1


def test_deposit_is_credited_once_per_session(session) -> None:
    service = _service(session)
    service.ensure_account("user-1")

    service.credit_deposit("user-1", Decimal("10"), "cs_test_1")
    result = service.credit_deposit("user-1", Decimal("10"), "cs_test_1")

    assert result.balance == 10
    entries = BillingRepository(session).list_transactions("user-1")
    assert len(entries) == 1
    assert entries[0].type == "deposit"
    assert entries[0].external_ref == "cs_test_1"


@pytest.mark.parametrize("amount", [0, -5, float("inf")])
def test_deposit_rejects_invalid_amounts(session, amount) -> None:
    service = _service(session)
    service.ensure_account("user-1")
    with pytest.raises(ValidationError):
        service.credit_deposit("user-1", amount, "cs_test_2")


def test_deposit_to_unknown_account_fails(session) -> None:
    with pytest.raises(AccountNotFoundError):
        _service(session).credit_deposit("nobody", 5, "cs_test_3")


def test_adjust_balance_records_signed_delta(session) -> None:
    service = _service(session)
    service.ensure_account("user-1")
    service.credit_deposit("user-1", 20, "cs_test_4")

    updated = service.adjust_balance("user-1", 12.5, actor_id="admin-1")

    assert updated.balance == 12.5
    entries = BillingRepository(session).list_transactions("user-1")
    adjustment = next(e for e in entries if e.type == "adjustment")
    assert adjustment.amount == Decimal("-7.5")
    assert adjustment.source == "admin"
    assert session.get(AccountModel, "user-1").version == 2


def test_adjust_balance_to_same_value_adds_no_entry(session) -> None:
    service = _service(session)
    service.ensure_account("user-1")

    service.adjust_balance("user-1", 0)

    assert BillingRepository(session).list_transactions("user-1") == []


@pytest.mark.parametrize("value", [-1, float("nan"), float("inf")])
def test_adjust_balance_rejects_invalid_values(session, value) -> None:
    service = _service(session)
    service.ensure_account("user-1")
    with pytest.raises(ValidationError):
        service.adjust_balance("user-1", value)


def test_adjust_balance_unknown_account(session) -> None:
    with pytest.raises(AccountNotFoundError):
        _service(session).adjust_balance("nobody", 3)


def test_reconciliation_matches_ledger(session) -> None:
    service = _service(session)
    service.ensure_account("user-1")
    service.credit_deposit("user-1", 10, "cs_test_5")
    service.adjust_balance("user-1", 4)

    report = service.reconcile("user-1")

    assert report.balance == 4
    assert report.ledger_total == 4
    assert report.transaction_count == 2
    assert report.is_reconciled is True


def test_reconciliation_reports_out_of_band_writes(session) -> None:
    service = _service(session)
    service.ensure_account("user-1")
    account = session.get(AccountModel, "user-1")
    account.balance = Decimal("3")
    session.add(account)
    session.commit()

    report = service.reconcile("user-1")

    assert report.difference == 3
    assert report.is_reconciled is False


def test_statement_pages_with_cursor(session) -> None:
    service = _service(session)
    service.ensure_account("user-1")
    for index in range(5):
        service.credit_deposit("user-1", 5, f"cs_page_{index}")

    first = service.get_statement("user-1", limit=2)
    second = service.get_statement("user-1", limit=2, cursor=first.next_cursor)
    third = service.get_statement("user-1", limit=2, cursor=second.next_cursor)

    assert len(first.items) == 2
    assert len(second.items) == 2
    assert len(third.items) == 1
    assert third.next_cursor is None
    ids = [item.id for page in (first, second, third) for item in page.items]
    assert len(set(ids)) == 5


def test_statement_rejects_unknown_cursor(session) -> None:
    service = _service(session)
    service.ensure_account("user-1")
    with pytest.raises(ValueError):
        service.get_statement("user-1", cursor="not-a-uuid")
