"""Read model, audits and settlement confirmation."""

import asyncio
from decimal import Decimal

import pytest

from conftest import OPERATOR_ID, open_customer
from vouchpay.common.events import SETTLEMENTS_CONFIRMED_TOPIC, EventEnvelope
from vouchpay.services.ledger.errors import AccountNotFound, InvalidInput, NotFound
from vouchpay.services.ledger.models import WITHDRAW_DEBIT, LedgerEntry

DESTINATION = {"bank_name": "FNB", "account_number": "62000000001"}


def test_open_and_get_account(service):
    view = service.open_account("carol")
    assert (view.account_id, view.kind, view.balance) == ("carol", "CUSTOMER", Decimal("0.00"))
    assert service.get_account("carol") == view
    with pytest.raises(AccountNotFound):
        service.get_account("nobody")


def test_account_history_newest_first(service, ledger):
    service.open_account("a")
    first = ledger.redeem("a", "10.00")
    second = ledger.withdraw("a", "2.00", DESTINATION)

    history = service.account_history("a")
    assert history.total_count == 2
    assert [e.operation_id for e in history.entries] == [second.operation_id, first.operation_id]
    assert history.entries[0].kind == WITHDRAW_DEBIT
    assert history.account.balance == Decimal("7.70")

    page = service.account_history("a", limit=1, offset=1)
    assert [e.operation_id for e in page.entries] == [first.operation_id]


@pytest.mark.parametrize("limit,offset", [(0, 0), (501, 0), (10, -1)])
def test_account_history_paging_bounds(service, limit, offset):
    service.open_account("a")
    with pytest.raises(InvalidInput):
        service.account_history("a", limit=limit, offset=offset)


def test_reconcile_each_operation_kind(service, ledger):
    """Entries of every committed operation carry exactly its external flow."""

    service.open_account("a")
    service.open_account("b")
    redeem = ledger.redeem("a", "100.00")
    transfer = ledger.transfer("a", "b", "40.00")
    withdraw = ledger.withdraw("b", "10.00", DESTINATION)

    r = service.reconcile_operation(redeem.operation_id)
    assert r.balanced and r.entry_sum == Decimal("100.00") == r.expected_flow
    t = service.reconcile_operation(transfer.operation_id)
    assert t.balanced and t.entry_sum == Decimal("0.00")
    w = service.reconcile_operation(withdraw.operation_id)
    assert w.balanced and w.entry_sum == Decimal("-10.00")
    assert len(service.operation_entries(transfer.operation_id)) == 3


def test_reconcile_unknown_operation_is_not_balanced(service):
    report = service.reconcile_operation("missing")
    assert report.balanced is False
    assert report.operation is None
    assert report.entries == []


def test_reconcile_flags_tampered_operation(service, ledger, session_factory):
    service.open_account("a")
    result = ledger.redeem("a", "10.00")
    with session_factory() as db:
        db.add(
            LedgerEntry(
                operation_id=result.operation_id,
                operation="REDEEM",
                account_id="a",
                kind="REDEEM_CREDIT",
                amount_cents=1,
                resulting_balance_cents=971,
                detail={},
            )
        )
        db.commit()
    assert service.reconcile_operation(result.operation_id).balanced is False


def test_verify_account(service, ledger):
    service.open_account("a")
    assert service.verify_account("a").consistent
    ledger.redeem("a", "10.00")
    check = service.verify_account("a")
    assert check.consistent
    assert check.ledger_balance == check.stored_balance == Decimal("9.70")


def test_verify_account_detects_drift(service, ledger):
    open_customer(ledger, "a", "5.00")
    assert service.verify_account("a").consistent is False


def test_commission_summary(service, ledger):
    service.open_account("a")
    service.open_account("b")
    ledger.redeem("a", "100.00")
    ledger.transfer("a", "b", "50.00")
    summary = service.commission_summary()
    assert summary.operator_account_id == OPERATOR_ID
    assert summary.redeem_commission == Decimal("3.00")
    assert summary.transfer_commission == Decimal("0.50")
    assert summary.balance == Decimal("3.50")
    assert summary.currency == "ZAR"


def test_confirm_pending_settlement(service, ledger):
    service.open_account("a")
    ledger.redeem("a", "10.00")
    result = ledger.withdraw("a", "5.00", DESTINATION)

    [pending] = service.list_settlements()
    assert pending.operation_id == result.operation_id
    assert pending.amount == Decimal("5.00")

    confirmed = service.confirm_settlement(result.operation_id, "BR-77")
    assert (confirmed.status, confirmed.bank_reference) == ("SETTLED", "BR-77")
    assert confirmed.settled_at is not None
    assert service.list_settlements() == []
    assert [s.operation_id for s in service.list_settlements(status="SETTLED")] == [result.operation_id]

    again = service.confirm_settlement(result.operation_id, "BR-other")
    assert again.bank_reference == "BR-77"


def test_confirm_unknown_settlement(service):
    with pytest.raises(NotFound):
        service.confirm_settlement("missing")


def test_settlement_confirmed_event_applied_once(service, ledger):
    """Redelivered confirmations are skipped by the inbox."""

    service.open_account("a")
    ledger.redeem("a", "10.00")
    result = ledger.withdraw("a", "5.00", DESTINATION)
    event = EventEnvelope(
        event_type=SETTLEMENTS_CONFIRMED_TOPIC,
        aggregate_id=result.operation_id,
        trace_id="trace-1",
        payload={"bank_reference": "BR-9"},
    )

    asyncio.run(service.handle_settlement_confirmed(event))
    asyncio.run(service.handle_settlement_confirmed(event))

    [settled] = service.list_settlements(status="SETTLED")
    assert settled.bank_reference == "BR-9"


def test_ensure_accounts_is_idempotent(service):
    service.ensure_accounts(retries=1)
    service.ensure_accounts(retries=1)
    assert service.get_account(OPERATOR_ID).kind == "OPERATOR"
