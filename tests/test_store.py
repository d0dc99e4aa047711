"""Account store and entry log behaviour against a real database session."""

import pytest

from conftest import OPERATOR_ID, open_customer
from vouchpay.services.ledger.entry_log import LedgerEntryLog
from vouchpay.services.ledger.errors import AccountNotFound, InsufficientFunds, InvalidInput
from vouchpay.services.ledger.models import CUSTOMER, REDEEM, REDEEM_CREDIT, Account
from vouchpay.services.ledger.store import AccountStore


@pytest.fixture
def store():
    return AccountStore(OPERATOR_ID)


def test_open_account_starts_at_zero_and_is_idempotent(session_factory, store):
    with session_factory() as db:
        first = store.open_account(db, "alice")
        db.commit()
        assert first.kind == CUSTOMER
        assert first.balance_cents == 0
    with session_factory() as db:
        again = store.open_account(db, "alice")
        assert again.account_id == "alice"
        assert db.query(Account).filter_by(account_id="alice").count() == 1


@pytest.mark.parametrize("account_id", ["", OPERATOR_ID])
def test_open_account_rejects_reserved_or_empty_ids(session_factory, store, account_id):
    with session_factory() as db:
        with pytest.raises(InvalidInput):
            store.open_account(db, account_id)


def test_get_unknown_account(session_factory, store):
    with session_factory() as db:
        with pytest.raises(AccountNotFound):
            store.get(db, "ghost")


def test_operator_is_not_a_customer(session_factory, ledger):
    with session_factory() as db:
        with pytest.raises(InvalidInput):
            ledger.store.get_customer(db, OPERATOR_ID)


def test_adjust_refuses_to_cross_minimum(session_factory, ledger):
    """A guarded debit below the floor leaves the balance untouched."""

    open_customer(ledger, "alice", "10.00")
    with session_factory() as db:
        with pytest.raises(InsufficientFunds):
            ledger.store.adjust(db, "alice", -1001, 0)
        assert ledger.store.adjust(db, "alice", -1000, 0) == 0
        db.commit()
    with session_factory() as db:
        assert ledger.store.get(db, "alice").balance_cents == 0


def test_adjust_refuses_operator_decrease(session_factory, ledger):
    with session_factory() as db:
        ledger.store.adjust(db, OPERATOR_ID, 500, None)
        with pytest.raises(InvalidInput):
            ledger.store.adjust(db, OPERATOR_ID, -1, None)


def test_second_operator_account_rejected(session_factory, ledger):
    other = AccountStore("another-operator")
    with session_factory() as db:
        with pytest.raises(RuntimeError):
            other.ensure_operator(db)


def test_total_balance_sums_every_account(session_factory, ledger):
    open_customer(ledger, "alice", "10.00")
    open_customer(ledger, "bob", "2.50")
    with session_factory() as db:
        assert ledger.store.total_balance(db) == 1250


def test_entry_log_is_append_only(session_factory, ledger):
    """Updating or deleting a committed entry is refused."""

    open_customer(ledger, "alice")
    log = LedgerEntryLog()
    with session_factory() as db:
        entry = log.append(
            db,
            operation_id="op-1",
            operation=REDEEM,
            account_id="alice",
            kind=REDEEM_CREDIT,
            amount_cents=100,
            resulting_balance_cents=100,
            detail={"gross_cents": 103},
        )
        db.commit()
        entry.amount_cents = 1
        with pytest.raises(RuntimeError):
            db.flush()
        db.rollback()
        db.delete(entry)
        with pytest.raises(RuntimeError):
            db.flush()
