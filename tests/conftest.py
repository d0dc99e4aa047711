"""Shared fixtures: a file-backed SQLite ledger and an engine wired to it."""

import os

# Settings are read at import time.
os.environ.setdefault("DATABASE_DSN", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("API_KEY", "test-key")

import pytest

from vouchpay.common.db import Base, make_session_factory
from vouchpay.services.ledger import models  # noqa: F401  registers tables
from vouchpay.services.ledger.commission import to_cents
from vouchpay.services.ledger.engine import TransactionEngine
from vouchpay.services.ledger.locks import InProcessLockCoordinator
from vouchpay.services.ledger.service import LedgerService

OPERATOR_ID = "operator-commission"


@pytest.fixture
def session_factory(tmp_path):
    factory = make_session_factory(
        f"sqlite+pysqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    bind = factory.kw["bind"]
    Base.metadata.create_all(bind)
    yield factory
    bind.dispose()


@pytest.fixture
def ledger(session_factory):
    engine = TransactionEngine(
        session_factory,
        InProcessLockCoordinator(timeout_seconds=30),
        operator_account_id=OPERATOR_ID,
    )
    with session_factory() as db:
        engine.store.ensure_operator(db)
        db.commit()
    return engine


@pytest.fixture
def service(session_factory, ledger):
    return LedgerService(session_factory, ledger)


def open_customer(ledger, account_id: str, balance: str = "0.00") -> None:
    """Open a customer account with an opening balance carried over from outside the ledger."""

    with ledger.session_factory() as db:
        account = ledger.store.open_account(db, account_id)
        account.balance_cents = to_cents(balance)
        db.commit()


def balance_cents(ledger, account_id: str) -> int:
    with ledger.session_factory() as db:
        return ledger.store.get(db, account_id).balance_cents


def all_entries(ledger) -> list:
    from sqlalchemy import select

    with ledger.session_factory() as db:
        return list(db.execute(select(models.LedgerEntry).order_by(models.LedgerEntry.entry_id)).scalars())
