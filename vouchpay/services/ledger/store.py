"""Account store: balances keyed by account id.

The store does not coordinate concurrency; callers hold the account lock
(see `locks.py`) while calling `adjust`. Writes are still guarded so a
violating delta cannot be persisted.
"""

from sqlalchemy import func, select, update

from vouchpay.services.ledger.errors import AccountNotFound, InsufficientFunds, InvalidInput
from vouchpay.services.ledger.models import CUSTOMER, OPERATOR, Account


class AccountStore:
    """Customer accounts plus the single operator commission account."""

    def __init__(self, operator_account_id: str) -> None:
        self.operator_account_id = operator_account_id

    def get(self, db, account_id: str) -> Account:
        account = db.get(Account, account_id)
        if account is None:
            raise AccountNotFound(f"account {account_id} not found")
        return account

    def get_customer(self, db, account_id: str) -> Account:
        account = self.get(db, account_id)
        if account.kind != CUSTOMER:
            raise InvalidInput(f"account {account_id} is not a customer account")
        return account

    def adjust(self, db, account_id: str, delta_cents: int, min_balance_cents: int | None) -> int:
        """Apply `delta_cents` and return the new balance.

        A negative delta is refused with `InsufficientFunds` when it would take
        the balance below `min_balance_cents` (`None` means unbounded). The
        change joins the caller's transaction.
        """

        account = self.get(db, account_id)
        if account.kind == OPERATOR and delta_cents < 0:
            raise InvalidInput("operator account balance may only increase")

        stmt = update(Account).where(Account.account_id == account_id)
        if delta_cents < 0 and min_balance_cents is not None:
            stmt = stmt.where(Account.balance_cents + delta_cents >= min_balance_cents)
        result = db.execute(
            stmt.values(balance_cents=Account.balance_cents + delta_cents).execution_options(
                synchronize_session=False
            )
        )
        if result.rowcount != 1:
            raise InsufficientFunds(
                f"account {account_id} has insufficient funds for a debit of {-delta_cents} cents"
            )
        db.refresh(account)
        return account.balance_cents

    def open_account(self, db, account_id: str) -> Account:
        """Create a zero-balance customer account; existing customers are returned as-is."""

        if not account_id or account_id == self.operator_account_id:
            raise InvalidInput(f"account id {account_id!r} is reserved or empty")
        account = db.get(Account, account_id)
        if account is not None:
            if account.kind != CUSTOMER:
                raise InvalidInput(f"account {account_id} is not a customer account")
            return account
        account = Account(account_id=account_id, kind=CUSTOMER, balance_cents=0)
        db.add(account)
        db.flush()
        return account

    def ensure_operator(self, db) -> Account:
        other = db.execute(
            select(Account.account_id).where(
                Account.kind == OPERATOR, Account.account_id != self.operator_account_id
            )
        ).first()
        if other is not None:
            raise RuntimeError(f"a different operator account already exists: {other.account_id}")
        account = db.get(Account, self.operator_account_id)
        if account is None:
            account = Account(account_id=self.operator_account_id, kind=OPERATOR, balance_cents=0)
            db.add(account)
            db.flush()
        return account

    def total_balance(self, db) -> int:
        """Sum of every balance, customers and operator."""

        return int(db.execute(select(func.coalesce(func.sum(Account.balance_cents), 0))).scalar_one())
