"""Ledger database models for accounts, entries, settlements and inbox/outbox."""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import JSON, BigInteger, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, event, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from vouchpay.common.db import Base

CUSTOMER = "CUSTOMER"
OPERATOR = "OPERATOR"

# Operation kinds.
REDEEM = "REDEEM"
WITHDRAW = "WITHDRAW"
TRANSFER = "TRANSFER"

# Entry kinds.
REDEEM_CREDIT = "REDEEM_CREDIT"
WITHDRAW_DEBIT = "WITHDRAW_DEBIT"
TRANSFER_DEBIT = "TRANSFER_DEBIT"
TRANSFER_CREDIT = "TRANSFER_CREDIT"
COMMISSION_CREDIT = "COMMISSION_CREDIT"

SETTLEMENT_PENDING = "PENDING"
SETTLEMENT_SETTLED = "SETTLED"

JsonDocument = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Account(Base):
    """Balance-holding account: a customer or the single operator account."""

    __tablename__ = "accounts"

    account_id: Mapped[str] = mapped_column(String, primary_key=True)
    kind: Mapped[str] = mapped_column(String, index=True)
    balance_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, server_default=func.now())


class LedgerEntry(Base):
    """Immutable signed balance movement for one account within one operation."""

    __tablename__ = "ledger_entries"
    __table_args__ = (Index("ix_ledger_entries_account_created", "account_id", "created_at"),)

    entry_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    operation_id: Mapped[str] = mapped_column(String, index=True)
    operation: Mapped[str] = mapped_column(String)
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.account_id"))
    kind: Mapped[str] = mapped_column(String)
    amount_cents: Mapped[int] = mapped_column(BigInteger)
    resulting_balance_cents: Mapped[int] = mapped_column(BigInteger)
    detail: Mapped[dict] = mapped_column(JsonDocument, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, server_default=func.now())


@event.listens_for(LedgerEntry, "before_update")
@event.listens_for(LedgerEntry, "before_delete")
def _reject_entry_mutation(mapper, connection, target) -> None:
    # Postgres enforces the same rule with a trigger (see alembic/ledger).
    raise RuntimeError(f"ledger_entries is append-only; entry {target.entry_id} cannot change")


class WithdrawalSettlement(Base):
    """Bank settlement status of one committed withdrawal operation."""

    __tablename__ = "withdrawal_settlements"

    operation_id: Mapped[str] = mapped_column(String, primary_key=True)
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.account_id"), index=True)
    amount_cents: Mapped[int] = mapped_column(BigInteger)
    bank_destination: Mapped[dict] = mapped_column(JsonDocument)
    status: Mapped[str] = mapped_column(String, default=SETTLEMENT_PENDING, index=True)
    bank_reference: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, server_default=func.now())
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class OutboxEvent(Base):
    """Events waiting to be published by the ledger outbox worker."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JsonDocument)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class InboxEvent(Base):
    """Deduplication rows for consumed settlement confirmations."""

    __tablename__ = "inbox_events"
    __table_args__ = (UniqueConstraint("event_id", "consumed_by_service", name="uq_inbox_consumer"),)

    event_id: Mapped[str] = mapped_column(String, primary_key=True)
    consumed_by_service: Mapped[str] = mapped_column(String, primary_key=True)
    consumed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, server_default=func.now())
