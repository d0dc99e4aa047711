"""Ledger service: engine wiring, read model, audits and event loops.

Operations go through the transaction engine; this layer adds account
bootstrap, history and reconciliation reads, the outbox publisher, and the
consumer for bank settlement confirmations.
"""

import asyncio
import time

import redis
from sqlalchemy import select

from vouchpay.common.config import settings
from vouchpay.common.events import SETTLEMENTS_CONFIRMED_TOPIC, EventEnvelope, KafkaBus, consume_forever
from vouchpay.common.logging import logger
from vouchpay.common.metrics import duplicate_events_skipped_total
from vouchpay.common.outbox import (
    claim_outbox_batch,
    mark_outbox_sent,
    requeue_outbox_event,
    update_outbox_backlog_metrics,
)
from vouchpay.services.ledger.commission import CommissionPolicy, from_cents
from vouchpay.services.ledger.engine import TransactionEngine
from vouchpay.services.ledger.errors import InvalidInput
from vouchpay.services.ledger.locks import InProcessLockCoordinator, RedisLockCoordinator
from vouchpay.services.ledger.models import (
    COMMISSION_CREDIT,
    REDEEM,
    REDEEM_CREDIT,
    TRANSFER,
    WITHDRAW,
    InboxEvent,
    LedgerEntry,
    OutboxEvent,
    WithdrawalSettlement,
)
from vouchpay.services.ledger.schemas import (
    AccountHistory,
    AccountVerification,
    AccountView,
    CommissionSummary,
    EntryView,
    ReconciliationReport,
    SettlementView,
)
from vouchpay.services.ledger.settlement import HttpBankSettlement, mark_settled

EXPECTED_ENTRY_COUNTS = {REDEEM: 2, WITHDRAW: 1, TRANSFER: 3}


def entry_view(entry: LedgerEntry) -> EntryView:
    return EntryView(
        entry_id=entry.entry_id,
        operation_id=entry.operation_id,
        operation=entry.operation,
        account_id=entry.account_id,
        kind=entry.kind,
        amount=from_cents(entry.amount_cents),
        resulting_balance=from_cents(entry.resulting_balance_cents),
        detail=entry.detail or {},
        created_at=entry.created_at,
    )


def settlement_view(row: WithdrawalSettlement) -> SettlementView:
    return SettlementView(
        operation_id=row.operation_id,
        account_id=row.account_id,
        amount=from_cents(row.amount_cents),
        bank_destination=row.bank_destination,
        status=row.status,
        bank_reference=row.bank_reference,
        created_at=row.created_at,
        settled_at=row.settled_at,
    )


def expected_flow_cents(operation: str, entries: list[LedgerEntry]) -> int:
    """Net external flow a committed operation must carry.

    Redeem brings the voucher's gross value in, withdraw takes the debited
    amount out, transfer only moves funds between accounts.
    """

    if operation == REDEEM:
        credit = next((e for e in entries if e.kind == REDEEM_CREDIT), None)
        return int(credit.detail.get("gross_cents", 0)) if credit else 0
    if operation == WITHDRAW:
        return -sum(int(e.detail.get("amount_cents", 0)) for e in entries)
    return 0


def build_lock_coordinator():
    if settings.lock_backend == "redis":
        rdb = redis.Redis.from_url(settings.redis_url)
        return RedisLockCoordinator(rdb, timeout_seconds=settings.lock_timeout_seconds, service_name=settings.service_name)
    return InProcessLockCoordinator(timeout_seconds=settings.lock_timeout_seconds, service_name=settings.service_name)


def build_engine(session_factory) -> TransactionEngine:
    """Engine configured from environment settings."""

    settlement = None
    if settings.bank_rail_url:
        settlement = HttpBankSettlement(
            settings.bank_rail_url,
            currency=settings.currency,
            timeout=settings.bank_rail_timeout_seconds,
        )
    return TransactionEngine(
        session_factory,
        build_lock_coordinator(),
        operator_account_id=settings.operator_account_id,
        policy=CommissionPolicy(settings.redeem_commission_rate, settings.transfer_commission_rate),
        settlement=settlement,
        currency=settings.currency,
        service_name=settings.service_name,
    )


class LedgerService:
    """Owns the engine plus everything around it that does not move money."""

    def __init__(self, session_factory, engine: TransactionEngine, service_name: str = "ledger") -> None:
        self.session_factory = session_factory
        self.engine = engine
        self.store = engine.store
        self.log = engine.log
        self.kafka = KafkaBus()
        self.service_name = service_name

    def ensure_accounts(self, retries: int = 20) -> None:
        """Bootstrap the operator account; retry during cold-start races."""

        for attempt in range(1, retries + 1):
            try:
                with self.session_factory() as db:
                    self.store.ensure_operator(db)
                    db.commit()
                    return
            except Exception as exc:
                logger.warning("ledger account bootstrap retry=%s/%s error=%s", attempt, retries, exc)
                if attempt == retries:
                    raise
                # Postgres may still be initializing on cold boot.
                time.sleep(1)

    def open_account(self, account_id: str) -> AccountView:
        with self.session_factory() as db:
            account = self.store.open_account(db, account_id)
            db.commit()
            return AccountView(account_id=account.account_id, kind=account.kind, balance=from_cents(account.balance_cents))

    def get_account(self, account_id: str) -> AccountView:
        """Most recently committed balance; never reflects an in-flight operation."""

        with self.session_factory() as db:
            account = self.store.get(db, account_id)
            return AccountView(account_id=account.account_id, kind=account.kind, balance=from_cents(account.balance_cents))

    def account_history(self, account_id: str, limit: int = 50, offset: int = 0) -> AccountHistory:
        if limit < 1 or limit > 500 or offset < 0:
            raise InvalidInput("limit must be within 1..500 and offset non-negative")
        with self.session_factory() as db:
            account = self.store.get(db, account_id)
            entries = self.log.for_account(db, account_id, limit=limit, offset=offset)
            return AccountHistory(
                account=AccountView(
                    account_id=account.account_id,
                    kind=account.kind,
                    balance=from_cents(account.balance_cents),
                ),
                entries=[entry_view(e) for e in entries],
                total_count=self.log.count_for_account(db, account_id),
            )

    def operation_entries(self, operation_id: str) -> list[EntryView]:
        with self.session_factory() as db:
            return [entry_view(e) for e in self.log.for_operation(db, operation_id)]

    def reconcile_operation(self, operation_id: str) -> ReconciliationReport:
        """Check that an operation's entries carry exactly its external flow."""

        with self.session_factory() as db:
            entries = self.log.for_operation(db, operation_id)
            operation = entries[0].operation if entries else None
            entry_sum = sum(e.amount_cents for e in entries)
            expected = expected_flow_cents(operation, entries)
            balanced = bool(entries) and entry_sum == expected and len(entries) == EXPECTED_ENTRY_COUNTS.get(operation)
            if not balanced:
                logger.warning(
                    "ledger_imbalance operation_id=%s entry_sum=%s expected=%s", operation_id, entry_sum, expected
                )
            return ReconciliationReport(
                operation_id=operation_id,
                operation=operation,
                balanced=balanced,
                entry_sum=from_cents(entry_sum),
                expected_flow=from_cents(expected),
                entries=[entry_view(e) for e in entries],
            )

    def verify_account(self, account_id: str) -> AccountVerification:
        """Compare the stored balance with the latest entry's resulting balance."""

        with self.session_factory() as db:
            account = self.store.get(db, account_id)
            latest = self.log.latest_for_account(db, account_id)
            ledger_balance = latest.resulting_balance_cents if latest else None
            # An account with no entries must still hold its opening balance of zero.
            consistent = (0 if ledger_balance is None else ledger_balance) == account.balance_cents
            return AccountVerification(
                account_id=account_id,
                stored_balance=from_cents(account.balance_cents),
                ledger_balance=from_cents(ledger_balance) if ledger_balance is not None else None,
                consistent=consistent,
            )

    def commission_summary(self) -> CommissionSummary:
        operator_id = self.engine.operator_account_id
        with self.session_factory() as db:
            operator = self.store.get(db, operator_id)
            totals = self.log.totals_by_kind(db, operator_id)
            return CommissionSummary(
                operator_account_id=operator_id,
                balance=from_cents(operator.balance_cents),
                redeem_commission=from_cents(totals.get((REDEEM, COMMISSION_CREDIT), 0)),
                transfer_commission=from_cents(totals.get((TRANSFER, COMMISSION_CREDIT), 0)),
                currency=self.engine.currency,
            )

    def list_settlements(self, status: str = "PENDING", limit: int = 100) -> list[SettlementView]:
        with self.session_factory() as db:
            rows = db.execute(
                select(WithdrawalSettlement)
                .where(WithdrawalSettlement.status == status)
                .order_by(WithdrawalSettlement.created_at.asc())
                .limit(limit)
            ).scalars()
            return [settlement_view(row) for row in rows]

    def confirm_settlement(self, operation_id: str, bank_reference: str | None = None) -> SettlementView:
        """Record an externally reconciled bank payout for a pending withdrawal."""

        with self.session_factory() as db:
            row = mark_settled(db, operation_id, bank_reference)
            db.commit()
            logger.info("settlement_confirmed operation_id=%s bank_reference=%s", operation_id, row.bank_reference)
            return settlement_view(row)

    def _inbox_seen(self, db, event_id: str) -> bool:
        return (
            db.execute(
                select(InboxEvent).where(
                    InboxEvent.event_id == event_id,
                    InboxEvent.consumed_by_service == self.service_name,
                )
            ).scalar_one_or_none()
            is not None
        )

    async def handle_settlement_confirmed(self, event: EventEnvelope) -> None:
        """Mark the withdrawal named by `aggregate_id` as settled, once per event."""

        with self.session_factory() as db:
            if self._inbox_seen(db, event.event_id):
                logger.info("duplicate event skipped topic=%s event_id=%s", SETTLEMENTS_CONFIRMED_TOPIC, event.event_id)
                duplicate_events_skipped_total.labels(service=self.service_name, topic=SETTLEMENTS_CONFIRMED_TOPIC).inc()
                return
            mark_settled(db, event.aggregate_id, event.payload.get("bank_reference"))
            db.add(InboxEvent(event_id=event.event_id, consumed_by_service=self.service_name))
            db.commit()

    async def outbox_publisher(self) -> None:
        """Continuously publish ledger outbox rows to Kafka."""

        while True:
            with self.session_factory() as db:
                rows = claim_outbox_batch(db, OutboxEvent, limit=100)
                update_outbox_backlog_metrics(db, OutboxEvent, self.service_name)
                db.commit()
            for row in rows:
                try:
                    await self.kafka.publish(row["topic"], EventEnvelope(**row["payload"]))
                    with self.session_factory() as db:
                        mark_outbox_sent(db, OutboxEvent, row["id"])
                        db.commit()
                except Exception as exc:
                    logger.exception("ledger outbox publish failed: %s", exc)
                    with self.session_factory() as db:
                        requeue_outbox_event(db, OutboxEvent, row["id"])
                        db.commit()
            await asyncio.sleep(0.5)

    async def start_consumers(self) -> None:
        """Start the Kafka consumer for bank settlement confirmations."""

        await consume_forever(SETTLEMENTS_CONFIRMED_TOPIC, "ledger-settlements", self.handle_settlement_confirmed)
