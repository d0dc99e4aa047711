"""Transaction engine: voucher redemption, bank withdrawal and peer transfer.

Each operation walks VALIDATING -> LOCKED -> APPLYING -> COMMITTED, or ends in
FAILED. Validation runs before any lock is taken. Every balance change and
every ledger entry of one operation share a single database transaction whose
commit happens before the account locks are released, so the next lock holder
always reads the committed balance. Any failure while applying rolls the whole
operation back.
"""

import time
from collections.abc import Mapping
from contextlib import contextmanager
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from vouchpay.common.events import OPERATIONS_COMMITTED_TOPIC, EventEnvelope
from vouchpay.common.logging import bind_context, logger, trace_id_ctx
from vouchpay.common.metrics import (
    commission_accrued_cents_total,
    ledger_operation_latency_seconds,
    ledger_operations_total,
    settlement_pending_total,
)
from vouchpay.common.outbox import enqueue_event
from vouchpay.common.state_machine import (
    APPLYING,
    COMMITTED,
    FAILED,
    LOCKED,
    TERMINAL_STATES,
    VALIDATING,
    validate_transition,
)
from vouchpay.common.tracing import tracer
from vouchpay.services.ledger.commission import CommissionPolicy, from_cents, to_cents
from vouchpay.services.ledger.entry_log import LedgerEntryLog
from vouchpay.services.ledger.errors import (
    SETTLEMENT_PENDING,
    InsufficientFunds,
    InvalidInput,
    LedgerError,
    SettlementError,
    StorageFailure,
)
from vouchpay.services.ledger.models import (
    COMMISSION_CREDIT,
    REDEEM,
    REDEEM_CREDIT,
    SETTLEMENT_SETTLED,
    TRANSFER,
    TRANSFER_CREDIT,
    TRANSFER_DEBIT,
    WITHDRAW,
    WITHDRAW_DEBIT,
    OutboxEvent,
)
from vouchpay.services.ledger.schemas import RedeemResult, TransferResult, WithdrawResult
from vouchpay.services.ledger.settlement import mark_settled, record_pending
from vouchpay.services.ledger.store import AccountStore

CUSTOMER_MIN_BALANCE = 0


class Operation:
    """Transient state of one engine call; its entries share `operation_id`."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.operation_id = str(uuid4())
        self.status = VALIDATING
        self.entries: list[dict] = []

    def advance(self, new_status: str) -> None:
        validate_transition(self.status, new_status)
        logger.debug("operation_transition operation=%s from=%s to=%s", self.kind, self.status, new_status)
        self.status = new_status


class TransactionEngine:
    """Runs ledger operations against an account store and entry log."""

    def __init__(
        self,
        session_factory,
        locks,
        operator_account_id: str,
        policy: CommissionPolicy | None = None,
        settlement=None,
        currency: str = "ZAR",
        service_name: str = "ledger",
    ) -> None:
        self.session_factory = session_factory
        self.locks = locks
        self.store = AccountStore(operator_account_id)
        self.log = LedgerEntryLog()
        self.policy = policy or CommissionPolicy()
        self.settlement = settlement
        self.currency = currency
        self.service_name = service_name

    @property
    def operator_account_id(self) -> str:
        return self.store.operator_account_id

    @contextmanager
    def _operation(self, op: Operation, account_id: str):
        """Correlation context, tracing span, metrics and FAILED bookkeeping."""

        if not isinstance(account_id, str):
            account_id = ""
        with bind_context(operation_id=op.operation_id, account_id=account_id):
            started = time.perf_counter()
            try:
                with tracer.start_as_current_span(f"ledger.{op.kind.lower()}") as span:
                    span.set_attribute("ledger.operation_id", op.operation_id)
                    yield op
            except LedgerError as exc:
                if op.status not in TERMINAL_STATES:
                    op.advance(FAILED)
                ledger_operations_total.labels(service=self.service_name, operation=op.kind, outcome=exc.kind).inc()
                logger.info("operation_rejected operation=%s kind=%s reason=%s", op.kind, exc.kind, exc.message)
                raise
            else:
                ledger_operations_total.labels(service=self.service_name, operation=op.kind, outcome=COMMITTED).inc()
            finally:
                ledger_operation_latency_seconds.labels(service=self.service_name, operation=op.kind).observe(
                    time.perf_counter() - started
                )

    @contextmanager
    def _applying(self, op: Operation, account_ids):
        """Hold the account locks around one all-or-nothing database transaction."""

        with self.locks.acquire_all(account_ids):
            op.advance(LOCKED)
            with self.session_factory() as db:
                op.advance(APPLYING)
                try:
                    yield db
                    self._stage_committed_event(db, op)
                    db.commit()
                except LedgerError:
                    db.rollback()
                    raise
                except Exception as exc:
                    db.rollback()
                    logger.exception("storage_failure operation=%s", op.kind)
                    raise StorageFailure(
                        f"{op.kind.lower()} {op.operation_id} was rolled back after a storage error"
                    ) from exc
            op.advance(COMMITTED)

    def _append(self, db, op: Operation, account_id: str, kind: str, amount_cents: int, balance: int, detail: dict):
        self.log.append(
            db,
            operation_id=op.operation_id,
            operation=op.kind,
            account_id=account_id,
            kind=kind,
            amount_cents=amount_cents,
            resulting_balance_cents=balance,
            detail=detail,
        )
        op.entries.append(
            {
                "account_id": account_id,
                "kind": kind,
                "amount_cents": amount_cents,
                "resulting_balance_cents": balance,
            }
        )

    def _stage_committed_event(self, db, op: Operation) -> None:
        event = EventEnvelope(
            event_type=OPERATIONS_COMMITTED_TOPIC,
            aggregate_id=op.operation_id,
            trace_id=trace_id_ctx.get() or op.operation_id,
            payload={"operation": op.kind, "currency": self.currency, "entries": op.entries},
        )
        enqueue_event(db, OutboxEvent, OPERATIONS_COMMITTED_TOPIC, event)

    @staticmethod
    def _positive_cents(amount, label: str) -> int:
        cents = to_cents(amount)
        if cents <= 0:
            raise InvalidInput(f"{label} must be greater than zero")
        return cents

    def _require_customers(self, *account_ids: str) -> None:
        for account_id in account_ids:
            if not isinstance(account_id, str) or not account_id:
                raise InvalidInput("account id must be a non-empty string")
        try:
            with self.session_factory() as db:
                for account_id in account_ids:
                    self.store.get_customer(db, account_id)
        except SQLAlchemyError as exc:
            logger.exception("account_lookup_failed account_ids=%s", account_ids)
            raise StorageFailure("accounts could not be read; nothing was changed") from exc

    @staticmethod
    def _bank_destination(bank_destination) -> dict:
        if hasattr(bank_destination, "model_dump"):
            bank_destination = bank_destination.model_dump()
        if not isinstance(bank_destination, Mapping) or not bank_destination.get("account_number"):
            raise InvalidInput("a bank destination with an account number is required")
        return dict(bank_destination)

    def redeem(self, customer_id: str, voucher_face_value, voucher_code=None, voucher_type=None) -> RedeemResult:
        """Credit a verified voucher, net of commission, to the customer.

        The face value is trusted: the voucher provider has already verified it.
        """

        op = Operation(REDEEM)
        with self._operation(op, customer_id):
            gross = self._positive_cents(voucher_face_value, "voucher face value")
            self._require_customers(customer_id)
            with self._applying(op, [customer_id, self.operator_account_id]) as db:
                net, fee = self.policy.redeem(gross)
                voucher = {"gross_cents": gross, "voucher_code": voucher_code, "voucher_type": voucher_type}
                balance = self.store.adjust(db, customer_id, net, CUSTOMER_MIN_BALANCE)
                self._append(db, op, customer_id, REDEEM_CREDIT, net, balance, voucher)
                operator_balance = self.store.adjust(db, self.operator_account_id, fee, None)
                self._append(
                    db,
                    op,
                    self.operator_account_id,
                    COMMISSION_CREDIT,
                    fee,
                    operator_balance,
                    {"gross_cents": gross, "customer_id": customer_id},
                )
            commission_accrued_cents_total.labels(service=self.service_name, operation=REDEEM).inc(fee)
            logger.info("redeem_committed customer_id=%s gross_cents=%s fee_cents=%s", customer_id, gross, fee)
            return RedeemResult(
                operation_id=op.operation_id,
                gross=from_cents(gross),
                net=from_cents(net),
                fee=from_cents(fee),
                new_balance=from_cents(balance),
            )

    def withdraw(self, customer_id: str, amount, bank_destination) -> WithdrawResult:
        """Debit the customer, then hand the payout to the bank rail.

        A failed or missing bank settlement never reverses the debit; the
        result reports `SETTLEMENT_PENDING` for external reconciliation.
        """

        op = Operation(WITHDRAW)
        with self._operation(op, customer_id):
            amount_cents = self._positive_cents(amount, "withdrawal amount")
            destination = self._bank_destination(bank_destination)
            self._require_customers(customer_id)
            with self._applying(op, [customer_id]) as db:
                payout, fee = self.policy.withdraw(amount_cents)
                balance = self.store.adjust(db, customer_id, -amount_cents, CUSTOMER_MIN_BALANCE)
                self._append(
                    db,
                    op,
                    customer_id,
                    WITHDRAW_DEBIT,
                    -amount_cents,
                    balance,
                    {"amount_cents": amount_cents, "bank_destination": destination},
                )
                record_pending(db, op.operation_id, customer_id, payout, destination)
            logger.info("withdraw_committed customer_id=%s amount_cents=%s", customer_id, amount_cents)
            status = self._settle(op, destination, payout)
            return WithdrawResult(
                operation_id=op.operation_id,
                amount=from_cents(amount_cents),
                fee=from_cents(fee),
                new_balance=from_cents(balance),
                status=status,
                message="Withdrawal processed successfully"
                if status == SETTLEMENT_SETTLED
                else "Withdrawal recorded; bank settlement pending",
            )

    def _settle(self, op: Operation, destination: dict, payout_cents: int) -> str:
        if self.settlement is None:
            logger.info("settlement_deferred reason=no_bank_rail")
        else:
            try:
                reference = self.settlement.settle(destination, payout_cents, op.operation_id)
            except SettlementError as exc:
                logger.warning("settlement_failed error=%s", exc)
            except Exception:
                # The debit is committed; report pending instead of failing the call.
                logger.exception("settlement_client_error")
            else:
                try:
                    with self.session_factory() as db:
                        mark_settled(db, op.operation_id, reference)
                        db.commit()
                    return SETTLEMENT_SETTLED
                except SQLAlchemyError:
                    logger.exception("settlement_confirmation_not_recorded bank_reference=%s", reference)
        settlement_pending_total.labels(service=self.service_name).inc()
        return SETTLEMENT_PENDING

    def transfer(self, sender_id: str, recipient_id: str, amount) -> TransferResult:
        """Move `amount` from sender to recipient; the operator keeps the fee."""

        op = Operation(TRANSFER)
        with self._operation(op, sender_id):
            amount_cents = self._positive_cents(amount, "transfer amount")
            if sender_id == recipient_id:
                raise InvalidInput("cannot transfer to the same account")
            self._require_customers(sender_id, recipient_id)
            with self._applying(op, [sender_id, recipient_id, self.operator_account_id]) as db:
                sender = self.store.get(db, sender_id)
                if sender.balance_cents < amount_cents:
                    raise InsufficientFunds(
                        f"account {sender_id} has insufficient funds for a transfer of {from_cents(amount_cents)}"
                    )
                net, fee = self.policy.transfer(amount_cents)
                sender_balance = self.store.adjust(db, sender_id, -amount_cents, CUSTOMER_MIN_BALANCE)
                self._append(
                    db,
                    op,
                    sender_id,
                    TRANSFER_DEBIT,
                    -amount_cents,
                    sender_balance,
                    {"recipient_id": recipient_id, "net_cents": net, "fee_cents": fee},
                )
                recipient_balance = self.store.adjust(db, recipient_id, net, CUSTOMER_MIN_BALANCE)
                self._append(
                    db,
                    op,
                    recipient_id,
                    TRANSFER_CREDIT,
                    net,
                    recipient_balance,
                    {"sender_id": sender_id, "gross_cents": amount_cents},
                )
                operator_balance = self.store.adjust(db, self.operator_account_id, fee, None)
                self._append(
                    db,
                    op,
                    self.operator_account_id,
                    COMMISSION_CREDIT,
                    fee,
                    operator_balance,
                    {"sender_id": sender_id, "recipient_id": recipient_id, "gross_cents": amount_cents},
                )
            commission_accrued_cents_total.labels(service=self.service_name, operation=TRANSFER).inc(fee)
            logger.info(
                "transfer_committed sender_id=%s recipient_id=%s amount_cents=%s fee_cents=%s",
                sender_id,
                recipient_id,
                amount_cents,
                fee,
            )
            return TransferResult(
                operation_id=op.operation_id,
                recipient_id=recipient_id,
                amount=from_cents(amount_cents),
                net=from_cents(net),
                fee=from_cents(fee),
                new_balance=from_cents(sender_balance),
            )
