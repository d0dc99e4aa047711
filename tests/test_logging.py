"""Correlation ids on log records."""

import logging

from conftest import open_customer
from vouchpay.common.logging import LedgerContextFilter, account_id_ctx, bind_context, operation_id_ctx


def make_record() -> logging.LogRecord:
    return logging.LogRecord("vouchpay", logging.INFO, __file__, 1, "hello", None, None)


def test_bound_ids_land_on_records_and_are_restored():
    """Ids bound for an operation disappear once the operation ends."""

    context_filter = LedgerContextFilter()
    with bind_context(operation_id="op-1", account_id="alice"):
        record = make_record()
        assert context_filter.filter(record)
        assert (record.operation_id, record.account_id, record.trace_id) == ("op-1", "alice", "")
        with bind_context(account_id="bob"):
            assert account_id_ctx.get() == "bob"
        assert account_id_ctx.get() == "alice"
    assert operation_id_ctx.get() == ""
    assert account_id_ctx.get() == ""


def test_context_restored_when_block_raises():
    try:
        with bind_context(operation_id="op-2"):
            raise RuntimeError("boom")
    except RuntimeError:
        pass
    assert operation_id_ctx.get() == ""


def test_engine_operation_binds_ids_while_logging(ledger, caplog):
    open_customer(ledger, "alice")
    caplog.handler.addFilter(LedgerContextFilter())
    with caplog.at_level(logging.INFO, logger="vouchpay"):
        result = ledger.redeem("alice", "10.00")
    [committed] = [r for r in caplog.records if r.getMessage().startswith("redeem_committed")]
    assert committed.operation_id == result.operation_id
    assert committed.account_id == "alice"
