"""Structured JSON logging for the ledger service.

Correlation ids live in context variables so they follow an operation through
threads started by the request and through the Kafka consume loop. Each log
record carries the current trace, operation and account ids.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from vouchpay.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
operation_id_ctx: ContextVar[str] = ContextVar("operation_id", default="")
account_id_ctx: ContextVar[str] = ContextVar("account_id", default="")

CONTEXT_VARS = {
    "trace_id": trace_id_ctx,
    "operation_id": operation_id_ctx,
    "account_id": account_id_ctx,
}


@contextmanager
def bind_context(**values: str):
    """Set correlation ids for the duration of the block, then restore them."""

    tokens = [(CONTEXT_VARS[name], CONTEXT_VARS[name].set(value or "")) for name, value in values.items()]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class LedgerContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        for name, var in CONTEXT_VARS.items():
            setattr(record, name, var.get())
        return True


def configure_logging() -> None:
    """Send JSON records to stdout; call once per process."""

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(LedgerContextFilter())
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(trace_id)s %(operation_id)s %(account_id)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
            static_fields={"service": settings.service_name},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)


logger = logging.getLogger("vouchpay")
