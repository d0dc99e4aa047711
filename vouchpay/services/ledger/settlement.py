"""Withdrawal settlement tracking and the bank rail HTTP client."""

from datetime import datetime, timezone

import httpx

from vouchpay.services.ledger.commission import from_cents
from vouchpay.services.ledger.errors import NotFound, SettlementError
from vouchpay.services.ledger.models import SETTLEMENT_PENDING, SETTLEMENT_SETTLED, WithdrawalSettlement


class HttpBankSettlement:
    """Pays a committed withdrawal out through the bank rail.

    `settle` returns the bank reference on confirmation and raises
    `SettlementError` on transport errors, rejections, or unconfirmed replies.
    """

    def __init__(self, base_url: str, currency: str, timeout: float = 5.0, transport=None) -> None:
        self.base_url = base_url.rstrip("/")
        self.currency = currency
        self.timeout = timeout
        self.transport = transport

    def settle(self, bank_destination: dict, amount_cents: int, reference: str) -> str:
        payload = {
            "reference": reference,
            "amount": str(from_cents(amount_cents)),
            "currency": self.currency,
            "destination": bank_destination,
        }
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                resp = client.post(
                    f"{self.base_url}/settlements",
                    json=payload,
                    headers={"x-idempotency-key": reference},
                )
        except httpx.HTTPError as exc:
            raise SettlementError(f"bank rail unreachable: {exc}") from exc
        if resp.status_code >= 400:
            raise SettlementError(f"bank rail rejected settlement (status={resp.status_code})")
        try:
            body = resp.json()
        except ValueError as exc:
            raise SettlementError("bank rail returned a malformed response") from exc
        if not isinstance(body, dict) or not body.get("settled"):
            raise SettlementError("bank rail did not confirm settlement")
        return str(body.get("bank_reference") or reference)


def record_pending(db, operation_id: str, account_id: str, amount_cents: int, bank_destination: dict) -> None:
    db.add(
        WithdrawalSettlement(
            operation_id=operation_id,
            account_id=account_id,
            amount_cents=amount_cents,
            bank_destination=bank_destination,
            status=SETTLEMENT_PENDING,
        )
    )


def mark_settled(db, operation_id: str, bank_reference: str | None) -> WithdrawalSettlement:
    """Flip one settlement to SETTLED; already-settled rows are left untouched."""

    row = db.get(WithdrawalSettlement, operation_id)
    if row is None:
        raise NotFound(f"no withdrawal settlement for operation {operation_id}")
    if row.status != SETTLEMENT_SETTLED:
        row.status = SETTLEMENT_SETTLED
        row.bank_reference = bank_reference
        row.settled_at = datetime.now(timezone.utc)
    return row
