"""Request/response schemas for ledger operations and read endpoints."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from vouchpay.services.ledger.commission import MAX_AMOUNT_CENTS, from_cents

MAX_AMOUNT = from_cents(MAX_AMOUNT_CENTS)


class BankDestination(BaseModel):
    """Customer bank account a withdrawal is paid out to."""

    bank_name: str = Field(min_length=1)
    account_number: str = Field(min_length=1)
    account_type: str = Field(default="savings", pattern="^(savings|current|cheque)$")
    branch_code: str | None = None


class OpenAccountRequest(BaseModel):
    account_id: str = Field(min_length=1)


class RedeemRequest(BaseModel):
    """Redemption of a voucher already verified by the voucher provider."""

    customer_id: str = Field(min_length=1)
    voucher_face_value: Decimal = Field(gt=0, le=MAX_AMOUNT, decimal_places=2)
    voucher_code: str | None = None
    voucher_type: str | None = None


class WithdrawRequest(BaseModel):
    customer_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0, le=MAX_AMOUNT, decimal_places=2)
    bank_destination: BankDestination


class TransferRequest(BaseModel):
    sender_id: str = Field(min_length=1)
    recipient_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0, le=MAX_AMOUNT, decimal_places=2)


class RedeemResult(BaseModel):
    operation_id: str
    gross: Decimal
    net: Decimal
    fee: Decimal
    new_balance: Decimal
    message: str = "Voucher redeemed successfully"


class WithdrawResult(BaseModel):
    operation_id: str
    amount: Decimal
    fee: Decimal
    new_balance: Decimal
    status: str
    message: str = "Withdrawal recorded"


class TransferResult(BaseModel):
    operation_id: str
    recipient_id: str
    amount: Decimal
    net: Decimal
    fee: Decimal
    new_balance: Decimal
    message: str = "Transfer completed successfully"


class AccountView(BaseModel):
    account_id: str
    kind: str
    balance: Decimal


class EntryView(BaseModel):
    entry_id: int
    operation_id: str
    operation: str
    account_id: str
    kind: str
    amount: Decimal
    resulting_balance: Decimal
    detail: dict[str, Any]
    created_at: datetime


class AccountHistory(BaseModel):
    account: AccountView
    entries: list[EntryView]
    total_count: int


class ReconciliationReport(BaseModel):
    operation_id: str
    operation: str | None
    balanced: bool
    entry_sum: Decimal
    expected_flow: Decimal
    entries: list[EntryView]


class AccountVerification(BaseModel):
    account_id: str
    stored_balance: Decimal
    ledger_balance: Decimal | None
    consistent: bool


class CommissionSummary(BaseModel):
    operator_account_id: str
    balance: Decimal
    redeem_commission: Decimal
    transfer_commission: Decimal
    currency: str


class SettlementView(BaseModel):
    operation_id: str
    account_id: str
    amount: Decimal
    bank_destination: dict[str, Any]
    status: str
    bank_reference: str | None
    created_at: datetime
    settled_at: datetime | None


class ConfirmSettlementRequest(BaseModel):
    bank_reference: str | None = None
