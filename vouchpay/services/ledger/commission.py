"""Commission policy and money conversion.

Amounts travel as `Decimal` at the edges and as integer minor units (cents)
inside the ledger. Fees round half-up to the cent and the net is always
`gross - fee`, so `fee + net == gross` holds exactly.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from vouchpay.services.ledger.errors import InvalidInput

CENT = Decimal("0.01")
MINOR_UNITS_PER_UNIT = 100
# Largest single amount accepted: 100 billion units. Keeps balances well inside BIGINT.
MAX_AMOUNT_CENTS = 10**13


def to_cents(amount) -> int:
    """Convert a decimal amount to cents.

    Rejects sub-cent precision and amounts above `MAX_AMOUNT_CENTS`.
    """

    try:
        value = Decimal(str(amount))
        if not value.is_finite():
            raise InvalidInput(f"amount {amount!r} is not finite")
        quantized = value.quantize(CENT)
    except InvalidOperation as exc:
        raise InvalidInput(f"amount {amount!r} is not a valid money amount") from exc
    if value != quantized:
        raise InvalidInput(f"amount {amount} has more precision than the currency minor unit")
    cents = int(value * MINOR_UNITS_PER_UNIT)
    if abs(cents) > MAX_AMOUNT_CENTS:
        raise InvalidInput(f"amount {amount} exceeds the maximum of {from_cents(MAX_AMOUNT_CENTS)}")
    return cents


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / MINOR_UNITS_PER_UNIT).quantize(CENT)


def _validate_rate(rate: Decimal) -> Decimal:
    rate = Decimal(str(rate))
    if not Decimal("0") <= rate < Decimal("1"):
        raise ValueError(f"commission rate must be in [0, 1), got {rate}")
    return rate


class CommissionPolicy:
    """Pure fee computation per operation kind. No I/O."""

    def __init__(self, redeem_rate=Decimal("0.03"), transfer_rate=Decimal("0.01")) -> None:
        self.redeem_rate = _validate_rate(redeem_rate)
        self.transfer_rate = _validate_rate(transfer_rate)

    @staticmethod
    def _split(gross_cents: int, rate: Decimal) -> tuple[int, int]:
        fee = int((Decimal(gross_cents) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        return gross_cents - fee, fee

    def redeem(self, gross_cents: int) -> tuple[int, int]:
        """Return `(net, fee)` for a voucher redemption."""

        return self._split(gross_cents, self.redeem_rate)

    def transfer(self, amount_cents: int) -> tuple[int, int]:
        """Return `(net, fee)` for a peer transfer; the sender pays the gross."""

        return self._split(amount_cents, self.transfer_rate)

    def withdraw(self, amount_cents: int) -> tuple[int, int]:
        # Withdrawals are fee-free.
        return amount_cents, 0
