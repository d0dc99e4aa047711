"""Append-only ledger entry log."""

from sqlalchemy import func, select

from vouchpay.services.ledger.models import LedgerEntry


class LedgerEntryLog:
    """Writes and reads immutable ledger entries; there is no update path."""

    def append(
        self,
        db,
        *,
        operation_id: str,
        operation: str,
        account_id: str,
        kind: str,
        amount_cents: int,
        resulting_balance_cents: int,
        detail: dict | None = None,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            operation_id=operation_id,
            operation=operation,
            account_id=account_id,
            kind=kind,
            amount_cents=amount_cents,
            resulting_balance_cents=resulting_balance_cents,
            detail=dict(detail or {}),
        )
        db.add(entry)
        return entry

    def for_operation(self, db, operation_id: str) -> list[LedgerEntry]:
        return list(
            db.execute(
                select(LedgerEntry).where(LedgerEntry.operation_id == operation_id).order_by(LedgerEntry.entry_id)
            ).scalars()
        )

    def for_account(self, db, account_id: str, limit: int = 50, offset: int = 0) -> list[LedgerEntry]:
        """Most recent entries first."""

        return list(
            db.execute(
                select(LedgerEntry)
                .where(LedgerEntry.account_id == account_id)
                .order_by(LedgerEntry.entry_id.desc())
                .limit(limit)
                .offset(offset)
            ).scalars()
        )

    def latest_for_account(self, db, account_id: str) -> LedgerEntry | None:
        entries = self.for_account(db, account_id, limit=1)
        return entries[0] if entries else None

    def count_for_account(self, db, account_id: str) -> int:
        return db.execute(
            select(func.count()).select_from(LedgerEntry).where(LedgerEntry.account_id == account_id)
        ).scalar_one()

    def totals_by_kind(self, db, account_id: str) -> dict[tuple[str, str], int]:
        """Sum of amounts per `(operation, kind)` for one account."""

        rows = db.execute(
            select(LedgerEntry.operation, LedgerEntry.kind, func.sum(LedgerEntry.amount_cents))
            .where(LedgerEntry.account_id == account_id)
            .group_by(LedgerEntry.operation, LedgerEntry.kind)
        ).all()
        return {(operation, kind): int(total or 0) for operation, kind, total in rows}
