"""append-only ledger entries and monotonic operator balance

Revision ID: 0002_ledger_guards
Revises: 0001_ledger
Create Date: 2026-10-19
"""

from alembic import op


revision = "0002_ledger_guards"
down_revision = "0001_ledger"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION reject_ledger_entry_change()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            RAISE EXCEPTION 'ledger_entries is append-only; % of entry % rejected', TG_OP, OLD.entry_id;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_ledger_entries_append_only
        BEFORE UPDATE OR DELETE ON ledger_entries
        FOR EACH ROW
        EXECUTE FUNCTION reject_ledger_entry_change();
        """
    )
    op.execute(
        """
        CREATE OR REPLACE FUNCTION reject_operator_balance_decrease()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            IF OLD.kind = 'OPERATOR' AND NEW.balance_cents < OLD.balance_cents THEN
                RAISE EXCEPTION 'operator account % balance may only increase', OLD.account_id;
            END IF;
            RETURN NEW;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_accounts_operator_monotonic
        BEFORE UPDATE ON accounts
        FOR EACH ROW
        EXECUTE FUNCTION reject_operator_balance_decrease();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_accounts_operator_monotonic ON accounts;")
    op.execute("DROP FUNCTION IF EXISTS reject_operator_balance_decrease();")
    op.execute("DROP TRIGGER IF EXISTS trg_ledger_entries_append_only ON ledger_entries;")
    op.execute("DROP FUNCTION IF EXISTS reject_ledger_entry_change();")
