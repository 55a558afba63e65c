"""initial ledger schema

Revision ID: 202610170900
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610170900"
down_revision = None
branch_labels = None
depends_on = None

ACCOUNT_TYPES = (
    "checking",
    "savings",
    "credit_card",
    "cash",
    "investment",
    "loan",
    "other",
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("archived_at", sa.DateTime()),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_category_user_name"),
    )

    op.create_table(
        "payees",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("archived_at", sa.DateTime()),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_payee_user_name"),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("type", sa.Enum(*ACCOUNT_TYPES, name="accounttype"), nullable=False),
        sa.Column(
            "status",
            sa.Enum("active", "inactive", "closed", name="accountstatus"),
            nullable=False,
        ),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("initial_balance", sa.BigInteger(), nullable=False),
        sa.Column("current_balance", sa.BigInteger(), nullable=False),
        sa.Column("credit_limit", sa.BigInteger()),
        sa.Column("bill_generation_day", sa.Integer()),
        sa.Column("payment_due_day", sa.Integer()),
        sa.Column(
            "credit_usage_percentage",
            sa.Numeric(5, 2),
            nullable=False,
            server_default="0",
        ),
        sa.Column("opened_on", sa.Date()),
        sa.Column("notes", sa.Text()),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_account_user_name"),
        sa.CheckConstraint(
            "credit_limit IS NULL OR credit_limit > 0",
            name="ck_accounts_credit_limit_positive",
        ),
        sa.CheckConstraint(
            "bill_generation_day IS NULL OR bill_generation_day BETWEEN 1 AND 31",
            name="ck_accounts_bill_generation_day",
        ),
        sa.CheckConstraint(
            "payment_due_day IS NULL OR payment_due_day BETWEEN 1 AND 31",
            name="ck_accounts_payment_due_day",
        ),
        sa.CheckConstraint(
            "bill_generation_day IS NULL OR payment_due_day IS NULL"
            " OR bill_generation_day <> payment_due_day",
            name="ck_accounts_billing_days_differ",
        ),
    )
    op.create_index("ix_accounts_user_type", "accounts", ["user_id", "type"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column(
            "type",
            sa.Enum("deposit", "withdrawal", "transfer", name="transactiontype"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum("pending", "completed", "reversed", name="transactionstatus"),
            nullable=False,
        ),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("to_amount", sa.BigInteger()),
        sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("from_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("to_account_id", sa.Integer(), sa.ForeignKey("accounts.id")),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("payee_id", sa.Integer(), sa.ForeignKey("payees.id")),
        sa.Column("notes", sa.Text()),
        sa.Column("deleted_at", sa.DateTime()),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount >= 0", name="ck_transactions_amount_non_negative"),
        sa.CheckConstraint(
            "to_amount IS NULL OR to_amount >= 0",
            name="ck_transactions_to_amount_non_negative",
        ),
        sa.CheckConstraint(
            "(type = 'transfer' AND account_id IS NULL"
            " AND from_account_id IS NOT NULL AND to_account_id IS NOT NULL"
            " AND from_account_id <> to_account_id)"
            " OR (type <> 'transfer' AND account_id IS NOT NULL"
            " AND from_account_id IS NULL AND to_account_id IS NULL)",
            name="ck_transactions_account_shape",
        ),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index("ix_transactions_account", "transactions", ["account_id"])
    op.create_index("ix_transactions_from_account", "transactions", ["from_account_id"])
    op.create_index("ix_transactions_to_account", "transactions", ["to_account_id"])

    op.create_table(
        "credit_card_bills",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("cycle_start", sa.Date(), nullable=False),
        sa.Column("cycle_end", sa.Date(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("statement_balance", sa.BigInteger(), nullable=False),
        sa.Column(
            "minimum_payment", sa.BigInteger(), nullable=False, server_default="0"
        ),
        sa.Column("paid_amount", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column(
            "status",
            sa.Enum(
                "open",
                "partially_paid",
                "paid",
                "overdue",
                "overpaid",
                name="billstatus",
            ),
            nullable=False,
        ),
        sa.Column("transaction_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("notes", sa.Text()),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "account_id", "cycle_start", "cycle_end", name="uq_bill_account_cycle"
        ),
        sa.CheckConstraint("paid_amount >= 0", name="ck_bills_paid_non_negative"),
        sa.CheckConstraint(
            "minimum_payment >= 0", name="ck_bills_minimum_non_negative"
        ),
        sa.CheckConstraint("cycle_start < cycle_end", name="ck_bills_cycle_order"),
        sa.CheckConstraint("due_date >= cycle_end", name="ck_bills_due_after_cycle"),
    )
    op.create_index("ix_bills_user_due", "credit_card_bills", ["user_id", "due_date"])

    op.create_table(
        "bill_payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, default=1),
        sa.Column(
            "bill_id",
            sa.Integer(),
            sa.ForeignKey("credit_card_bills.id"),
            nullable=False,
        ),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("paid_on", sa.Date(), nullable=False),
        sa.Column("note", sa.Text()),
        sa.Column("transaction_id", sa.Integer(), sa.ForeignKey("transactions.id")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount >= 0", name="ck_bill_payments_amount_non_negative"),
    )


def downgrade():
    op.drop_table("bill_payments")
    op.drop_index("ix_bills_user_due", table_name="credit_card_bills")
    op.drop_table("credit_card_bills")
    op.drop_index("ix_transactions_to_account", table_name="transactions")
    op.drop_index("ix_transactions_from_account", table_name="transactions")
    op.drop_index("ix_transactions_account", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_accounts_user_type", table_name="accounts")
    op.drop_table("accounts")
    op.drop_table("payees")
    op.drop_table("categories")
