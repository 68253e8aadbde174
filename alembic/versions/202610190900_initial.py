"""initial ledger schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type",
            sa.Enum("checking", "wallet", "investment", "other", name="accounttype"),
            nullable=False,
        ),
        sa.Column("balance_cents", sa.Integer(), nullable=False),
        sa.Column("initial_balance_cents", sa.Integer(), nullable=False),
        sa.Column("initial_balance_set", sa.Boolean(), nullable=False),
        sa.Column("include_in_total", sa.Boolean(), nullable=False),
        sa.Column("is_archived", sa.Boolean(), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False),
        sa.Column("icon", sa.String(length=40)),
        sa.Column("color", sa.String(length=9)),
        *_timestamps(),
    )
    op.create_index(
        "ix_accounts_user_archived", "accounts", ["user_id", "is_archived"]
    )

    op.create_table(
        "credit_cards",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("brand", sa.String(length=40)),
        sa.Column("last_digits", sa.String(length=4)),
        sa.Column("limit_cents", sa.Integer(), nullable=False),
        sa.Column("current_used_cents", sa.Integer(), nullable=False),
        sa.Column("closing_day", sa.Integer(), nullable=False),
        sa.Column("due_day", sa.Integer(), nullable=False),
        sa.Column("payment_account_id", sa.Integer()),
        sa.Column("is_archived", sa.Boolean(), nullable=False),
        sa.Column("icon", sa.String(length=40)),
        sa.Column("color", sa.String(length=9)),
        *_timestamps(),
        sa.CheckConstraint(
            "closing_day BETWEEN 1 AND 31", name="ck_credit_card_closing_day"
        ),
        sa.CheckConstraint("due_day BETWEEN 1 AND 31", name="ck_credit_card_due_day"),
    )
    op.create_index(
        "ix_credit_cards_user_archived", "credit_cards", ["user_id", "is_archived"]
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type", sa.Enum("expense", "income", name="categorytype"), nullable=False
        ),
        sa.Column("icon", sa.String(length=40)),
        sa.Column("color", sa.String(length=9)),
        *_timestamps(),
    )

    op.create_table(
        "goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("target_amount_cents", sa.Integer(), nullable=False),
        sa.Column("current_amount_cents", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("completed_at", sa.DateTime()),
        *_timestamps(),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "type",
            sa.Enum("expense", "income", "transfer", name="transactiontype"),
            nullable=False,
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "completed", "cancelled", name="transactionstatus"),
            nullable=False,
        ),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("category_id", sa.Integer()),
        sa.Column("category_name", sa.String(length=100)),
        sa.Column("category_icon", sa.String(length=40)),
        sa.Column("account_id", sa.Integer()),
        sa.Column("account_name", sa.String(length=100)),
        sa.Column("to_account_id", sa.Integer()),
        sa.Column("to_account_name", sa.String(length=100)),
        sa.Column("credit_card_id", sa.Integer()),
        sa.Column("credit_card_name", sa.String(length=100)),
        sa.Column("credit_card_bill_id", sa.Integer()),
        sa.Column("goal_id", sa.Integer()),
        sa.Column("goal_name", sa.String(length=100)),
        sa.Column("series_id", sa.String(length=64)),
        sa.Column("parent_transaction_id", sa.Integer()),
        sa.Column("notes", sa.Text()),
        sa.Column("is_adjustment", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_user_period", "transactions", ["user_id", "year", "month"]
    )
    op.create_index(
        "ix_transactions_user_account", "transactions", ["user_id", "account_id"]
    )
    op.create_index(
        "ix_transactions_user_to_account", "transactions", ["user_id", "to_account_id"]
    )
    op.create_index(
        "ix_transactions_user_card_period",
        "transactions",
        ["user_id", "credit_card_id", "year", "month"],
    )
    op.create_index(
        "ix_transactions_user_series", "transactions", ["user_id", "series_id"]
    )

    op.create_table(
        "credit_card_bills",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("credit_card_id", sa.Integer(), nullable=False),
        sa.Column("credit_card_name", sa.String(length=100), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("total_amount_cents", sa.Integer(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("is_paid", sa.Boolean(), nullable=False),
        sa.Column("paid_at", sa.DateTime()),
        sa.Column("paid_from_account_id", sa.Integer()),
        sa.Column("payment_transaction_id", sa.Integer()),
        *_timestamps(),
    )
    op.create_index(
        "ix_bills_user_card_period",
        "credit_card_bills",
        ["user_id", "credit_card_id", "year", "month"],
    )


def downgrade():
    op.drop_index("ix_bills_user_card_period", table_name="credit_card_bills")
    op.drop_table("credit_card_bills")
    for name in (
        "ix_transactions_user_series",
        "ix_transactions_user_card_period",
        "ix_transactions_user_to_account",
        "ix_transactions_user_account",
        "ix_transactions_user_period",
    ):
        op.drop_index(name, table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("goals")
    op.drop_table("categories")
    op.drop_index("ix_credit_cards_user_archived", table_name="credit_cards")
    op.drop_table("credit_cards")
    op.drop_index("ix_accounts_user_archived", table_name="accounts")
    op.drop_table("accounts")
