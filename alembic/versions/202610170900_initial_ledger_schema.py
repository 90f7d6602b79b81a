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


TXN_TYPE = sa.Enum(
    "income", "expense", "transfer", "refund", "adjustment", name="transactiontype"
)
TRANSFER_DIRECTION = sa.Enum("outgoing", "incoming", name="transferdirection")
LEDGER_ROLE = sa.Enum("owner", "admin", "editor", "viewer", name="ledgerrole")
BUDGET_PERIOD = sa.Enum(
    "weekly", "monthly", "quarterly", "yearly", name="budgetperiod"
)
SUBSCRIPTION_INTERVAL = sa.Enum(
    "daily", "weekly", "monthly", "quarterly", "yearly", name="subscriptioninterval"
)
RULE_MATCH_FIELD = sa.Enum("description", "notes", name="rulematchfield")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def _ledger_fk() -> sa.Column:
    return sa.Column(
        "ledger_id", sa.String(length=36), sa.ForeignKey("ledgers.id"), nullable=False
    )


def upgrade():
    op.create_table(
        "ledgers",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("currency_code", sa.String(length=3), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "ledger_members",
        sa.Column("id", sa.String(length=36), primary_key=True),
        _ledger_fk(),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("role", LEDGER_ROLE, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("ledger_id", "user_id", name="uq_ledger_member_user"),
    )

    op.create_table(
        "accounts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        _ledger_fk(),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("currency_code", sa.String(length=3), nullable=False),
        sa.Column("balance_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.String(length=36), primary_key=True),
        _ledger_fk(),
        sa.Column(
            "parent_id", sa.String(length=36), sa.ForeignKey("categories.id")
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("is_income", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index(
        "ix_categories_ledger_parent", "categories", ["ledger_id", "parent_id"]
    )

    op.create_table(
        "merchants",
        sa.Column("id", sa.String(length=36), primary_key=True),
        _ledger_fk(),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column(
            "category_id", sa.String(length=36), sa.ForeignKey("categories.id")
        ),
        *_timestamps(),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        _ledger_fk(),
        sa.Column(
            "account_id",
            sa.String(length=36),
            sa.ForeignKey("accounts.id"),
            nullable=False,
        ),
        sa.Column(
            "category_id", sa.String(length=36), sa.ForeignKey("categories.id")
        ),
        sa.Column(
            "merchant_id", sa.String(length=36), sa.ForeignKey("merchants.id")
        ),
        sa.Column("type", TXN_TYPE, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency_code", sa.String(length=3), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("description", sa.String(length=255)),
        sa.Column("notes", sa.Text()),
        sa.Column("external_id", sa.String(length=120)),
        sa.Column("transfer_peer_id", sa.String(length=36)),
        sa.Column("transfer_direction", TRANSFER_DIRECTION),
        sa.Column(
            "refund_of_id", sa.String(length=36), sa.ForeignKey("transactions.id")
        ),
        sa.Column(
            "is_reconciled", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("reconciled_at", sa.DateTime()),
        sa.Column("created_by", sa.String(length=64)),
        *_timestamps(),
        sa.UniqueConstraint(
            "ledger_id", "external_id", name="uq_txn_ledger_external_id"
        ),
        sa.CheckConstraint(
            "amount_cents >= 0 OR type = 'adjustment'",
            name="ck_transactions_amount_non_negative",
        ),
    )
    op.create_index("ix_transactions_ledger_date", "transactions", ["ledger_id", "date"])
    op.create_index(
        "ix_transactions_ledger_type_date", "transactions", ["ledger_id", "type", "date"]
    )
    op.create_index(
        "ix_transactions_account_date", "transactions", ["account_id", "date"]
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.String(length=36), primary_key=True),
        _ledger_fk(),
        sa.Column(
            "category_id", sa.String(length=36), sa.ForeignKey("categories.id")
        ),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("period", BUDGET_PERIOD, nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint(
            "amount_cents >= 0", name="ck_budgets_budget_amount_non_negative"
        ),
    )

    op.create_table(
        "classification_rules",
        sa.Column("id", sa.String(length=36), primary_key=True),
        _ledger_fk(),
        sa.Column("match_field", RULE_MATCH_FIELD, nullable=False),
        sa.Column("match_pattern", sa.String(length=200), nullable=False),
        sa.Column(
            "category_id", sa.String(length=36), sa.ForeignKey("categories.id")
        ),
        sa.Column(
            "merchant_id", sa.String(length=36), sa.ForeignKey("merchants.id")
        ),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index(
        "ix_rules_ledger_active_priority",
        "classification_rules",
        ["ledger_id", "is_active", "priority"],
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        _ledger_fk(),
        sa.Column(
            "account_id",
            sa.String(length=36),
            sa.ForeignKey("accounts.id"),
            nullable=False,
        ),
        sa.Column(
            "category_id", sa.String(length=36), sa.ForeignKey("categories.id")
        ),
        sa.Column(
            "merchant_id", sa.String(length=36), sa.ForeignKey("merchants.id")
        ),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency_code", sa.String(length=3), nullable=False),
        sa.Column("interval", SUBSCRIPTION_INTERVAL, nullable=False),
        sa.Column("next_due_date", sa.Date(), nullable=False),
        sa.Column("anchor_date", sa.Date()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint(
            "amount_cents >= 0",
            name="ck_subscriptions_subscription_amount_non_negative",
        ),
    )

    op.create_table(
        "monthly_summaries",
        sa.Column("id", sa.String(length=36), primary_key=True),
        _ledger_fk(),
        sa.Column("year_month", sa.String(length=7), nullable=False),
        sa.Column("currency_code", sa.String(length=3), nullable=False),
        sa.Column("total_income_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_expense_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "total_transfers_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("total_refunds_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("net_savings_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("transaction_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("computed_at", sa.DateTime()),
        *_timestamps(),
        sa.UniqueConstraint("ledger_id", "year_month", name="uq_summary_ledger_month"),
    )

    op.create_table(
        "reconciliation_snapshots",
        sa.Column("id", sa.String(length=36), primary_key=True),
        _ledger_fk(),
        sa.Column(
            "account_id",
            sa.String(length=36),
            sa.ForeignKey("accounts.id"),
            nullable=False,
        ),
        sa.Column("snapshot_date", sa.Date(), nullable=False),
        sa.Column("statement_balance_cents", sa.Integer(), nullable=False),
        sa.Column("computed_balance_cents", sa.Integer(), nullable=False),
        sa.Column("difference_cents", sa.Integer(), nullable=False),
        sa.Column("is_reconciled", sa.Boolean(), nullable=False),
        sa.Column(
            "transactions_checked", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("notes", sa.Text()),
        sa.Column("reconciled_by", sa.String(length=64)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_snapshots_account_date",
        "reconciliation_snapshots",
        ["account_id", "snapshot_date"],
    )

    op.create_table(
        "insights",
        sa.Column("id", sa.String(length=36), primary_key=True),
        _ledger_fk(),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("body", sa.Text()),
        sa.Column("insight_type", sa.String(length=40), nullable=False),
        sa.Column("source_month", sa.String(length=7), nullable=False),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_insights_ledger_month", "insights", ["ledger_id", "source_month"]
    )

    op.create_table(
        "exchange_rates",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("base_currency", sa.String(length=3), nullable=False),
        sa.Column("quote_currency", sa.String(length=3), nullable=False),
        sa.Column("rate_date", sa.Date(), nullable=False),
        sa.Column("rate", sa.Numeric(20, 10), nullable=False),
        sa.Column("source", sa.String(length=80)),
        sa.Column("fetched_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "base_currency", "quote_currency", "rate_date", name="uq_rate_pair_day"
        ),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        _ledger_fk(),
        sa.Column("table_name", sa.String(length=60), nullable=False),
        sa.Column("record_id", sa.String(length=36), nullable=False),
        sa.Column("action", sa.String(length=40), nullable=False),
        sa.Column("actor_id", sa.String(length=64)),
        sa.Column("before_data", sa.JSON()),
        sa.Column("after_data", sa.JSON()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_audit_ledger_created", "audit_logs", ["ledger_id", "created_at"]
    )


def downgrade():
    op.drop_index("ix_audit_ledger_created", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_table("exchange_rates")
    op.drop_index("ix_insights_ledger_month", table_name="insights")
    op.drop_table("insights")
    op.drop_index("ix_snapshots_account_date", table_name="reconciliation_snapshots")
    op.drop_table("reconciliation_snapshots")
    op.drop_table("monthly_summaries")
    op.drop_table("subscriptions")
    op.drop_index("ix_rules_ledger_active_priority", table_name="classification_rules")
    op.drop_table("classification_rules")
    op.drop_table("budgets")
    op.drop_index("ix_transactions_account_date", table_name="transactions")
    op.drop_index("ix_transactions_ledger_type_date", table_name="transactions")
    op.drop_index("ix_transactions_ledger_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("merchants")
    op.drop_index("ix_categories_ledger_parent", table_name="categories")
    op.drop_table("categories")
    op.drop_table("accounts")
    op.drop_table("ledger_members")
    op.drop_table("ledgers")
